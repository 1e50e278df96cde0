import sqlite3
import threading

import pytest

from tubequeue import repository as repo
from tubequeue.errors import ERR_DOWNLOAD_FAILED, ERR_MALFORMED_PAYLOAD
from tubequeue.models import (
    TaskResult, WAIT, WIP, ERR, DONE, FAIL, VIDEO_DOWNLOAD, CHANNEL_FETCH,
)


def _enqueue(db, n=1, kind=VIDEO_DOWNLOAD):
    with db.connect() as conn:
        return [repo.enqueue(conn, kind, {"url": f"https://youtube.com/watch?v={i}"}) for i in range(n)]


def _state(db, task_id):
    with db.connect() as conn:
        return repo.get_task(conn, task_id)


def _age(db, task_id, when="2000-01-01T00:00:00Z"):
    with db.connect() as conn, conn:
        conn.execute("UPDATE tasks SET updated_at=? WHERE id=?", (when, task_id))


def test_enqueue_creates_waiting_task(db):
    ids = _enqueue(db, 2)
    assert ids[0] < ids[1]
    task = _state(db, ids[0])
    assert task.state == WAIT
    assert task.retry_count == 0
    assert task.kind == VIDEO_DOWNLOAD
    assert task.created_at == task.updated_at


def test_enqueue_rejects_unknown_kind(db):
    with db.connect() as conn:
        with pytest.raises(ValueError):
            repo.enqueue(conn, "video-download", {"url": "x"})


def test_claim_is_fifo_and_bounded(db):
    ids = _enqueue(db, 3)
    with db.connect() as conn:
        first = repo.claim_waiting(conn, 2)
        second = repo.claim_waiting(conn, 2)
        third = repo.claim_waiting(conn, 2)
    assert [t.id for t in first] == ids[:2]
    assert all(t.state == WIP for t in first)
    assert [t.id for t in second] == ids[2:]
    assert third == []


def test_claim_zero_limit(db):
    _enqueue(db, 1)
    with db.connect() as conn:
        assert repo.claim_waiting(conn, 0) == []


def test_concurrent_claims_never_share_a_task(db):
    ids = _enqueue(db, 30)
    seen = []
    lock = threading.Lock()

    def claimer():
        while True:
            with db.connect() as conn:
                got = repo.claim_waiting(conn, 3)
            if not got:
                return
            with lock:
                seen.extend(t.id for t in got)

    threads = [threading.Thread(target=claimer) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(seen) == ids
    assert len(seen) == len(set(seen))


def test_mark_terminal_is_noop(db):
    (task_id,) = _enqueue(db)
    with db.connect() as conn:
        assert repo.mark(conn, task_id, DONE) is True
        assert repo.mark(conn, task_id, ERR) is False
        assert repo.mark(conn, 9999, DONE) is False
    assert _state(db, task_id).state == DONE


def test_retryable_failure_backs_off_then_fails(db):
    (task_id,) = _enqueue(db)
    failure = TaskResult.failure(task_id, ERR_DOWNLOAD_FAILED)
    with db.connect() as conn:
        repo.claim_waiting(conn, 1)
        assert repo.apply_outcome(conn, failure, retry_limit=1) == WAIT
        task = repo.get_task(conn, task_id)
        assert task.retry_count == 1
        assert task.next_run_at is not None
        assert task.error_code == ERR_DOWNLOAD_FAILED
        # still inside the backoff window
        assert repo.claim_waiting(conn, 1) == []

        with conn:
            conn.execute("UPDATE tasks SET next_run_at=NULL WHERE id=?", (task_id,))
        assert [t.id for t in repo.claim_waiting(conn, 1)] == [task_id]
        assert repo.apply_outcome(conn, failure, retry_limit=1) == FAIL
        assert repo.get_task(conn, task_id).state == FAIL


def test_non_retryable_failure_is_err(db):
    (task_id,) = _enqueue(db)
    with db.connect() as conn:
        repo.claim_waiting(conn, 1)
        state = repo.apply_outcome(conn, TaskResult.failure(task_id, ERR_MALFORMED_PAYLOAD), retry_limit=3)
        task = repo.get_task(conn, task_id)
    assert state == ERR
    assert task.state == ERR
    assert task.retry_count == 0
    assert task.error_code == ERR_MALFORMED_PAYLOAD


def test_outcome_for_task_not_in_progress_is_ignored(db):
    (task_id,) = _enqueue(db)
    with db.connect() as conn:
        assert repo.apply_outcome(conn, TaskResult.success(task_id), retry_limit=3) == DONE
        assert repo.apply_outcome(conn, TaskResult.failure(task_id, ERR_DOWNLOAD_FAILED), retry_limit=3) is None
        assert repo.get_task(conn, task_id).state == DONE


def test_sweep_stale_removes_only_old_finished_tasks(db):
    old_done, old_fail, old_err, old_wait, new_done = _enqueue(db, 5)
    with db.connect() as conn:
        repo.mark(conn, old_done, DONE)
        repo.mark(conn, old_fail, FAIL)
        repo.mark(conn, old_err, ERR)
        repo.mark(conn, new_done, DONE)
    for task_id in (old_done, old_fail, old_err, old_wait):
        _age(db, task_id)

    with db.connect() as conn:
        assert repo.sweep_stale(conn, 24 * 3600) == 2
        remaining = {t.id for t in repo.list_tasks(conn)}
    assert remaining == {old_err, old_wait, new_done}


def test_requeue_abandoned(db):
    a, b = _enqueue(db, 2)
    with db.connect() as conn:
        repo.claim_waiting(conn, 1)
        assert repo.requeue_abandoned(conn) == 1
        assert repo.get_task(conn, a).state == WAIT


def test_retry_task_resets_failed_task(db):
    (task_id,) = _enqueue(db)
    with db.connect() as conn:
        assert repo.retry_task(conn, task_id) is False
        repo.mark(conn, task_id, FAIL)
        assert repo.retry_task(conn, task_id) is True
        task = repo.get_task(conn, task_id)
    assert task.state == WAIT
    assert task.retry_count == 0


def test_counts(db):
    a, b, c = _enqueue(db, 3)
    with db.connect() as conn:
        repo.mark(conn, a, DONE)
        counts = repo.counts(conn)
    assert counts[WAIT] == 2
    assert counts[DONE] == 1
    assert counts[FAIL] == 0


def test_upsert_video_never_downgrades(db):
    with db.connect() as conn:
        repo.upsert_video(
            conn, domain="youtube.com", video_id="abc123", url="https://youtube.com/watch?v=abc123",
            name="Test Video", is_requested=True, is_downloaded=True,
            release_date="2023-01-15", release_date_estimate="2023-01-15",
        )
        repo.upsert_video(
            conn, domain="youtube.com", video_id="abc123", url="https://www.youtube.com/watch?v=abc123",
            name="Test Video", release_date_estimate="2023-01-20",
        )
        video = repo.get_video(conn, "youtube.com", "abc123")
        total = conn.execute("SELECT COUNT(1) FROM videos").fetchone()[0]

    assert total == 1
    assert video.is_requested is True
    assert video.is_downloaded is True
    assert video.release_date == "2023-01-15"
    assert video.release_date_estimate == "2023-01-15"


def test_upsert_video_can_raise_flags(db):
    with db.connect() as conn:
        repo.upsert_video(conn, domain="youtube.com", video_id="v1", url="u", name="n",
                          release_date_estimate="2023-01-01")
        repo.upsert_video(conn, domain="youtube.com", video_id="v1", url="u", name="n",
                          is_requested=True, is_downloaded=True, release_date="2023-01-02")
        video = repo.get_video(conn, "youtube.com", "v1")
    assert video.is_downloaded is True
    assert video.release_date == "2023-01-02"
    assert video.release_date_estimate == "2023-01-01"


def test_channel_uniqueness(db):
    with db.connect() as conn:
        repo.insert_channel(conn, "youtube.com", "https://www.youtube.com/channel/UC1", "UC1", "Example Channel")
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_channel(conn, "youtube.com", "https://www.youtube.com/channel/UC1b", "UC1", "Other")
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_channel(conn, "youtube.com", "https://www.youtube.com/channel/UC2", "UC2", "EXAMPLE channel")
        assert len(repo.list_channels(conn)) == 1


def test_find_channel_by_name_is_case_insensitive(db):
    with db.connect() as conn:
        repo.insert_channel(conn, "youtube.com", "https://www.youtube.com/channel/UC1", "UC1", "Bob's Big Show")
        found = repo.find_channel_by_name(conn, "youtube.com", "bobs big SHOW")
    assert found is not None
    assert found.channel_name_normalized == "bobs-big-show"


def test_set_config_validates(db):
    with db.connect() as conn:
        with pytest.raises(ValueError):
            repo.set_config(conn, "nope", "1")
        with pytest.raises(ValueError):
            repo.set_config(conn, "retry_limit", "many")
        repo.set_config(conn, "retry_limit", "5")
        assert repo.load_runtime_config(conn).retry_limit == 5
