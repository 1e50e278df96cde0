import json
import logging
import sqlite3
from datetime import datetime, timezone, timedelta
from typing import Dict, Iterable, List, Optional

from .config import ALLOWED_CONFIG_KEYS, RuntimeConfig
from .errors import is_retryable
from .models import (
    Task, PersistentJob, Channel, Video, TaskResult,
    WAIT, WIP, ERR, DONE, FAIL, STATES, TERMINAL_STATES, KINDS,
)
from .utils import now_iso, to_iso, iso_in_utc_from_seconds_from_now, normalize_channel_name

logger = logging.getLogger(__name__)


def _task(row: sqlite3.Row) -> Task:
    return Task(**dict(row))


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    RuntimeConfig.from_mapping({**get_config(conn), key: str(value)})
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


def load_runtime_config(conn) -> RuntimeConfig:
    """Snapshot the config table. Raises ValueError on an unparsable value."""
    return RuntimeConfig.from_mapping(get_config(conn))


# ---------- Tasks: enqueue / claim / mark ----------
def enqueue(conn, kind: str, payload) -> int:
    """Insert a WAIT task and return its id. `payload` may be a dict or JSON text."""
    if kind not in KINDS:
        raise ValueError(f"Unknown task kind {kind!r}. Expected one of: {', '.join(KINDS)}")
    if not isinstance(payload, str):
        payload = json.dumps(payload)
    ts = now_iso()
    with conn:
        cur = conn.execute(
            """INSERT INTO tasks (kind, payload, state, retry_count, created_at, updated_at)
               VALUES (?, ?, ?, 0, ?, ?)""",
            (kind, payload, WAIT, ts, ts),
        )
    return cur.lastrowid


def claim_waiting(conn, limit: int) -> List[Task]:
    """
    Move up to `limit` eligible WAIT tasks to WIP, oldest id first, and return
    them. The write lock is taken before selecting so two dispatchers can never
    claim the same row.
    """
    if limit <= 0:
        return []
    now = now_iso()
    claimed = []
    conn.execute("BEGIN IMMEDIATE")
    try:
        rows = conn.execute(
            """SELECT id FROM tasks
               WHERE state=? AND (next_run_at IS NULL OR next_run_at <= ?)
               ORDER BY id ASC
               LIMIT ?""",
            (WAIT, now, limit),
        ).fetchall()
        for row in rows:
            updated = conn.execute(
                "UPDATE tasks SET state=?, updated_at=? WHERE id=? AND state=?",
                (WIP, now, row["id"], WAIT),
            )
            if updated.rowcount == 1:
                claimed.append(row["id"])
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    if not claimed:
        return []
    marks = ",".join("?" * len(claimed))
    rows = conn.execute(
        f"SELECT * FROM tasks WHERE id IN ({marks}) ORDER BY id ASC", claimed
    ).fetchall()
    return [_task(r) for r in rows]


def mark(conn, task_id: int, new_state: str, error_code: Optional[int] = None) -> bool:
    """
    Set a task's state. Marking a task that is already terminal is a logged
    no-op. Returns True when a row changed.
    """
    if new_state not in STATES:
        raise ValueError(f"Unknown state {new_state!r}")
    terminal = ",".join("?" * len(TERMINAL_STATES))
    with conn:
        res = conn.execute(
            f"""UPDATE tasks SET state=?, updated_at=?, error_code=COALESCE(?, error_code)
                WHERE id=? AND state NOT IN ({terminal})""",
            (new_state, now_iso(), error_code, task_id, *TERMINAL_STATES),
        )
    if res.rowcount != 1:
        logger.warning("Task %s not marked %s: missing or already terminal", task_id, new_state)
        return False
    return True


def apply_outcome(conn, result: TaskResult, retry_limit: int, backoff_base: int = 2) -> Optional[str]:
    """
    Record a worker outcome. Success -> DONE. A non-retryable failure -> ERR.
    A retryable failure goes back to WAIT behind an exponential backoff until
    retry_count reaches retry_limit, then FAIL.
    Returns the state written, or None if the task was not in WIP.
    """
    if result.ok:
        return DONE if mark(conn, result.task_id, DONE) else None

    row = conn.execute(
        "SELECT retry_count, state FROM tasks WHERE id=?", (result.task_id,)
    ).fetchone()
    if row is None or row["state"] != WIP:
        logger.warning("Outcome for task %s ignored: task is not in progress", result.task_id)
        return None

    if not is_retryable(result.error_code):
        new_state = ERR
        attempts = row["retry_count"]
        next_at = None
    elif row["retry_count"] < retry_limit:
        new_state = WAIT
        attempts = row["retry_count"] + 1
        next_at = iso_in_utc_from_seconds_from_now(backoff_base ** attempts)
    else:
        new_state = FAIL
        attempts = row["retry_count"]
        next_at = None

    with conn:
        res = conn.execute(
            """UPDATE tasks
               SET state=?, retry_count=?, next_run_at=?, error_code=?, updated_at=?
               WHERE id=? AND state=?""",
            (new_state, attempts, next_at, result.error_code, now_iso(), result.task_id, WIP),
        )
    if res.rowcount != 1:
        return None
    return new_state


def requeue_abandoned(conn) -> int:
    """Return WIP tasks left behind by a previous process to WAIT."""
    with conn:
        res = conn.execute(
            "UPDATE tasks SET state=?, updated_at=? WHERE state=?",
            (WAIT, now_iso(), WIP),
        )
    return res.rowcount


def retry_task(conn, task_id: int) -> bool:
    """Manually give an ERR/FAIL task a fresh set of attempts."""
    with conn:
        res = conn.execute(
            """UPDATE tasks
               SET state=?, retry_count=0, next_run_at=NULL, error_code=NULL, updated_at=?
               WHERE id=? AND state IN (?, ?)""",
            (WAIT, now_iso(), task_id, ERR, FAIL),
        )
    return res.rowcount == 1


def sweep_stale(conn, older_than_seconds: float) -> int:
    """Delete DONE/FAIL tasks last updated more than `older_than_seconds` ago."""
    cutoff = to_iso(datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds))
    with conn:
        res = conn.execute(
            "DELETE FROM tasks WHERE state IN (?, ?) AND updated_at <= ?",
            (DONE, FAIL, cutoff),
        )
    return res.rowcount


# ---------- Task queries ----------
def get_task(conn, task_id: int) -> Optional[Task]:
    row = conn.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
    return _task(row) if row else None


def list_tasks(conn, state: Optional[str] = None) -> List[Task]:
    if state:
        rows = conn.execute(
            "SELECT * FROM tasks WHERE state=? ORDER BY id ASC", (state,)
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM tasks ORDER BY id ASC").fetchall()
    return [_task(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in STATES}
    for r in conn.execute("SELECT state, COUNT(1) AS c FROM tasks GROUP BY state"):
        out[r["state"]] = r["c"]
    return out


# ---------- Recurring jobs ----------
def list_persistent_jobs(conn) -> List[PersistentJob]:
    rows = conn.execute("SELECT * FROM tasks_persistent ORDER BY id ASC").fetchall()
    return [PersistentJob(**dict(r)) for r in rows]


def touch_persistent_job(conn, job_id: int, when: Optional[str] = None):
    with conn:
        conn.execute(
            "UPDATE tasks_persistent SET last_exec=? WHERE id=?",
            (when or now_iso(), job_id),
        )


# ---------- Channels ----------
def insert_channel(conn, domain: str, url: str, channel_id: str, channel_name: str) -> int:
    """Register a channel. Raises sqlite3.IntegrityError on a duplicate."""
    with conn:
        cur = conn.execute(
            """INSERT INTO channels
               (domain, url, channel_id, channel_name, channel_name_normalized, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (domain, url, channel_id, channel_name,
             normalize_channel_name(channel_name), now_iso()),
        )
    return cur.lastrowid


def list_channels(conn) -> List[Channel]:
    rows = conn.execute("SELECT * FROM channels ORDER BY channel_name_normalized").fetchall()
    return [Channel(**dict(r)) for r in rows]


def find_channel(conn, domain: str, channel_id: str) -> Optional[Channel]:
    row = conn.execute(
        "SELECT * FROM channels WHERE domain=? AND channel_id=?", (domain, channel_id)
    ).fetchone()
    return Channel(**dict(row)) if row else None


def find_channel_by_name(conn, domain: str, name: str) -> Optional[Channel]:
    """Case-insensitive lookup through the same normalization used on insert."""
    row = conn.execute(
        "SELECT * FROM channels WHERE domain=? AND channel_name_normalized=?",
        (domain, normalize_channel_name(name)),
    ).fetchone()
    return Channel(**dict(row)) if row else None


# ---------- Videos ----------
def upsert_video(
    conn,
    *,
    domain: str,
    video_id: str,
    url: str,
    name: str,
    channel_ref: Optional[int] = None,
    is_requested: bool = False,
    is_downloaded: bool = False,
    release_date: Optional[str] = None,
    release_date_estimate: Optional[str] = None,
):
    """
    Insert or refresh a video keyed by (domain, video_id).

    On conflict the flags can only be raised, never cleared, and a known
    date is never replaced.
    """
    with conn:
        conn.execute(
            """INSERT INTO videos
               (channel_ref, domain, url, name, video_id, is_requested, is_downloaded,
                release_date, release_date_estimate, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(domain, video_id) DO UPDATE SET
                   updated_at = excluded.updated_at,
                   channel_ref = COALESCE(videos.channel_ref, excluded.channel_ref),
                   is_requested = MAX(videos.is_requested, excluded.is_requested),
                   is_downloaded = MAX(videos.is_downloaded, excluded.is_downloaded),
                   release_date = COALESCE(videos.release_date, excluded.release_date),
                   release_date_estimate =
                       COALESCE(videos.release_date_estimate, excluded.release_date_estimate)""",
            (channel_ref, domain, url, name, video_id, int(is_requested), int(is_downloaded),
             release_date, release_date_estimate, now_iso()),
        )


def _video(row: sqlite3.Row) -> Video:
    data = dict(row)
    data["is_requested"] = bool(data["is_requested"])
    data["is_downloaded"] = bool(data["is_downloaded"])
    return Video(**data)


def get_video(conn, domain: str, video_id: str) -> Optional[Video]:
    row = conn.execute(
        "SELECT * FROM videos WHERE domain=? AND video_id=?", (domain, video_id)
    ).fetchone()
    return _video(row) if row else None


def list_videos(conn, channel_ref: Optional[int] = None) -> Iterable[Video]:
    if channel_ref is not None:
        rows = conn.execute(
            """SELECT * FROM videos WHERE channel_ref=?
               ORDER BY COALESCE(release_date, release_date_estimate) DESC""",
            (channel_ref,),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM videos ORDER BY COALESCE(release_date, release_date_estimate) DESC"
        ).fetchall()
    return [_video(r) for r in rows]
