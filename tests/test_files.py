import os

import pytest

from tubequeue.files import move_files_with_prefix


@pytest.fixture
def dirs(tmp_path):
    scratch = tmp_path / "scratch"
    dest = tmp_path / "dest"
    scratch.mkdir()
    dest.mkdir()
    return scratch, dest


def test_moves_only_prefixed_files(dirs):
    scratch, dest = dirs
    (scratch / "Chan - 20230115 - Video - abc.mkv").write_text("video")
    (scratch / "Chan - 20230115 - Video - abc.en.srt").write_text("subs")
    (scratch / "Other - xyz.mkv").write_text("other")

    moved = move_files_with_prefix(scratch, dest, "Chan - 20230115 - Video - abc")

    assert sorted(p.name for p in moved) == [
        "Chan - 20230115 - Video - abc.en.srt",
        "Chan - 20230115 - Video - abc.mkv",
    ]
    assert (dest / "Chan - 20230115 - Video - abc.mkv").read_text() == "video"
    assert not (scratch / "Chan - 20230115 - Video - abc.mkv").exists()
    assert (scratch / "Other - xyz.mkv").exists()


def test_skips_directories(dirs):
    scratch, dest = dirs
    (scratch / "abc.part").mkdir()
    assert move_files_with_prefix(scratch, dest, "abc") == []
    assert (scratch / "abc.part").is_dir()


def test_empty_prefix_moves_nothing(dirs):
    scratch, dest = dirs
    (scratch / "a.mkv").write_text("x")
    assert move_files_with_prefix(scratch, dest, "") == []
    assert (scratch / "a.mkv").exists()


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="needs symlinks")
def test_never_deletes_outside_scratch(tmp_path, dirs):
    scratch, dest = dirs
    outside = tmp_path / "precious.mkv"
    outside.write_text("keep me")
    (scratch / "abc - escape.mkv").symlink_to(outside)

    moved = move_files_with_prefix(scratch, dest, "abc")

    assert outside.exists()
    assert outside.read_text() == "keep me"
    assert (dest / "abc - escape.mkv").read_text() == "keep me"
    assert [p.name for p in moved] == ["abc - escape.mkv"]
