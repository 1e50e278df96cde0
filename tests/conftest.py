import subprocess

import pytest

from tubequeue.config import RuntimeConfig
from tubequeue.db import Database, init_db
from tubequeue.tasks import WorkerContext
from tubequeue.ytdlp import YtDlp, SEPARATOR


def record(*fields) -> str:
    """One line of tool output in the --print record format."""
    return SEPARATOR.join(fields)


class FakeRunner:
    """
    Stands in for subprocess.run. Each rule matches when its marker argument
    appears in the command; the first matching rule answers.
    """

    def __init__(self):
        self.calls = []
        self.rules = []

    def on(self, marker, stdout="", returncode=0, effect=None):
        self.rules.append((marker, stdout, returncode, effect))

    def calls_with(self, marker):
        return [c for c in self.calls if marker in c]

    def __call__(self, cmd, capture_output=True, timeout=None):
        self.calls.append(cmd)
        for marker, stdout, returncode, effect in self.rules:
            if marker in cmd:
                if effect:
                    effect(cmd)
                if isinstance(stdout, str):
                    stdout = stdout.encode("utf-8")
                return subprocess.CompletedProcess(cmd, returncode, stdout, b"")
        return subprocess.CompletedProcess(cmd, 1, b"", b"no rule for command")


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "queue.db")
    init_db(database)
    yield database
    database.close()


@pytest.fixture
def conf(tmp_path):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    return RuntimeConfig(
        path_temp=str(scratch),
        path_media=str(tmp_path / "media"),
        sub_lang="en.*,fi",
        retry_limit=2,
        backoff_base=2,
        concurrency=3,
        settle_seconds=0,
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def ctx(db, conf, runner):
    return WorkerContext(db=db, config=conf, ytdlp=YtDlp(runner=runner))
