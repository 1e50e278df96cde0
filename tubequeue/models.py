from dataclasses import dataclass
from typing import Optional

# Task states
WAIT = "WAIT"
WIP = "WIP"
ERR = "ERR"
DONE = "DONE"
FAIL = "FAIL"

STATES = (WAIT, WIP, ERR, DONE, FAIL)
TERMINAL_STATES = (ERR, DONE, FAIL)

# Task kinds (stable wire values)
VIDEO_DOWNLOAD = "VIDEO-DOWNLOAD"
CHANNEL_ADD = "CHANNEL-ADD"
CHANNEL_FETCH = "CHANNEL-FETCH"

KINDS = (VIDEO_DOWNLOAD, CHANNEL_ADD, CHANNEL_FETCH)

# Recurring job names
JOB_DB_CLEAN = "DB-CLEAN-TASKS"
JOB_CHANNEL_FETCH = "BG-CHANNEL-FETCH"


@dataclass
class Task:
    id: int
    kind: str
    payload: str
    state: str = WAIT
    retry_count: int = 0
    created_at: str = ""
    updated_at: str = ""
    next_run_at: Optional[str] = None
    error_code: Optional[int] = None


@dataclass
class PersistentJob:
    id: int
    name: str
    last_exec: str
    interval_sec: int


@dataclass
class Channel:
    id: int
    domain: str
    url: str
    channel_id: str
    channel_name: str
    channel_name_normalized: str
    updated_at: str = ""


@dataclass
class Video:
    id: int
    channel_ref: Optional[int]
    domain: str
    url: str
    name: str
    video_id: str
    is_requested: bool = False
    is_downloaded: bool = False
    release_date: Optional[str] = None
    release_date_estimate: Optional[str] = None
    updated_at: str = ""


@dataclass(frozen=True)
class TaskResult:
    """Terminal outcome a worker reports for one task."""

    task_id: int
    ok: bool
    error_code: Optional[int] = None
    message: str = ""

    @classmethod
    def success(cls, task_id: int) -> "TaskResult":
        return cls(task_id=task_id, ok=True)

    @classmethod
    def failure(cls, task_id: int, error_code: int, message: str = "") -> "TaskResult":
        return cls(task_id=task_id, ok=False, error_code=error_code, message=message)
