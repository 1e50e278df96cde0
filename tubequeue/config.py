import os
from dataclasses import dataclass
from typing import Mapping

DB_FILE = os.environ.get("TUBEQUEUE_DB", "queue.db")

DEFAULT_CONFIG = {
    "path_temp": "/tmp/tubequeue",
    "path_media": "/srv/media",
    "sub_lang": "en.*,fi",
    "retry_limit": "3",
    "backoff_base": "2",
    "concurrency": "3",
    "settle_seconds": "10",
    "ytdlp_bin": "yt-dlp",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

# Dispatcher and recurring-job runner ticks, in seconds
DISPATCH_TICK_SECONDS = 1.0
RECURRING_TICK_SECONDS = 30.0

# DONE/FAIL tasks older than this are removed by the cleanup job
TASK_RETENTION_SECONDS = 24 * 3600

DB_POOL_SIZE = 5
DB_POOL_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class RuntimeConfig:
    """Read-only snapshot of the configuration table, taken at startup."""

    path_temp: str
    path_media: str
    sub_lang: str
    retry_limit: int = 3
    backoff_base: int = 2
    concurrency: int = 3
    settle_seconds: float = 10.0
    ytdlp_bin: str = "yt-dlp"

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "RuntimeConfig":
        merged = {**DEFAULT_CONFIG, **dict(values)}
        try:
            conf = cls(
                path_temp=merged["path_temp"],
                path_media=merged["path_media"],
                sub_lang=merged["sub_lang"],
                retry_limit=int(merged["retry_limit"]),
                backoff_base=int(merged["backoff_base"]),
                concurrency=int(merged["concurrency"]),
                settle_seconds=float(merged["settle_seconds"]),
                ytdlp_bin=merged["ytdlp_bin"],
            )
        except ValueError as e:
            raise ValueError(f"Invalid configuration value: {e}")
        if conf.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if conf.retry_limit < 0:
            raise ValueError("retry_limit must be >= 0")
        return conf
