"""
Worker functions, one per task kind.

A worker returns normally on success and raises TaskError with a failure code
otherwise. Workers never touch task rows; the dispatcher records the outcome.
"""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from . import repository as repo
from .config import RuntimeConfig
from .db import Database
from .errors import (
    TaskError, ToolError, RecordError,
    ERR_MALFORMED_PAYLOAD, ERR_UNSUPPORTED_DOMAIN, ERR_CONSTRAINT, ERR_DATABASE,
    ERR_RESOLVE_FAILED, ERR_RESOLVE_PARSE, ERR_DOWNLOAD_FAILED,
    ERR_LIST_FAILED, ERR_LIST_PARSE, ERR_CHANNEL_LOOKUP,
)
from .files import move_files_with_prefix
from .models import VIDEO_DOWNLOAD, CHANNEL_ADD, CHANNEL_FETCH
from .utils import parse_domain, parse_upload_date, strip_playlist_query
from .ytdlp import NA, YtDlp, FilenameFields

logger = logging.getLogger(__name__)

# Domains whose channels can be followed
SUPPORTED_CHANNEL_DOMAINS = {"youtube.com"}

DEFAULT_FETCH_LIMIT = 50


@dataclass
class WorkerContext:
    """What every worker gets: the pool, the config snapshot and the tool."""

    db: Database
    config: RuntimeConfig
    ytdlp: YtDlp
    stop: threading.Event = field(default_factory=threading.Event)

    def stop_requested(self) -> bool:
        return self.stop.is_set()


def _load_payload(payload: str, *keys: str) -> Dict:
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        raise TaskError(ERR_MALFORMED_PAYLOAD, f"Payload is not JSON: {payload!r}")
    if not isinstance(data, dict):
        raise TaskError(ERR_MALFORMED_PAYLOAD, "Payload must be a JSON object")
    for key in keys:
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            raise TaskError(ERR_MALFORMED_PAYLOAD, f"Payload field {key!r} missing or empty")
    return data


def _filename_parts(fields: FilenameFields):
    """(rendered value, template) pairs for the fields yt-dlp resolved."""
    parts = [
        (fields.channel, "%(channel)s"),
        (fields.upload_date, "%(upload_date)s"),
        (fields.title, "%(title)s"),
        (fields.video_id, "%(id)s"),
    ]
    present = [(value, tmpl) for value, tmpl in parts if value]
    # yt-dlp renders a missing id as its NA placeholder
    return present or [(NA, "%(id)s")]


def build_filename(fields: FilenameFields) -> str:
    """'<channel> - <date> - <title> - <id>' from whichever fields are present."""
    return " - ".join(value for value, _ in _filename_parts(fields))


def build_output_template(fields: FilenameFields) -> str:
    """yt-dlp output template that renders to build_filename() plus extension."""
    return " - ".join(tmpl for _, tmpl in _filename_parts(fields)) + ".%(ext)s"


def media_directory(path_media: str, domain: str, fields: FilenameFields) -> Path:
    """<media_root>/<domain>/<channel?>/<year or 'other'>"""
    path = Path(path_media) / domain
    if fields.channel:
        path = path / fields.channel.replace("/", "_").replace("\\", "_")
    return path / (fields.year or "other")


# ---------- VIDEO-DOWNLOAD ----------
def download_video(ctx: WorkerContext, task_id: int, payload: str):
    data = _load_payload(payload, "url")
    url = strip_playlist_query(data["url"].strip())
    domain = parse_domain(url)
    if not domain:
        raise TaskError(ERR_MALFORMED_PAYLOAD, f"No host in url {url!r}")

    try:
        fields = ctx.ytdlp.resolve_filename_fields(url)
    except ToolError as e:
        raise TaskError(ERR_RESOLVE_FAILED, str(e))
    except RecordError as e:
        raise TaskError(ERR_RESOLVE_PARSE, str(e))

    release_date = None
    if fields.upload_date:
        try:
            release_date = parse_upload_date(fields.upload_date)
        except ValueError:
            logger.warning("Task %s: ignoring malformed upload date %r", task_id, fields.upload_date)

    filename = build_filename(fields)
    logger.debug("Task %s: filename %r", task_id, filename)

    output_template = str(Path(ctx.config.path_temp) / build_output_template(fields))
    Path(ctx.config.path_temp).mkdir(parents=True, exist_ok=True)
    try:
        ctx.ytdlp.download(url, output_template, ctx.config.sub_lang)
    except (ToolError, RecordError) as e:
        raise TaskError(ERR_DOWNLOAD_FAILED, str(e))

    # yt-dlp may still be renaming or merging files after it exits
    if ctx.config.settle_seconds > 0:
        time.sleep(ctx.config.settle_seconds)

    dest = media_directory(ctx.config.path_media, domain, fields)
    try:
        dest.mkdir(parents=True, exist_ok=True)
        moved = move_files_with_prefix(ctx.config.path_temp, dest, filename)
        logger.info("Task %s: moved %d file(s) to %s", task_id, len(moved), dest)
    except OSError as e:
        logger.warning("Task %s: downloaded but could not relocate files: %s", task_id, e)

    if not fields.video_id:
        logger.warning("Task %s: no video id resolved, not recording video", task_id)
        return

    try:
        with ctx.db.connect() as conn:
            channel = None
            if fields.channel_id:
                channel = repo.find_channel(conn, domain, fields.channel_id)
            repo.upsert_video(
                conn,
                domain=domain,
                video_id=fields.video_id,
                url=url,
                name=fields.title or fields.video_id,
                channel_ref=channel.id if channel else None,
                is_requested=True,
                is_downloaded=True,
                release_date=release_date,
                release_date_estimate=release_date,
            )
    except sqlite3.Error as e:
        raise TaskError(ERR_DATABASE, f"Could not record video: {e}")


# ---------- CHANNEL-ADD ----------
def add_channel(ctx: WorkerContext, task_id: int, payload: str):
    data = _load_payload(payload, "url")
    url = data["url"].strip()
    domain = parse_domain(url)
    if domain not in SUPPORTED_CHANNEL_DOMAINS:
        raise TaskError(ERR_UNSUPPORTED_DOMAIN, f"Channels are not supported for domain {domain!r}")

    try:
        channel_id, channel_name = ctx.ytdlp.channel_info(url)
    except ToolError as e:
        raise TaskError(ERR_CHANNEL_LOOKUP, str(e))
    except RecordError as e:
        raise TaskError(ERR_RESOLVE_PARSE, str(e))
    if not channel_id or not channel_name:
        raise TaskError(ERR_CHANNEL_LOOKUP, f"Could not resolve channel for {url}")

    canonical = f"https://www.{domain}/channel/{channel_id}"
    try:
        with ctx.db.connect() as conn:
            repo.insert_channel(conn, domain, canonical, channel_id, channel_name)
    except sqlite3.IntegrityError as e:
        raise TaskError(ERR_CONSTRAINT, f"Channel {channel_name!r} already registered: {e}")
    except sqlite3.Error as e:
        raise TaskError(ERR_DATABASE, str(e))
    logger.info("Task %s: registered channel %s (%s)", task_id, channel_name, channel_id)


# ---------- CHANNEL-FETCH ----------
def channel_videos_url(domain: str, channel_id: str) -> str:
    return f"https://www.{domain}/channel/{channel_id}/videos"


def store_channel_videos(ctx: WorkerContext, domain: str, channel_id: str,
                         limit: Optional[int] = DEFAULT_FETCH_LIMIT,
                         date_after: Optional[str] = None) -> int:
    """
    List a channel's videos and upsert each one as known but not requested.
    Rows with a bad date or an unregistered channel are skipped. Returns the
    number of videos written. Raises ToolError/RecordError from the listing.
    """
    records = ctx.ytdlp.list_channel_videos(
        channel_videos_url(domain, channel_id), limit=limit, date_after=date_after
    )
    logger.debug("Received %d records for %s/%s", len(records), domain, channel_id)

    stored = 0
    channels = {}
    with ctx.db.connect() as conn:
        for rec in records:
            if not rec.video_id or not rec.channel_id:
                logger.error("Record without ids, skipping: %r", rec)
                continue
            try:
                estimate = parse_upload_date(rec.upload_date)
            except ValueError:
                logger.error("Invalid upload_date %r for video %s, skipping", rec.upload_date, rec.video_id)
                continue
            if rec.channel_id not in channels:
                channels[rec.channel_id] = repo.find_channel(conn, domain, rec.channel_id)
            channel = channels[rec.channel_id]
            if channel is None:
                logger.error("Channel %s is not registered, skipping video %s", rec.channel_id, rec.video_id)
                continue
            repo.upsert_video(
                conn,
                domain=domain,
                video_id=rec.video_id,
                url=rec.url or f"https://www.{domain}/watch?v={rec.video_id}",
                name=rec.title or rec.video_id,
                channel_ref=channel.id,
                release_date_estimate=estimate,
            )
            stored += 1
    return stored


def fetch_channel(ctx: WorkerContext, task_id: int, payload: str):
    data = _load_payload(payload, "domain", "channel_id")
    domain = parse_domain(data["domain"])
    if domain not in SUPPORTED_CHANNEL_DOMAINS:
        raise TaskError(ERR_UNSUPPORTED_DOMAIN, f"Fetching is not supported for domain {domain!r}")
    limit = data.get("limit", DEFAULT_FETCH_LIMIT)
    if not isinstance(limit, int) or isinstance(limit, bool) or limit < 0:
        raise TaskError(ERR_MALFORMED_PAYLOAD, f"Invalid limit {limit!r}")

    try:
        stored = store_channel_videos(ctx, domain, data["channel_id"].strip(), limit=limit or None)
    except ToolError as e:
        raise TaskError(ERR_LIST_FAILED, str(e))
    except RecordError as e:
        raise TaskError(ERR_LIST_PARSE, str(e))
    except sqlite3.Error as e:
        raise TaskError(ERR_DATABASE, str(e))
    logger.info("Task %s: stored %d video(s) for channel %s", task_id, stored, data["channel_id"])


HANDLERS: Dict[str, Callable[[WorkerContext, int, str], None]] = {
    VIDEO_DOWNLOAD: download_video,
    CHANNEL_ADD: add_channel,
    CHANNEL_FETCH: fetch_channel,
}
