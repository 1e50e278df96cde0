"""
Line-record protocol with the yt-dlp command line tool.

Every mode asks yt-dlp to `--print` a fixed list of template fields joined by
SEPARATOR, one record per line. RecordDecoder turns those lines into dicts,
mapping the tool's "NA" placeholder to None, so callers never see the raw
text format.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .errors import ToolError, RecordError

logger = logging.getLogger(__name__)

# Letters only: yt-dlp rewrites punctuation when it prints a filename
SEPARATOR = " TQFIELDSEPARATOR "
NA = "NA"

DEFAULT_TIMEOUT = 6 * 3600
QUERY_TIMEOUT = 600


class RecordDecoder:
    """Decode SEPARATOR-joined lines with a fixed, named set of fields."""

    def __init__(self, fields: Sequence[str]):
        self.fields = tuple(fields)

    @property
    def template(self) -> str:
        return SEPARATOR.join(f"%({name})s" for name in self.fields)

    def decode_line(self, line: str) -> Dict[str, Optional[str]]:
        parts = [p.strip() for p in line.split(SEPARATOR.strip())]
        if len(parts) != len(self.fields):
            raise RecordError(
                f"Expected {len(self.fields)} fields, got {len(parts)}: {line!r}"
            )
        return {
            name: (None if value == NA or value == "" else value)
            for name, value in zip(self.fields, parts)
        }

    def decode_one(self, text: str) -> Dict[str, Optional[str]]:
        """Decode output that must contain exactly one record."""
        lines = [ln for ln in text.splitlines() if ln.strip()]
        if len(lines) != 1:
            raise RecordError(f"Expected one record, got {len(lines)} lines")
        return self.decode_line(lines[0])

    def decode_many(self, text: str) -> List[Dict[str, Optional[str]]]:
        """
        Decode a batch, skipping malformed lines. Raises RecordError only when
        there was output but not a single line could be decoded.
        """
        records = []
        bad = 0
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                records.append(self.decode_line(line))
            except RecordError as e:
                bad += 1
                logger.error("Skipping malformed record: %s", e)
        if bad and not records:
            raise RecordError(f"None of {bad} output lines could be decoded")
        return records


FILENAME_FIELDS = RecordDecoder(["channel_id", "channel", "upload_date", "title", "id"])
CHANNEL_FIELDS = RecordDecoder(["channel_id", "channel"])
VIDEO_LIST_FIELDS = RecordDecoder(
    ["channel_id", "channel", "webpage_url", "upload_date", "title", "id"]
)


@dataclass(frozen=True)
class FilenameFields:
    channel_id: Optional[str]
    channel: Optional[str]
    upload_date: Optional[str]
    title: Optional[str]
    video_id: Optional[str]

    @property
    def year(self) -> Optional[str]:
        if self.upload_date and len(self.upload_date) >= 4 and self.upload_date[:4].isdigit():
            return self.upload_date[:4]
        return None


@dataclass(frozen=True)
class VideoRecord:
    channel_id: Optional[str]
    channel: Optional[str]
    url: Optional[str]
    upload_date: Optional[str]
    title: Optional[str]
    video_id: Optional[str]


class YtDlp:
    """
    Invokes the yt-dlp binary. `runner` has the signature of subprocess.run
    and exists so tests can stand in for the real tool.
    """

    def __init__(self, binary: str = "yt-dlp", runner: Optional[Callable] = None):
        self.binary = binary
        self.runner = runner or subprocess.run

    def _run(self, args: List[str], timeout: float = QUERY_TIMEOUT) -> str:
        cmd = [self.binary, *args]
        logger.debug("Running %s", cmd)
        try:
            proc = self.runner(cmd, capture_output=True, timeout=timeout)
        except FileNotFoundError:
            raise ToolError(f"{self.binary} not found")
        except subprocess.TimeoutExpired:
            raise ToolError(f"{self.binary} timed out after {timeout}s")
        except OSError as e:
            raise ToolError(f"Could not start {self.binary}: {e}")

        stderr = (proc.stderr or b"").decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            raise ToolError(
                f"{self.binary} exited with code {proc.returncode}",
                returncode=proc.returncode,
                stderr=stderr,
            )
        try:
            return (proc.stdout or b"").decode("utf-8")
        except UnicodeDecodeError as e:
            raise RecordError(f"Output is not valid UTF-8: {e}")

    # ---------- Modes ----------
    def resolve_filename_fields(self, url: str) -> FilenameFields:
        out = self._run(["--no-playlist", "--print", "filename", "-o", FILENAME_FIELDS.template, url])
        rec = FILENAME_FIELDS.decode_one(out)
        return FilenameFields(
            channel_id=rec["channel_id"],
            channel=rec["channel"],
            upload_date=rec["upload_date"],
            title=rec["title"],
            video_id=rec["id"],
        )

    def download(self, url: str, output_template: str, sub_lang: str):
        """Download one video with metadata, thumbnail and subtitles embedded."""
        self._run(
            [
                "--no-playlist",
                "--embed-metadata",
                "--write-thumbnail",
                "--convert-thumbnails", "jpg",
                "--write-subs",
                "--write-auto-subs",
                "--convert-subs", "srt",
                "--sub-lang", sub_lang,
                "-o", output_template,
                url,
            ],
            timeout=DEFAULT_TIMEOUT,
        )

    def channel_info(self, url: str):
        """Return (channel_id, channel_name) read from the channel's first item."""
        out = self._run(
            ["--skip-download", "--playlist-items", "1", "--print", CHANNEL_FIELDS.template, url]
        )
        rec = CHANNEL_FIELDS.decode_one(out)
        return rec["channel_id"], rec["channel"]

    def list_channel_videos(self, url: str, limit: Optional[int] = None,
                            date_after: Optional[str] = None) -> List[VideoRecord]:
        """
        List a channel's videos, newest first. `limit` caps the item count and
        `date_after` (e.g. 'today-2days') stops at the first older upload.
        """
        args = [
            "--skip-download",
            "--extractor-args", "youtubetab:approximate_date",
            "--print", VIDEO_LIST_FIELDS.template,
        ]
        if limit:
            args += ["--playlist-end", str(limit)]
        if date_after:
            args += ["--dateafter", date_after, "--break-on-reject", "--lazy-playlist"]
        args.append(url)
        out = self._run(args, timeout=DEFAULT_TIMEOUT)
        return [
            VideoRecord(
                channel_id=rec["channel_id"],
                channel=rec["channel"],
                url=rec["webpage_url"],
                upload_date=rec["upload_date"],
                title=rec["title"],
                video_id=rec["id"],
            )
            for rec in VIDEO_LIST_FIELDS.decode_many(out)
        ]
