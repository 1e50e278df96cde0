from datetime import datetime, timezone, timedelta
from typing import Optional
from urllib.parse import urlparse
import re

import tldextract

# Hosts that serve the same site as another registrable domain
DOMAIN_ALIASES = {
    "youtu.be": "youtube.com",
}

# Public suffix list snapshot bundled with tldextract: no network, no disk cache
_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)

_QUOTES_RE = re.compile(r"[\"'`‘’“”]")
_SPACES_RE = re.compile(r"\s+")


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return to_iso(datetime.now(timezone.utc))


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    # Fixed width so lexical order matches chronological order
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def from_iso(value: str) -> datetime:
    """Parse a timestamp written by now_iso() (or a naive one, taken as UTC)."""
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00").replace(" ", "T"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iso_in_utc_from_seconds_from_now(seconds: float) -> str:
    """Return UTC ISO time `seconds` from now, with 'Z' suffix."""
    return to_iso(datetime.now(timezone.utc) + timedelta(seconds=seconds))


def parse_domain(url: str) -> str:
    """
    Reduce a URL (or bare host) to its registrable domain.

    'https://www.youtube.com/watch?v=x' -> 'youtube.com'
    'youtu.be/x'                        -> 'youtube.com'
    'news.bbc.co.uk'                    -> 'bbc.co.uk'
    'http://192.168.1.10/v.mp4'         -> '192.168.1.10'
    Returns '' when no host can be found.
    """
    if not url or not url.strip():
        return ""
    raw = url.strip()
    if "://" not in raw:
        raw = "https://" + raw
    host = (urlparse(raw).hostname or "").lower().rstrip(".")
    if not host:
        return ""
    ext = _extract(host)
    # IP addresses and single-label hosts have no public suffix
    domain = f"{ext.domain}.{ext.suffix}" if ext.domain and ext.suffix else host
    return DOMAIN_ALIASES.get(domain, domain)


def strip_playlist_query(url: str) -> str:
    """Drop a trailing '&list=...' so a watch URL resolves a single video."""
    return url.split("&list", 1)[0]


def normalize_channel_name(name: str) -> str:
    """
    Routing form of a channel display name: quotes removed, whitespace runs
    replaced with a single hyphen, lowercased.
    """
    stripped = _QUOTES_RE.sub("", name or "").strip()
    return _SPACES_RE.sub("-", stripped).lower()


def parse_upload_date(value: Optional[str]) -> Optional[str]:
    """
    Parse a YYYYMMDD upload date into an ISO date string.
    Returns None for a missing value; raises ValueError for a malformed one.
    """
    if value is None:
        return None
    return datetime.strptime(value.strip(), "%Y%m%d").date().isoformat()
