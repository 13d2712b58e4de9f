from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qs, urlparse

_SIZE_RE = re.compile(r'(\d+(?:\.\d+)?)\s*(TB|GB|MB|KB|TiB|GiB|MiB|KiB)')
_SIZE_MULTIPLIERS = {
    'KB': 1024,
    'KiB': 1024,
    'MB': 1024 ** 2,
    'MiB': 1024 ** 2,
    'GB': 1024 ** 3,
    'GiB': 1024 ** 3,
    'TB': 1024 ** 4,
    'TiB': 1024 ** 4,
}
_TITLE_UNITS = ('KB', 'KiB', 'MB', 'MiB', 'GB', 'GiB')
_BTIH_PREFIX = 'urn:btih:'


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_size(text: Optional[str], *, allow_terabytes: bool = True) -> Optional[int]:
    # Binary multipliers for both SI and IEC spellings
    if not text:
        return None
    for m in _SIZE_RE.finditer(text):
        unit = m.group(2)
        if not allow_terabytes and unit not in _TITLE_UNITS:
            continue
        try:
            value = float(m.group(1))
        except ValueError:
            return None
        return int(value * _SIZE_MULTIPLIERS[unit])
    return None


def extract_size_from_title(title: Optional[str]) -> Optional[int]:
    return parse_size(title, allow_terabytes=False)


def extract_magnet(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    start = text.find('magnet:?')
    if start < 0:
        return None
    rest = text[start:]
    end = len(rest)
    for i, ch in enumerate(rest):
        if ch.isspace() or ch in '<"\'':
            end = i
            break
    return rest[:end]


def info_hash_from_magnet(uri: Optional[str]) -> Optional[str]:
    if not uri or not uri.startswith('magnet:'):
        return None
    try:
        params = parse_qs(urlparse(uri).query)
    except ValueError:
        return None
    for xt in params.get('xt', []):
        if xt.lower().startswith(_BTIH_PREFIX):
            return xt[len(_BTIH_PREFIX):].lower() or None
    return None


def has_link(magnet_uri: Optional[str], torrent_url: Optional[str]) -> bool:
    return bool(magnet_uri) or bool(torrent_url)
