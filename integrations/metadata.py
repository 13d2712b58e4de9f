from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, List, Tuple

import aiohttp
import bencodepy

from core.errors import FeedParseError
from core.models import TorrentFilePreview, TorrentMetadata
from integrations.http import fetch

VIDEO_EXTENSIONS = ('.mkv', '.mp4', '.avi', '.mov', '.wmv', '.webm', '.m4v', '.ts')
SUSPICIOUS_EXTENSIONS = ('.exe', '.msi', '.bat', '.cmd', '.scr', '.vbs', '.js', '.jar', '.ps1', '.dll')


def is_video_file(name: str) -> bool:
    return name.lower().endswith(VIDEO_EXTENSIONS)


def is_suspicious_file(name: str) -> bool:
    return name.lower().endswith(SUSPICIOUS_EXTENSIONS)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value or '')


def _preview(name: str, size: int) -> TorrentFilePreview:
    return TorrentFilePreview(
        name=name,
        size=size,
        is_video=is_video_file(name),
        is_suspicious=is_suspicious_file(name),
    )


def decode_torrent(data: bytes) -> Tuple[TorrentMetadata, str]:
    """Decode raw .torrent bytes into a file listing and the v1 info hash."""
    try:
        torrent = bencodepy.decode(data)
        info: Dict[bytes, Any] = torrent[b'info']
    except Exception as e:
        raise FeedParseError(f'failed to decode torrent data: {e}') from e
    info_hash = hashlib.sha1(bencodepy.encode(info)).hexdigest()

    name = _text(info.get(b'name.utf-8') or info.get(b'name')) or 'Unknown'
    files: List[TorrentFilePreview] = []
    if b'files' in info:
        for entry in info[b'files']:
            parts = entry.get(b'path.utf-8') or entry.get(b'path') or []
            path = '/'.join(_text(p) for p in parts)
            files.append(_preview(path, int(entry.get(b'length') or 0)))
    else:
        files.append(_preview(name, int(info.get(b'length') or 0)))

    metadata = TorrentMetadata(
        name=name,
        total_size=sum(f.size for f in files),
        file_count=len(files),
        files=files,
    )
    return metadata, info_hash


async def fetch_torrent_metadata(session: aiohttp.ClientSession, url: str, **http_opts) -> Tuple[TorrentMetadata, str]:
    response = await fetch(session, url, **http_opts)
    metadata, info_hash = decode_torrent(response.body)
    logging.info(f'Metadata for {metadata.name}: {metadata.file_count} file(s), {metadata.total_size} bytes')
    return metadata, info_hash
