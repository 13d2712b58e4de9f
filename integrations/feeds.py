"""Syndication feed fetching and item normalization using feedparser."""
from __future__ import annotations

import calendar
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
import feedparser

from core.errors import FeedParseError
from core.filters import preview_feed
from core.models import FeedFilter, FilterLogic, ParsedFeedItem
from core.utils import extract_magnet, extract_size_from_title, to_iso
from integrations.http import fetch

logger = logging.getLogger(__name__)

BITTORRENT_MIME = 'application/x-bittorrent'
_DOWNLOAD_HINTS = ('/download', '/torrent/', 'get.php')
_PAGE_SUFFIXES = ('.html', '.htm')


@dataclass
class FetchFeedResult:
    items: List[ParsedFeedItem] = field(default_factory=list)
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    not_modified: bool = False


def _item_id(title: str, link: Optional[str]) -> str:
    digest = hashlib.sha256(f'{title}\n{link or ""}'.encode('utf-8')).hexdigest()
    return digest[:32]


def _published(entry: Dict[str, Any]) -> Optional[str]:
    parsed = entry.get('published_parsed') or entry.get('updated_parsed')
    if not parsed:
        return None
    try:
        return to_iso(datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc))
    except (OverflowError, ValueError, TypeError):
        return None


def _enclosure_length(entry: Dict[str, Any]) -> Optional[int]:
    for enc in entry.get('enclosures') or []:
        try:
            length = int(enc.get('length') or 0)
        except (TypeError, ValueError):
            continue
        if length > 0:
            return length
    return None


def parse_entry(entry: Dict[str, Any]) -> ParsedFeedItem:
    title = (entry.get('title') or '').strip()
    magnet_uri: Optional[str] = None
    torrent_url: Optional[str] = None

    links = [l for l in (entry.get('links') or []) if l.get('href')]
    for link in links:
        href = link['href']
        if href.startswith('magnet:'):
            magnet_uri = href
        elif href.endswith('.torrent'):
            torrent_url = href
        elif link.get('rel') == 'enclosure':
            if torrent_url is None:
                torrent_url = href
        elif link.get('type') == BITTORRENT_MIME and torrent_url is None:
            torrent_url = href

    for media in entry.get('media_content') or []:
        url = media.get('url')
        if not url:
            continue
        if url.startswith('magnet:'):
            magnet_uri = url
        elif url.endswith('.torrent') or torrent_url is None:
            torrent_url = url

    if magnet_uri is None:
        for content in entry.get('content') or []:
            magnet_uri = extract_magnet(content.get('value'))
            if magnet_uri:
                break
    if magnet_uri is None:
        magnet_uri = extract_magnet(entry.get('summary'))

    if torrent_url is None and magnet_uri is None:
        for link in links:
            href = link['href']
            if href.endswith(_PAGE_SUFFIXES) or '/wiki/' in href:
                continue
            if any(hint in href for hint in _DOWNLOAD_HINTS):
                torrent_url = href
                break

    size = extract_size_from_title(title)
    if size is None:
        size = _enclosure_length(entry)

    item_id = _item_id(title, magnet_uri or torrent_url or entry.get('link'))
    guid = entry.get('id') or entry.get('guid') or item_id
    return ParsedFeedItem(
        id=item_id,
        guid=str(guid),
        title=title,
        magnet_uri=magnet_uri,
        torrent_url=torrent_url,
        size=size,
        published_date=_published(entry),
    )


def parse_feed(content: bytes) -> List[ParsedFeedItem]:
    parsed = feedparser.parse(content)
    if parsed.bozo and not parsed.entries:
        raise FeedParseError(f'feed parse error: {parsed.get("bozo_exception")}')
    return [parse_entry(entry) for entry in parsed.entries]


async def fetch_feed_cached(
    session: aiohttp.ClientSession,
    url: str,
    etag: Optional[str] = None,
    last_modified: Optional[str] = None,
    **http_opts,
) -> FetchFeedResult:
    headers: Dict[str, str] = {}
    if etag:
        headers['If-None-Match'] = etag
    if last_modified:
        headers['If-Modified-Since'] = last_modified
    response = await fetch(session, url, headers=headers, **http_opts)
    if response.status == 304:
        return FetchFeedResult(not_modified=True)
    return FetchFeedResult(
        items=parse_feed(response.body),
        etag=response.header('ETag'),
        last_modified=response.header('Last-Modified'),
    )


async def fetch_feed(session: aiohttp.ClientSession, url: str, **http_opts) -> List[ParsedFeedItem]:
    response = await fetch(session, url, **http_opts)
    return parse_feed(response.body)


async def test_feed(
    session: aiohttp.ClientSession,
    url: str,
    filters: List[FeedFilter],
    logic: FilterLogic = FilterLogic.AND,
    **http_opts,
) -> Dict[str, Any]:
    items = await fetch_feed(session, url, **http_opts)
    logger.info(f'Feed test {url}: {len(items)} item(s)')
    return preview_feed(items, filters, logic)
