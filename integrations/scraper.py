from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urljoin

import aiohttp
import soupsieve
from bs4 import BeautifulSoup

from core.errors import FeedParseError
from core.models import SEARCH_PLACEHOLDER, Interest, ParsedFeedItem, ScraperSettings, Source
from core.utils import extract_magnet, parse_size
from integrations.http import RequestManager

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = 'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)'

_request_manager = RequestManager()


def build_search_url(source: Source, interest: Interest) -> str:
    template = source.scraper.search_url_template if source.scraper else None
    if not template:
        return source.url
    return template.replace(SEARCH_PLACEHOLDER, quote(interest.effective_search_term, safe=''))


def _compile(selector: str, label: str):
    try:
        return soupsieve.compile(selector)
    except soupsieve.SelectorSyntaxError as e:
        raise FeedParseError(f'invalid {label} selector: {selector}') from e


def _link_for(element, base_url: str) -> Dict[str, Optional[str]]:
    href = element.get('href') or ''
    if href.startswith('magnet:'):
        return {'magnet_uri': href, 'torrent_url': None}
    if href.endswith('.torrent') or '/download' in href:
        return {'magnet_uri': None, 'torrent_url': urljoin(base_url, href)}
    return {'magnet_uri': extract_magnet(element.get_text()), 'torrent_url': None}


def parse_page(html: str, settings: ScraperSettings, base_url: str) -> List[ParsedFeedItem]:
    item_sel = _compile(settings.item_selector, 'item')
    title_sel = _compile(settings.title_selector, 'title')
    link_sel = _compile(settings.link_selector, 'link')
    size_sel = _compile(settings.size_selector, 'size') if settings.size_selector else None

    soup = BeautifulSoup(html, 'lxml')
    items: List[ParsedFeedItem] = []
    for node in item_sel.select(soup):
        title_node = title_sel.select_one(node)
        title = title_node.get_text().strip() if title_node is not None else ''
        if not title:
            continue
        link_node = link_sel.select_one(node)
        if link_node is None:
            continue
        links = _link_for(link_node, base_url)
        if not links['magnet_uri'] and not links['torrent_url']:
            continue
        size = None
        if size_sel is not None:
            size_node = size_sel.select_one(node)
            if size_node is not None:
                size = parse_size(size_node.get_text())
        # Scraped rows carry no stable id; the title stands in for both
        items.append(ParsedFeedItem(id=title, guid=title, title=title, size=size, **links))
    return items


async def scrape_page(
    session: aiohttp.ClientSession,
    source: Source,
    url: str,
    **http_opts,
) -> List[ParsedFeedItem]:
    if source.scraper is None:
        raise FeedParseError(f'source {source.name} has no scraper settings')
    response = await _request_manager.throttled_fetch(
        session,
        f'scraper:{source.id}',
        url,
        min_interval_ms=source.scraper.request_delay_ms,
        max_concurrent=1,
        headers={'User-Agent': BROWSER_USER_AGENT},
        **http_opts,
    )
    items = parse_page(response.text(), source.scraper, source.url)
    logger.debug(f'Scraped {len(items)} item(s) from {url}')
    return items


async def test_scraper(session: aiohttp.ClientSession, source: Source, **http_opts) -> Dict[str, Any]:
    items = await scrape_page(session, source, source.url, **http_opts)
    return {'items': [i.to_dict() for i in items], 'total_count': len(items)}
