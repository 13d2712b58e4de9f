import importlib

import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL


pytestmark = pytest.mark.asyncio

FEED_URL = 'http://tracker.local/rss'

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Linux ISOs</title>
    <item>
      <title>Ubuntu 24.04 Desktop amd64 5.7 GB</title>
      <guid>ubuntu-2404</guid>
      <link>magnet:?xt=urn:btih:AAAA&amp;dn=ubuntu</link>
      <pubDate>Wed, 01 May 2024 12:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Fedora 40 Workstation</title>
      <guid>fedora-40</guid>
      <link>http://tracker.local/details/fedora.html</link>
      <enclosure url="http://tracker.local/files/fedora-40.torrent" length="2147483648" type="application/x-bittorrent"/>
    </item>
    <item>
      <title>Debian 12 netinst</title>
      <description>Grab it here: magnet:?xt=urn:btih:CCCC now</description>
    </item>
    <item>
      <title>Just a news post</title>
      <link>http://tracker.local/news/1.html</link>
    </item>
  </channel>
</rss>
"""


async def test_parse_feed_normalizes_links_sizes_and_ids():
    feeds = importlib.import_module('integrations.feeds')
    items = feeds.parse_feed(RSS)
    assert [i.title for i in items] == [
        'Ubuntu 24.04 Desktop amd64 5.7 GB',
        'Fedora 40 Workstation',
        'Debian 12 netinst',
        'Just a news post',
    ]
    ubuntu, fedora, debian, news = items

    assert ubuntu.magnet_uri.startswith('magnet:?xt=urn:btih:AAAA')
    assert ubuntu.guid == 'ubuntu-2404'
    assert ubuntu.size == int(5.7 * 1024 ** 3)
    assert ubuntu.published_date == '2024-05-01T12:00:00+00:00'

    assert fedora.torrent_url == 'http://tracker.local/files/fedora-40.torrent'
    assert fedora.magnet_uri is None
    assert fedora.size == 2147483648

    assert debian.magnet_uri == 'magnet:?xt=urn:btih:CCCC'
    # no guid in the feed: falls back to the content hash
    assert debian.guid == debian.id and len(debian.id) == 32

    assert news.link is None


async def test_parse_feed_rejects_garbage():
    feeds = importlib.import_module('integrations.feeds')
    errors = importlib.import_module('core.errors')
    with pytest.raises(errors.FeedParseError):
        feeds.parse_feed(b'this is not xml at all <<<')


async def test_item_ids_are_stable():
    feeds = importlib.import_module('integrations.feeds')
    assert feeds.parse_feed(RSS)[2].id == feeds.parse_feed(RSS)[2].id


async def test_fetch_feed_cached_sends_validators_and_stores_new_ones():
    feeds = importlib.import_module('integrations.feeds')
    with aioresponses() as m:
        m.get(FEED_URL, status=200, body=RSS, headers={'ETag': '"v2"', 'Last-Modified': 'Wed, 01 May 2024 12:00:00 GMT'})
        async with aiohttp.ClientSession() as session:
            result = await feeds.fetch_feed_cached(session, FEED_URL, '"v1"', 'Tue, 30 Apr 2024 12:00:00 GMT', retry_attempts=0)
        sent = m.requests[('GET', URL(FEED_URL))][0].kwargs['headers']
    assert sent['If-None-Match'] == '"v1"'
    assert sent['If-Modified-Since'] == 'Tue, 30 Apr 2024 12:00:00 GMT'
    assert result.not_modified is False
    assert result.etag == '"v2"'
    assert len(result.items) == 4


async def test_fetch_feed_cached_not_modified():
    feeds = importlib.import_module('integrations.feeds')
    with aioresponses() as m:
        m.get(FEED_URL, status=304)
        async with aiohttp.ClientSession() as session:
            result = await feeds.fetch_feed_cached(session, FEED_URL, '"v1"', retry_attempts=0)
    assert result.not_modified is True
    assert result.items == []


async def test_fetch_feed_http_error_raises():
    feeds = importlib.import_module('integrations.feeds')
    errors = importlib.import_module('core.errors')
    with aioresponses() as m:
        m.get(FEED_URL, status=404)
        async with aiohttp.ClientSession() as session:
            with pytest.raises(errors.FetchError):
                await feeds.fetch_feed(session, FEED_URL, retry_attempts=0)


async def test_feed_preview_reports_matches():
    feeds = importlib.import_module('integrations.feeds')
    models = importlib.import_module('core.models')
    filters = [models.FeedFilter(type=models.FilterType.MUST_CONTAIN, value='fedora')]
    with aioresponses() as m:
        m.get(FEED_URL, status=200, body=RSS)
        async with aiohttp.ClientSession() as session:
            out = await feeds.test_feed(session, FEED_URL, filters, retry_attempts=0)
    assert out['total_count'] == 4
    assert out['matched_count'] == 1
    assert [i['title'] for i in out['items'] if i['matches']] == ['Fedora 40 Workstation']
