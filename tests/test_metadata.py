import hashlib
import importlib

import aiohttp
import bencodepy
import pytest
from aioresponses import aioresponses


pytestmark = pytest.mark.asyncio


def _multi_file_torrent():
    info = {
        b'name': b'Show.S01',
        b'piece length': 262144,
        b'pieces': b'\x00' * 20,
        b'files': [
            {b'length': 1000, b'path': [b'Show.S01E01.mkv']},
            {b'length': 20, b'path': [b'extras', b'setup.exe']},
        ],
    }
    return bencodepy.encode({b'announce': b'http://tracker/announce', b'info': info}), info


async def test_decode_multi_file_torrent_flags_files():
    metadata = importlib.import_module('integrations.metadata')
    data, info = _multi_file_torrent()
    meta, info_hash = metadata.decode_torrent(data)
    assert info_hash == hashlib.sha1(bencodepy.encode(info)).hexdigest()
    assert meta.name == 'Show.S01'
    assert meta.file_count == 2
    assert meta.total_size == 1020
    video, exe = meta.files
    assert video.name == 'Show.S01E01.mkv' and video.is_video and not video.is_suspicious
    assert exe.name == 'extras/setup.exe' and exe.is_suspicious


async def test_decode_single_file_torrent():
    metadata = importlib.import_module('integrations.metadata')
    data = bencodepy.encode({b'info': {b'name': b'ubuntu.iso', b'length': 4096, b'pieces': b''}})
    meta, _ = metadata.decode_torrent(data)
    assert meta.file_count == 1
    assert meta.files[0].name == 'ubuntu.iso'
    assert meta.total_size == 4096


async def test_decode_garbage_raises_parse_error():
    metadata = importlib.import_module('integrations.metadata')
    errors = importlib.import_module('core.errors')
    with pytest.raises(errors.FeedParseError):
        metadata.decode_torrent(b'not a torrent')


async def test_fetch_torrent_metadata():
    metadata = importlib.import_module('integrations.metadata')
    data, _ = _multi_file_torrent()
    url = 'http://tracker.local/files/show.torrent'
    with aioresponses() as m:
        m.get(url, status=200, body=data)
        async with aiohttp.ClientSession() as session:
            meta, info_hash = await metadata.fetch_torrent_metadata(session, url, retry_attempts=0)
    assert meta.file_count == 2
    assert len(info_hash) == 40
