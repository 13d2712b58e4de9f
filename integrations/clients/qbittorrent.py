from __future__ import annotations

from typing import Any, Dict, Optional

import aiohttp


async def qbittorrent_login(
    session: aiohttp.ClientSession,
    base_url: str,
    username: str,
    password: str,
) -> bool:
    login_url = base_url.rstrip('/') + '/api/v2/auth/login'
    form = aiohttp.FormData()
    form.add_field('username', username)
    form.add_field('password', password)
    async with session.post(login_url, data=form, timeout=aiohttp.ClientTimeout(total=5)) as resp:
        return getattr(resp, 'status', None) == 200


async def qbittorrent_get_info(
    session: aiohttp.ClientSession,
    base_url: str,
    info_hash: str,
) -> Optional[Dict[str, Any]]:
    try:
        info_url = base_url.rstrip('/') + '/api/v2/torrents/info'
        async with session.get(info_url, params={'hashes': info_hash}, timeout=aiohttp.ClientTimeout(total=5)) as r:
            if getattr(r, 'status', None) != 200:
                return None
            data = await r.json()
        if isinstance(data, list) and data:
            return data[0]
        return None
    except Exception:
        return None


async def qbittorrent_add(
    session: aiohttp.ClientSession,
    base_url: str,
    username: str,
    password: str,
    uri: str,
    save_path: Optional[str],
    info_hash: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    try:
        if not await qbittorrent_login(session, base_url, username, password):
            return None
        add_url = base_url.rstrip('/') + '/api/v2/torrents/add'
        form = aiohttp.FormData()
        form.add_field('urls', uri)
        if save_path:
            form.add_field('savepath', save_path)
        async with session.post(add_url, data=form, timeout=aiohttp.ClientTimeout(total=10)) as resp:
            if getattr(resp, 'status', None) != 200:
                return None
    except Exception:
        return None
    # The add endpoint only answers "Ok."; look the torrent up when the hash is known
    info = await qbittorrent_get_info(session, base_url, info_hash) if info_hash else None
    return {
        'id': info_hash or uri,
        'name': (info or {}).get('name'),
        'info_hash': info_hash,
        'files': [],
    }
