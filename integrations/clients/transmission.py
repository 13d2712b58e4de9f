from __future__ import annotations

from typing import Any, Dict, Optional

import aiohttp


async def transmission_call(
    session: aiohttp.ClientSession,
    base_url: str,
    username: Optional[str],
    password: Optional[str],
    method: str,
    arguments: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    try:
        url = base_url.rstrip('/')
        headers: Dict[str, str] = {}
        auth = aiohttp.BasicAuth(username or '', password or '') if (username or password) else None
        body = {"method": method, "arguments": arguments}
        # A 409 hands out the session id; retry once with it
        for _ in range(2):
            async with session.post(url, json=body, headers=headers, auth=auth, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                status = getattr(resp, 'status', None)
                sid = getattr(resp, 'headers', {}).get('X-Transmission-Session-Id')
                if status == 409 and sid and 'X-Transmission-Session-Id' not in headers:
                    headers['X-Transmission-Session-Id'] = sid
                    continue
                if status not in (200, 204):
                    return None
                try:
                    return await resp.json()
                except Exception:
                    return None
        return None
    except Exception:
        return None


async def transmission_add(
    session: aiohttp.ClientSession,
    base_url: str,
    username: Optional[str],
    password: Optional[str],
    uri: str,
    download_dir: Optional[str],
) -> Optional[Dict[str, Any]]:
    arguments: Dict[str, Any] = {"filename": uri}
    if download_dir:
        arguments["download-dir"] = download_dir
    j = await transmission_call(session, base_url, username, password, 'torrent-add', arguments)
    if not j or j.get('result') != 'success':
        return None
    args = j.get('arguments') or {}
    added = args.get('torrent-added') or args.get('torrent-duplicate')
    if not isinstance(added, dict):
        return None
    info_hash = added.get('hashString')
    return {
        'id': added.get('id'),
        'name': added.get('name'),
        'info_hash': info_hash.lower() if info_hash else None,
        'files': [],
    }
