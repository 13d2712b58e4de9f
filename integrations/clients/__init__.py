from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import aiohttp

from core.errors import DownloadError
from core.utils import info_hash_from_magnet

from . import qbittorrent as qb_mod
from . import transmission as tr_mod


def configured_client(CONFIG: Dict[str, Any]) -> Optional[str]:
    clients = CONFIG.get('clients') if isinstance(CONFIG.get('clients'), dict) else {}
    qb = clients.get('qbittorrent') if isinstance(clients.get('qbittorrent'), dict) else {}
    if qb.get('url') and qb.get('username') is not None and qb.get('password') is not None:
        return 'qbittorrent'
    tr = clients.get('transmission') if isinstance(clients.get('transmission'), dict) else {}
    if tr.get('url'):
        return 'transmission'
    return None


async def add_torrent(
    session: aiohttp.ClientSession,
    uri: str,
    output_path: Optional[str],
    CONFIG: Dict[str, Any],
) -> Dict[str, Any]:
    """Hand a magnet or .torrent URL to the configured download client.

    Returns the client's handle ({id, name, info_hash, files}); raises
    DownloadError when no client is configured or the client refuses.
    """
    which = configured_client(CONFIG)
    clients = CONFIG.get('clients') or {}
    result: Optional[Dict[str, Any]] = None
    if which == 'qbittorrent':
        qb = clients['qbittorrent']
        result = await qb_mod.qbittorrent_add(
            session, qb['url'], qb.get('username') or '', qb.get('password') or '', uri, output_path,
            info_hash=info_hash_from_magnet(uri),
        )
    elif which == 'transmission':
        tr = clients['transmission']
        result = await tr_mod.transmission_add(session, tr['url'], tr.get('username'), tr.get('password'), uri, output_path)
    else:
        raise DownloadError('no download client configured')
    if result is None:
        raise DownloadError(f'{which} rejected the torrent')
    logging.info(f'Added torrent via {which}: {result.get("name") or result.get("id")}')
    return result
