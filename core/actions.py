from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.errors import InvalidInputError, NotFoundError
from core.models import BadItem, PendingMatch, TorrentMetadata
from core.state import EngineState
from core.utils import now_utc, to_iso


@dataclass
class ActionsDeps:
    add_torrent: Callable[[Any, str, Optional[str]], Awaitable[Dict[str, Any]]]
    fetch_metadata: Callable[[Any, str], Awaitable[Any]]
    recheck_interest: Callable[[Any, str], Awaitable[int]]
    event_bus: Any
    default_download_path: Optional[str] = None
    debug_logging: bool = False


async def _emit_count(session: Any, state: EngineState, deps: ActionsDeps) -> None:
    if deps.event_bus is not None:
        await deps.event_bus.pending_count(session, await state.pending.count())


async def list_pending(state: EngineState) -> List[PendingMatch]:
    return await state.pending.list()


async def pending_count(state: EngineState) -> int:
    return await state.pending.count()


async def resolve_download_path(state: EngineState, match: PendingMatch, deps: ActionsDeps) -> Optional[str]:
    interest = await state.find_interest(match.interest_id)
    if interest is not None and interest.download_path:
        return interest.download_path
    return deps.default_download_path


def _require_link(match: PendingMatch) -> None:
    if not match.link:
        logging.warning(f'No torrent URI for match: {match.title}')
        raise InvalidInputError('match has no magnet URI or torrent URL')


async def approve_match(session: Any, state: EngineState, match_id: str, deps: ActionsDeps) -> Any:
    """Remove a pending match and hand its link to the download client.

    Returns the client's handle id. A match without any link is refused
    and stays queued; if the client fails the match is put back.
    """
    match = await state.pending.take(match_id, _require_link)
    if match is None:
        raise NotFoundError(f'pending match {match_id} not found')
    uri = match.link
    path = await resolve_download_path(state, match, deps)
    try:
        handle = await deps.add_torrent(session, uri, path)
    except Exception:
        await state.pending.push(match)
        raise
    logging.info(f'Approved {match.title} for interest {match.interest_name} -> {path or "client default"}')
    await _emit_count(session, state, deps)
    return handle.get('id') if isinstance(handle, dict) else handle


async def reject_match(session: Any, state: EngineState, match_id: str, deps: ActionsDeps) -> PendingMatch:
    match = await state.pending.remove(match_id)
    if match is None:
        raise NotFoundError(f'pending match {match_id} not found')
    if deps.debug_logging:
        logging.info(f'Rejected {match.title}')
    await _emit_count(session, state, deps)
    return match


async def mark_bad(
    session: Any,
    state: EngineState,
    deps: ActionsDeps,
    info_hash: str,
    title: str,
    *,
    interest_id: Optional[str] = None,
    interest_name: Optional[str] = None,
    reason: Optional[str] = None,
    trigger_rescan: bool = False,
) -> int:
    key = (info_hash or '').strip().lower()
    if not key:
        raise InvalidInputError('info hash is required')
    item = BadItem(
        info_hash=key,
        title=title,
        marked_at=to_iso(now_utc()),
        interest_id=interest_id,
        interest_name=interest_name,
        reason=reason,
    )
    async with state.bad_items_lock:
        state.bad_items[key] = item
    logging.info(f'Marked bad: {title} ({key})')
    if trigger_rescan and interest_id:
        return await deps.recheck_interest(session, interest_id)
    return 0


async def unmark_bad(state: EngineState, info_hash: str) -> BadItem:
    key = (info_hash or '').strip().lower()
    async with state.bad_items_lock:
        item = state.bad_items.pop(key, None)
    if item is None:
        raise NotFoundError(f'bad item {key} not found')
    return item


async def list_bad(state: EngineState) -> List[BadItem]:
    async with state.bad_items_lock:
        return sorted(state.bad_items.values(), key=lambda b: b.marked_at, reverse=True)


async def fetch_match_metadata(session: Any, state: EngineState, match_id: str, deps: ActionsDeps) -> TorrentMetadata:
    match = await state.pending.get(match_id)
    if match is None:
        raise NotFoundError(f'pending match {match_id} not found')
    if not match.torrent_url:
        raise InvalidInputError('metadata preview needs a .torrent URL')
    result = await deps.fetch_metadata(session, match.torrent_url)
    metadata = result[0] if isinstance(result, tuple) else result
    if not await state.pending.attach_metadata(match_id, metadata):
        raise NotFoundError(f'pending match {match_id} not found')
    return metadata
