from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence

from core.episodes import extract_episode_id, is_quality_upgrade
from core.filters import evaluate_filters
from core.ledger import make_item_key
from core.models import Interest, ParsedFeedItem, PendingMatch, Source, SourceKind, new_id
from core.state import EngineState
from core.utils import has_link, now_utc, to_iso

logger = logging.getLogger(__name__)


def display_name(source: Source) -> str:
    if source.kind is SourceKind.SCRAPER:
        return f'{source.name} (scraper)'
    return source.name


def _episode_gate(state: EngineState, interest: Interest, item: ParsedFeedItem, upgrade: bool) -> bool:
    # Caller holds the seen-episode lock; returns False for a repeated episode
    if not interest.smart_episode_filter or upgrade:
        return True
    episode_id = extract_episode_id(item.title)
    if episode_id is None:
        return True
    if state.seen_episodes.would_duplicate(interest.id, episode_id):
        logger.info(f'Skipping duplicate episode {episode_id} for interest {interest.name}')
        return False
    state.seen_episodes.record(interest.id, episode_id)
    return True


def _build_match(source: Source, interest: Interest, item: ParsedFeedItem, now: datetime) -> PendingMatch:
    return PendingMatch(
        id=new_id(),
        source_id=source.id,
        source_name=display_name(source),
        interest_id=interest.id,
        interest_name=interest.name,
        title=item.title,
        magnet_uri=item.magnet_uri,
        torrent_url=item.torrent_url,
        created_at=to_iso(now),
    )


async def _enqueue(session: Any, state: EngineState, match: PendingMatch, events: Any) -> None:
    await state.pending.push(match)
    if events is not None:
        await events.new_match(session, match)


async def match_items(
    session: Any,
    state: EngineState,
    source: Source,
    interests: Sequence[Interest],
    items: Sequence[ParsedFeedItem],
    events: Any = None,
    now: Optional[datetime] = None,
) -> List[PendingMatch]:
    """Standard mode: every interest is tried per item, first match wins.

    Items that match no interest stay unseen so a later interest can still
    pick them up.
    """
    now = now or now_utc()
    created: List[PendingMatch] = []
    for item in items:
        key = make_item_key(source, item)
        match: Optional[PendingMatch] = None
        async with state.seen_items.lock:
            if state.seen_items.contains(key):
                continue
            if not has_link(item.magnet_uri, item.torrent_url):
                state.seen_items.mark(key, now)
                continue
        # Filters run outside the ledger lock
        candidates = [
            i for i in interests if evaluate_filters(item, i.filters, i.filter_logic) is not None
        ]
        if not candidates:
            continue
        upgrade = is_quality_upgrade(item.title)
        async with state.seen_items.lock:
            if state.seen_items.contains(key):
                continue
            for interest in candidates:
                async with state.seen_episodes.lock:
                    if not _episode_gate(state, interest, item, upgrade):
                        continue
                state.seen_items.mark(key, now)
                match = _build_match(source, interest, item, now)
                break
        if match is not None:
            await _enqueue(session, state, match, events)
            created.append(match)
    return created


async def match_items_for_interest(
    session: Any,
    state: EngineState,
    source: Source,
    interest: Interest,
    items: Sequence[ParsedFeedItem],
    events: Any = None,
    now: Optional[datetime] = None,
) -> List[PendingMatch]:
    """Per-interest mode (search placeholder feeds and scrapers).

    Keys carry the interest id, so every evaluated item is marked seen
    whether or not it matched.
    """
    now = now or now_utc()
    created: List[PendingMatch] = []
    for item in items:
        key = make_item_key(source, item, interest)
        async with state.seen_items.lock:
            if state.seen_items.contains(key):
                continue
            state.seen_items.mark(key, now)
        if not has_link(item.magnet_uri, item.torrent_url):
            continue
        if evaluate_filters(item, interest.filters, interest.filter_logic) is None:
            continue
        async with state.seen_episodes.lock:
            if not _episode_gate(state, interest, item, is_quality_upgrade(item.title)):
                continue
        match = _build_match(source, interest, item, now)
        await _enqueue(session, state, match, events)
        created.append(match)
    return created
