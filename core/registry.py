from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Union

from core.errors import InvalidInputError, NotFoundError
from core.models import Interest, Source, SourceKind, new_id
from core.state import EngineState


def _coerce_source(source: Union[Source, Dict[str, Any]]) -> Source:
    if isinstance(source, Source):
        return source
    if not isinstance(source, dict):
        raise InvalidInputError('source must be a mapping')
    try:
        return Source.from_dict(source)
    except ValueError as e:
        raise InvalidInputError(f'invalid source: {e}') from e


def _coerce_interest(interest: Union[Interest, Dict[str, Any]]) -> Interest:
    if isinstance(interest, Interest):
        return interest
    if not isinstance(interest, dict):
        raise InvalidInputError('interest must be a mapping')
    try:
        return Interest.from_dict(interest)
    except ValueError as e:
        raise InvalidInputError(f'invalid interest: {e}') from e


def _validate_source(source: Source) -> None:
    if not source.url.strip():
        raise InvalidInputError('source url is required')
    if source.kind is SourceKind.SCRAPER:
        s = source.scraper
        if s is None or not (s.item_selector and s.title_selector and s.link_selector):
            raise InvalidInputError('scraper sources need item, title and link selectors')


async def list_sources(state: EngineState) -> List[Source]:
    return await state.snapshot_sources()


async def add_source(state: EngineState, source: Union[Source, Dict[str, Any]]) -> Source:
    src = _coerce_source(source)
    if not src.id:
        src.id = new_id()
    _validate_source(src)
    async with state.sources_lock:
        for existing in state.sources:
            if existing.url == src.url:
                raise InvalidInputError(f'a source with url {src.url} already exists')
        state.sources.append(src)
    logging.info(f'Added source {src.name} ({src.url})')
    return copy.deepcopy(src)


async def update_source(state: EngineState, source: Union[Source, Dict[str, Any]]) -> Source:
    src = _coerce_source(source)
    _validate_source(src)
    async with state.sources_lock:
        for idx, existing in enumerate(state.sources):
            if existing.id == src.id:
                state.sources[idx] = src
                return copy.deepcopy(src)
    raise NotFoundError(f'source {src.id} not found')


async def remove_source(state: EngineState, source_id: str) -> Source:
    async with state.sources_lock:
        for idx, existing in enumerate(state.sources):
            if existing.id == source_id:
                removed = state.sources.pop(idx)
                break
        else:
            raise NotFoundError(f'source {source_id} not found')
    async with state.seen_items.lock:
        dropped = state.seen_items.remove_prefix(f'{source_id}:')
    logging.info(f'Removed source {removed.name}; forgot {dropped} seen items')
    return removed


async def toggle_source(state: EngineState, source_id: str, enabled: bool) -> Source:
    async with state.sources_lock:
        for existing in state.sources:
            if existing.id == source_id:
                existing.enabled = bool(enabled)
                return copy.deepcopy(existing)
    raise NotFoundError(f'source {source_id} not found')


async def list_interests(state: EngineState) -> List[Interest]:
    return await state.snapshot_interests()


async def add_interest(state: EngineState, interest: Union[Interest, Dict[str, Any]]) -> Interest:
    it = _coerce_interest(interest)
    if not it.name.strip():
        raise InvalidInputError('interest name is required')
    if not it.id:
        it.id = new_id()
    async with state.interests_lock:
        if any(existing.id == it.id for existing in state.interests):
            raise InvalidInputError(f'interest {it.id} already exists')
        state.interests.append(it)
    logging.info(f'Added interest {it.name} with {len(it.filters)} filter(s)')
    return copy.deepcopy(it)


async def update_interest(state: EngineState, interest: Union[Interest, Dict[str, Any]]) -> Interest:
    it = _coerce_interest(interest)
    if not it.name.strip():
        raise InvalidInputError('interest name is required')
    async with state.interests_lock:
        for idx, existing in enumerate(state.interests):
            if existing.id == it.id:
                state.interests[idx] = it
                return copy.deepcopy(it)
    raise NotFoundError(f'interest {it.id} not found')


async def remove_interest(state: EngineState, interest_id: str) -> Interest:
    async with state.interests_lock:
        for idx, existing in enumerate(state.interests):
            if existing.id == interest_id:
                removed = state.interests.pop(idx)
                break
        else:
            raise NotFoundError(f'interest {interest_id} not found')
    async with state.seen_episodes.lock:
        state.seen_episodes.forget_interest(interest_id)
    logging.info(f'Removed interest {removed.name}')
    return removed


async def toggle_interest(state: EngineState, interest_id: str, enabled: bool) -> Interest:
    async with state.interests_lock:
        for existing in state.interests:
            if existing.id == interest_id:
                existing.enabled = bool(enabled)
                return copy.deepcopy(existing)
    raise NotFoundError(f'interest {interest_id} not found')


def describe_sources(sources: List[Source]) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in sources]


def describe_interests(interests: List[Interest]) -> List[Dict[str, Any]]:
    return [i.to_dict() for i in interests]
