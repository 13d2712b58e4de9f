from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

from core.backoff import is_in_backoff, record_failure, record_success
from core.errors import FetchError, NotFoundError
from core.matcher import match_items, match_items_for_interest
from core.models import SEARCH_PLACEHOLDER, Interest, Source, SourceKind
from core.state import EngineState
from core.utils import now_utc, parse_iso, to_iso


@dataclass
class SchedulerDeps:
    # collaborators
    fetch_feed: Callable[..., Awaitable[Any]]
    fetch_feed_cached: Callable[..., Awaitable[Any]]
    scrape: Callable[..., Awaitable[Any]]
    build_scrape_url: Callable[[Source, Interest], str]
    save_state: Callable[[EngineState], Awaitable[None]]
    event_bus: Any

    # timing
    check_interval_minutes: int = 15
    tick_seconds: float = 60.0
    max_concurrent_sources: int = 1

    # logging/flags
    debug_logging: bool = False
    log_fn: Callable[[str], None] = logging.info


class Metrics:
    def __init__(self) -> None:
        self.checked = 0
        self.failed = 0
        self.not_modified = 0
        self.matched = 0
        # per-source counters keyed 'src:<name>:<counter>'
        self.extra: Dict[str, int] = {}

    def get(self, key: str, default: int = 0) -> int:
        if key in ('checked', 'failed', 'not_modified', 'matched'):
            return getattr(self, key)
        return self.extra.get(key, default)

    def __getitem__(self, key: str) -> int:
        return self.get(key, 0)

    def bump(self, key: str, source: Optional[Source] = None, amount: int = 1) -> None:
        setattr(self, key, getattr(self, key) + amount)
        if source is not None:
            skey = f'src:{source.name}:{key}'
            self.extra[skey] = self.extra.get(skey, 0) + amount


def summarize(state: EngineState, metrics: Metrics, tick_seconds: float) -> Dict[str, Any]:
    per_source: Dict[str, Dict[str, int]] = {}
    for ek in metrics.extra:
        parts = ek.split(':', 2)
        if len(parts) == 3 and parts[0] == 'src':
            per_source.setdefault(parts[1], {})
    for name in per_source:
        per_source[name] = {
            'checked': metrics.get(f'src:{name}:checked'),
            'failed': metrics.get(f'src:{name}:failed'),
            'not_modified': metrics.get(f'src:{name}:not_modified'),
            'matched': metrics.get(f'src:{name}:matched'),
        }
    next_run = to_iso(now_utc() + timedelta(seconds=tick_seconds))
    return {
        'checked': metrics.checked,
        'failed': metrics.failed,
        'not_modified': metrics.not_modified,
        'matched': metrics.matched,
        'pending': len(state.pending),
        'seen_items': len(state.seen_items),
        'per_source': per_source,
        'next_run': next_run,
    }


def build_feed_url(source: Source, interest: Interest) -> str:
    return source.url.replace(SEARCH_PLACEHOLDER, quote(interest.effective_search_term, safe=''))


def is_due(source: Source, now: datetime, global_due: bool) -> bool:
    if source.next_check_at is None:
        return global_due
    next_check = parse_iso(source.next_check_at)
    if next_check is None:
        return True
    return now >= next_check


def global_pass_due(state: EngineState, now: datetime, interval_minutes: int) -> bool:
    if state.last_global_check is None:
        return True
    return (now - state.last_global_check) >= timedelta(minutes=interval_minutes)


def _per_interest_mode(source: Source) -> bool:
    return source.kind is SourceKind.SCRAPER or source.has_search_placeholder


async def _check_per_interest(
    session: Any,
    state: EngineState,
    source: Source,
    interests: List[Interest],
    deps: SchedulerDeps,
    now: datetime,
) -> int:
    matched = 0
    failures = 0
    last_error: Optional[Exception] = None
    for interest in interests:
        try:
            if source.kind is SourceKind.SCRAPER:
                items = await deps.scrape(session, source, deps.build_scrape_url(source, interest))
            else:
                items = await deps.fetch_feed(session, build_feed_url(source, interest))
        except FetchError as e:
            failures += 1
            last_error = e
            logging.warning(f'Source {source.name}: fetch for interest {interest.name} failed: {e}')
            continue
        created = await match_items_for_interest(session, state, source, interest, items, deps.event_bus, now)
        matched += len(created)
    if interests and failures == len(interests) and last_error is not None:
        raise last_error
    return matched


async def check_source(
    session: Any,
    state: EngineState,
    source: Source,
    interests: List[Interest],
    deps: SchedulerDeps,
    *,
    now: Optional[datetime] = None,
    use_cache: bool = True,
    metrics: Optional[Metrics] = None,
) -> int:
    """Fetch one source and run its items through the matcher.

    With `use_cache` a standard feed sends its stored validators and picks up
    new ones; a not-modified answer returns 0 without touching any ledger.
    Fetch errors propagate to the caller.
    """
    now = now or now_utc()
    if _per_interest_mode(source):
        return await _check_per_interest(session, state, source, interests, deps, now)

    if use_cache:
        result = await deps.fetch_feed_cached(session, source.url, source.etag, source.last_modified)
        if result.not_modified:
            if metrics is not None:
                metrics.bump('not_modified', source)
            if deps.debug_logging:
                logging.info(f'Source {source.name}: not modified')
            return 0
        if result.etag:
            source.etag = result.etag
        if result.last_modified:
            source.last_modified = result.last_modified
        items = result.items
    else:
        items = await deps.fetch_feed(session, source.url)
    created = await match_items(session, state, source, interests, items, deps.event_bus, now)
    return len(created)


async def _poll_source(
    session: Any,
    state: EngineState,
    source: Source,
    interests: List[Interest],
    deps: SchedulerDeps,
    metrics: Metrics,
    now: datetime,
) -> int:
    metrics.bump('checked', source)
    count = 0
    try:
        count = await check_source(session, state, source, interests, deps, now=now, metrics=metrics)
        record_success(source)
        if count:
            logging.info(f'Source {source.name} queued {count} new item(s) for screening')
            metrics.bump('matched', source, count)
    except Exception as e:
        metrics.bump('failed', source)
        delay = record_failure(source, now)
        logging.warning(f'Failed to check source {source.name}: {e}')
        logging.info(f'Source {source.name} will retry in {int(delay.total_seconds() // 60)} minutes')
    interval = source.check_interval_minutes or deps.check_interval_minutes
    source.next_check_at = to_iso(now + timedelta(minutes=interval))
    source.last_checked = to_iso(now)
    return count


async def _persist(state: EngineState, deps: SchedulerDeps) -> None:
    try:
        await deps.save_state(state)
    except Exception as e:
        logging.error(f'Failed to persist state: {e}')


async def run_tick(
    session: Any,
    state: EngineState,
    deps: SchedulerDeps,
    now: Optional[datetime] = None,
) -> Metrics:
    now = now or now_utc()
    metrics = Metrics()
    await state.seen_items.maybe_cleanup(now)

    interests = await state.enabled_interests()
    if not interests:
        if deps.debug_logging:
            logging.info('No enabled interests; skipping tick')
        return metrics

    global_due = global_pass_due(state, now, deps.check_interval_minutes)
    due: List[Source] = []
    for source in await state.snapshot_sources():
        if not source.enabled or is_in_backoff(source, now):
            continue
        if is_due(source, now, global_due):
            due.append(source)

    if due:
        sem = asyncio.Semaphore(max(1, deps.max_concurrent_sources))

        async def _bounded(src: Source) -> int:
            async with sem:
                return await _poll_source(session, state, src, interests, deps, metrics, now)

        results = await asyncio.gather(*[_bounded(s) for s in due], return_exceptions=True)
        for src, res in zip(due, results):
            if isinstance(res, Exception):
                deps.log_fn(f'Unhandled error checking {src.name}: {res}')
        await state.write_back_sources(due)
        if metrics.matched and deps.event_bus is not None:
            await deps.event_bus.pending_count(session, len(state.pending))

    if global_due:
        state.last_global_check = now
    await _persist(state, deps)
    return metrics


async def check_now(session: Any, state: EngineState, deps: SchedulerDeps) -> int:
    """Check every enabled source immediately, ignoring schedule and backoff."""
    interests = await state.enabled_interests()
    if not interests:
        logging.info('No enabled interests, skipping feed check')
        return 0
    total = 0
    for source in await state.snapshot_sources():
        if not source.enabled:
            continue
        try:
            count = await check_source(session, state, source, interests, deps, use_cache=False)
        except Exception as e:
            logging.warning(f'Failed to check source {source.name}: {e}')
            continue
        if count:
            logging.info(f'Source {source.name} matched {count} new item(s)')
        total += count
    if total and deps.event_bus is not None:
        await deps.event_bus.pending_count(session, len(state.pending))
    await _persist(state, deps)
    return total


async def recheck_interest(session: Any, state: EngineState, deps: SchedulerDeps, interest_id: str) -> int:
    interest = await state.find_interest(interest_id)
    if interest is None:
        raise NotFoundError(f'interest {interest_id} not found')
    if not interest.enabled:
        return 0
    total = 0
    for source in await state.snapshot_sources():
        if not source.enabled:
            continue
        try:
            count = await check_source(session, state, source, [interest], deps, use_cache=False)
        except Exception as e:
            logging.warning(f'Failed to check source {source.name} for alternatives: {e}')
            continue
        if count:
            logging.info(f"Found {count} alternative(s) for interest '{interest.name}' from source '{source.name}'")
        total += count
    if total and deps.event_bus is not None:
        await deps.event_bus.pending_count(session, len(state.pending))
    return total


def _log_summary(summary: Dict[str, Any], deps: SchedulerDeps) -> None:
    log_fn = deps.log_fn
    log_fn('Tick summary:')
    log_fn(
        f"  checked={summary['checked']} failed={summary['failed']} not_modified={summary['not_modified']} matched={summary['matched']}"
    )
    log_fn(f"  pending={summary['pending']} seen_items={summary['seen_items']}")
    for name, s in (summary.get('per_source') or {}).items():
        log_fn(
            f"  {name}: checked={s['checked']} failed={s['failed']} not_modified={s['not_modified']} matched={s['matched']}"
        )


async def run_forever(
    session: Any,
    state: EngineState,
    deps: SchedulerDeps,
    stop_event: asyncio.Event,
) -> None:
    while not stop_event.is_set():
        try:
            metrics = await run_tick(session, state, deps)
        except Exception as e:
            deps.log_fn(f'Unhandled error in scheduler tick: {e}')
        else:
            if metrics.checked:
                _log_summary(summarize(state, metrics, deps.tick_seconds), deps)
        if deps.event_bus is not None:
            await deps.event_bus.flush(session)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=deps.tick_seconds)
        except asyncio.TimeoutError:
            pass
    logging.info('Scheduler shutting down')
    await _persist(state, deps)
