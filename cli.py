import argparse
import asyncio
import json
import os
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

import aiohttp

from core import actions
from core import registry
from core.errors import InvalidInputError, NotFoundError, ScreenerError
from core.filters import evaluate_filters
from core.models import FeedFilter, FilterLogic, FilterType, ParsedFeedItem, SourceKind
from core.utils import extract_size_from_title, now_utc, parse_iso
from storage.state_store import load_state, save_state


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _data_dir() -> str:
    return _env('DATA_DIR', '/app/data')


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2))


def _parse_filters(raw_filters: Optional[List[str]]) -> List[FeedFilter]:
    # Each entry is "<type>:<value>", e.g. "must_contain:1080p" or "size_range:100-500"
    out: List[FeedFilter] = []
    for raw in raw_filters or []:
        ftype, sep, value = raw.partition(':')
        if not sep:
            raise InvalidInputError(f'filter must look like type:value, got {raw!r}')
        try:
            out.append(FeedFilter(type=FilterType(ftype.strip().lower()), value=value))
        except ValueError as e:
            raise InvalidInputError(f'unknown filter type {ftype!r}') from e
    return out


def _run(coro):
    return asyncio.run(coro)


def _mutate(fn) -> Any:
    # Load, apply one registry operation, persist
    async def _go():
        state = load_state(_data_dir())
        result = await fn(state)
        await save_state(state, _data_dir())
        return result
    return _run(_go())


def _with_session(fn) -> Any:
    # Same as _mutate for commands that need the network
    async def _go():
        state = load_state(_data_dir())
        async with aiohttp.ClientSession() as session:
            result = await fn(session, state)
        await save_state(state, _data_dir())
        return result
    return _run(_go())


def _scheduler_deps():
    import screener

    return replace(screener.build_scheduler_deps(), save_state=lambda st: save_state(st, _data_dir()))


def _actions_deps(state):
    import screener

    return screener.build_actions_deps(state, _scheduler_deps())


def _offline_deps() -> actions.ActionsDeps:
    return actions.ActionsDeps(add_torrent=None, fetch_metadata=None, recheck_interest=None, event_bus=None)


def cmd_sources(args):
    state = load_state(_data_dir())
    _print(registry.describe_sources(state.sources))


def cmd_add_source(args):
    raw: Dict[str, Any] = {
        'name': args.name,
        'url': args.url,
        'kind': getattr(args, 'kind', None) or 'feed',
        'check_interval_minutes': getattr(args, 'interval', None),
        'use_guid_dedup': not bool(getattr(args, 'no_guid_dedup', False)),
    }
    if raw['kind'] == SourceKind.SCRAPER.value:
        raw['scraper'] = {
            'item_selector': getattr(args, 'item_selector', None),
            'title_selector': getattr(args, 'title_selector', None),
            'link_selector': getattr(args, 'link_selector', None),
            'size_selector': getattr(args, 'size_selector', None),
            'search_url_template': getattr(args, 'search_url_template', None),
        }
    src = _mutate(lambda state: registry.add_source(state, raw))
    _print(src.to_dict())


def cmd_remove_source(args):
    src = _mutate(lambda state: registry.remove_source(state, args.id))
    print(f"Removed {src.name}")


def cmd_toggle_source(args):
    src = _mutate(lambda state: registry.toggle_source(state, args.id, not bool(getattr(args, 'disable', False))))
    print(f"{src.name} enabled={src.enabled}")


def cmd_interests(args):
    state = load_state(_data_dir())
    _print(registry.describe_interests(state.interests))


def cmd_add_interest(args):
    raw: Dict[str, Any] = {
        'name': args.name,
        'filters': [f.to_dict() for f in _parse_filters(getattr(args, 'filter', None))],
        'filter_logic': getattr(args, 'logic', None) or 'and',
        'search_term': getattr(args, 'search_term', None),
        'smart_episode_filter': bool(getattr(args, 'smart_episodes', False)),
        'download_path': getattr(args, 'download_path', None),
    }
    it = _mutate(lambda state: registry.add_interest(state, raw))
    _print(it.to_dict())


def cmd_remove_interest(args):
    it = _mutate(lambda state: registry.remove_interest(state, args.id))
    print(f"Removed {it.name}")


def cmd_seen(args):
    state = load_state(_data_dir())
    entries = state.seen_items.snapshot()
    prefix = getattr(args, 'source', None)
    if prefix:
        entries = {k: v for k, v in entries.items() if k.startswith(f'{prefix}:')}
    _print({'count': len(entries), 'items': entries})


def cmd_clear_seen(args):
    async def _clear(state):
        prefix = getattr(args, 'source', None)
        async with state.seen_items.lock:
            if prefix:
                return state.seen_items.remove_prefix(f'{prefix}:')
            count = len(state.seen_items)
            state.seen_items.clear()
            return count
    removed = _mutate(_clear)
    print(f"Cleared {removed} seen item(s)")


def cmd_bad(args):
    state = load_state(_data_dir())
    items = _run(actions.list_bad(state))
    _print([b.to_dict() for b in items])


def cmd_mark_bad(args):
    kwargs = {
        'interest_id': getattr(args, 'interest', None),
        'reason': getattr(args, 'reason', None),
    }
    if getattr(args, 'rescan', False):
        # Alternatives land in the persisted pending queue
        found = _with_session(lambda session, state: actions.mark_bad(
            session, state, _actions_deps(state), args.info_hash, args.title, trigger_rescan=True, **kwargs,
        ))
    else:
        found = _mutate(lambda state: actions.mark_bad(
            None, state, _offline_deps(), args.info_hash, args.title, **kwargs,
        ))
    _print({'marked': args.info_hash.lower(), 'alternatives_found': found})


def cmd_unmark_bad(args):
    item = _mutate(lambda state: actions.unmark_bad(state, args.info_hash))
    print(f"Unmarked {item.title}")


def cmd_simulate(args):
    title = args.title
    size = extract_size_from_title(title)
    item = ParsedFeedItem(id=title, guid=title, title=title, size=size)
    logic = FilterLogic(getattr(args, 'logic', None) or 'and')
    filters = _parse_filters(getattr(args, 'filter', None))
    if not filters and getattr(args, 'interest', None):
        state = load_state(_data_dir())
        it = next((i for i in state.interests if i.id == args.interest or i.name == args.interest), None)
        if it is None:
            raise NotFoundError(f'interest {args.interest} not found')
        filters, logic = it.filters, it.filter_logic
    desc = evaluate_filters(item, filters, logic)
    _print({'title': title, 'size': size, 'matches': desc is not None, 'matched_filter': desc})


def cmd_test_feed(args):
    from integrations import feeds

    filters = _parse_filters(getattr(args, 'filter', None))
    logic = FilterLogic(getattr(args, 'logic', None) or 'and')

    async def _go():
        async with aiohttp.ClientSession() as session:
            return await feeds.test_feed(session, args.url, filters, logic)

    _print(_run(_go()))


def cmd_check_now(args):
    from core import runner

    async def _check(session, state):
        count = await runner.check_now(session, state, _scheduler_deps())
        return count, [m.to_dict() for m in await state.pending.list()]

    count, matches = _with_session(_check)
    _print({'matched': count, 'matches': matches})


def cmd_pending(args):
    state = load_state(_data_dir())
    _print([m.to_dict() for m in _run(actions.list_pending(state))])


def cmd_approve(args):
    handle = _with_session(lambda session, state: actions.approve_match(
        session, state, args.id, _actions_deps(state),
    ))
    _print({'approved': args.id, 'handle': handle})


def cmd_reject(args):
    match = _mutate(lambda state: actions.reject_match(None, state, args.id, _offline_deps()))
    print(f"Rejected {match.title}")


def cmd_metadata(args):
    metadata = _with_session(lambda session, state: actions.fetch_match_metadata(
        session, state, args.id, _actions_deps(state),
    ))
    _print(metadata.to_dict())


def cmd_status(args):
    state = load_state(_data_dir())
    now = now_utc()
    backing_off = 0
    next_checks = []
    for s in state.sources:
        retry = parse_iso(s.retry_after)
        if retry is not None and retry > now:
            backing_off += 1
        if s.enabled and s.next_check_at:
            next_checks.append(s.next_check_at)
    _print({
        'data_dir': _data_dir(),
        'sources': len(state.sources),
        'enabled_sources': sum(1 for s in state.sources if s.enabled),
        'sources_in_backoff': backing_off,
        'interests': len(state.interests),
        'enabled_interests': sum(1 for i in state.interests if i.enabled),
        'seen_items': len(state.seen_items),
        'bad_items': len(state.bad_items),
        'pending': len(state.pending),
        'next_check': min(next_checks) if next_checks else None,
    })


def _add_filter_args(p) -> None:
    p.add_argument('--filter', action='append', help='Filter as type:value (repeatable)')
    p.add_argument('--logic', choices=['and', 'or'], default='and')


def main():
    ap = argparse.ArgumentParser(description="Feed Screener CLI")
    sub = ap.add_subparsers(dest='cmd')

    sub.add_parser('sources', help='List sources').set_defaults(func=cmd_sources)

    p = sub.add_parser('add-source', help='Add a feed or scraper source')
    p.add_argument('name')
    p.add_argument('url', help='Feed URL ({search} enables per-interest search) or scraper base URL')
    p.add_argument('--kind', choices=['feed', 'scraper'], default='feed')
    p.add_argument('--interval', type=int, help='Check interval in minutes')
    p.add_argument('--no-guid-dedup', action='store_true')
    p.add_argument('--item-selector')
    p.add_argument('--title-selector')
    p.add_argument('--link-selector')
    p.add_argument('--size-selector')
    p.add_argument('--search-url-template')
    p.set_defaults(func=cmd_add_source)

    p = sub.add_parser('remove-source', help='Remove a source and its seen items')
    p.add_argument('id')
    p.set_defaults(func=cmd_remove_source)

    p = sub.add_parser('toggle-source', help='Enable (default) or disable a source')
    p.add_argument('id')
    p.add_argument('--disable', action='store_true')
    p.set_defaults(func=cmd_toggle_source)

    sub.add_parser('interests', help='List interests').set_defaults(func=cmd_interests)

    p = sub.add_parser('add-interest', help='Add an interest')
    p.add_argument('name')
    _add_filter_args(p)
    p.add_argument('--search-term')
    p.add_argument('--smart-episodes', action='store_true')
    p.add_argument('--download-path')
    p.set_defaults(func=cmd_add_interest)

    p = sub.add_parser('remove-interest', help='Remove an interest')
    p.add_argument('id')
    p.set_defaults(func=cmd_remove_interest)

    p = sub.add_parser('seen', help='Show seen-item ledger')
    p.add_argument('--source', help='Only keys of this source id')
    p.set_defaults(func=cmd_seen)

    p = sub.add_parser('clear-seen', help='Clear seen items (all or one source)')
    p.add_argument('--source', help='Source id to clear')
    p.set_defaults(func=cmd_clear_seen)

    sub.add_parser('bad', help='List items marked bad').set_defaults(func=cmd_bad)

    p = sub.add_parser('mark-bad', help='Mark a torrent hash as bad')
    p.add_argument('info_hash')
    p.add_argument('title')
    p.add_argument('--interest', help='Interest id the item came from')
    p.add_argument('--reason')
    p.add_argument('--rescan', action='store_true', help='Re-check sources for the interest')
    p.set_defaults(func=cmd_mark_bad)

    p = sub.add_parser('unmark-bad', help='Remove a bad-item mark')
    p.add_argument('info_hash')
    p.set_defaults(func=cmd_unmark_bad)

    p = sub.add_parser('simulate', help='Run filters (or an interest) against a title')
    p.add_argument('title')
    p.add_argument('--interest', help='Interest id or name to use instead of --filter')
    _add_filter_args(p)
    p.set_defaults(func=cmd_simulate)

    p = sub.add_parser('test-feed', help='Fetch a feed and preview filter matches')
    p.add_argument('url')
    _add_filter_args(p)
    p.set_defaults(func=cmd_test_feed)

    sub.add_parser('check-now', help='Check all enabled sources once').set_defaults(func=cmd_check_now)

    sub.add_parser('pending', help='List matches awaiting review').set_defaults(func=cmd_pending)

    p = sub.add_parser('approve', help='Send a pending match to the download client')
    p.add_argument('id')
    p.set_defaults(func=cmd_approve)

    p = sub.add_parser('reject', help='Drop a pending match')
    p.add_argument('id')
    p.set_defaults(func=cmd_reject)

    p = sub.add_parser('metadata', help='Fetch the .torrent of a pending match and list its files')
    p.add_argument('id')
    p.set_defaults(func=cmd_metadata)

    sub.add_parser('status', help='Show store summary').set_defaults(func=cmd_status)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    try:
        args.func(args)
    except ScreenerError as e:
        print(f"Error ({e.category}): {e.message}", file=sys.stderr)
        sys.exit(2)


if __name__ == '__main__':
    main()
