import asyncio
import importlib
from datetime import datetime, timedelta, timezone

import pytest


pytestmark = pytest.mark.asyncio

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class Result:
    def __init__(self, items=None, etag=None, last_modified=None, not_modified=False):
        self.items = items or []
        self.etag = etag
        self.last_modified = last_modified
        self.not_modified = not_modified


class FakeBus:
    def __init__(self):
        self.matches = []
        self.counts = []
        self.flushes = 0

    async def new_match(self, session, match):
        self.matches.append(match)

    async def pending_count(self, session, count):
        self.counts.append(count)

    async def flush(self, session):
        self.flushes += 1


def _item(title, guid=None):
    models = importlib.import_module('core.models')
    return models.ParsedFeedItem(id=guid or title, guid=guid or title, title=title,
                                 magnet_uri='magnet:?xt=urn:btih:abc')


def _state(sources=None, interests=None):
    models = importlib.import_module('core.models')
    state = importlib.import_module('core.state').EngineState()
    state.sources = sources if sources is not None else [models.Source(id='s1', name='Feed', url='http://feed')]
    state.interests = interests if interests is not None else [models.Interest(id='i1', name='Ubuntu')]
    return state


def _deps(**overrides):
    runner = importlib.import_module('core.runner')
    calls = {'cached': [], 'plain': [], 'scrape': [], 'saved': 0}

    async def fetch_feed_cached(session, url, etag=None, last_modified=None):
        calls['cached'].append((url, etag, last_modified))
        return Result([_item('Ubuntu 24.04', 'g1')], etag='"v2"')

    async def fetch_feed(session, url):
        calls['plain'].append(url)
        return [_item('Ubuntu 24.04', 'g1')]

    async def scrape(session, source, url):
        calls['scrape'].append(url)
        return [_item('Ubuntu 24.04', 'g1')]

    async def save_state(state):
        calls['saved'] += 1

    kw = dict(
        fetch_feed=fetch_feed,
        fetch_feed_cached=fetch_feed_cached,
        scrape=scrape,
        build_scrape_url=lambda source, interest: f'{source.url}?q={interest.name}',
        save_state=save_state,
        event_bus=FakeBus(),
        log_fn=lambda msg: None,
    )
    kw.update(overrides)
    return runner.SchedulerDeps(**kw), calls


async def test_first_tick_checks_everything_and_stores_validators():
    runner = importlib.import_module('core.runner')
    state = _state()
    deps, calls = _deps()

    metrics = await runner.run_tick(None, state, deps, now=NOW)

    assert metrics.checked == 1 and metrics.matched == 1
    assert metrics['src:Feed:matched'] == 1
    src = state.sources[0]
    assert src.etag == '"v2"'
    assert src.last_checked is not None
    assert src.next_check_at == (NOW + timedelta(minutes=15)).isoformat()
    assert state.last_global_check == NOW
    assert deps.event_bus.counts == [1]
    assert calls['saved'] == 1


async def test_not_modified_counts_as_success_without_matching():
    runner = importlib.import_module('core.runner')
    utils = importlib.import_module('core.utils')
    state = _state()
    src = state.sources[0]
    src.etag = '"v1"'
    src.failure_count = 3
    src.retry_after = utils.to_iso(NOW - timedelta(minutes=1))

    async def cached(session, url, etag=None, last_modified=None):
        assert etag == '"v1"'
        return Result(not_modified=True)

    deps, _ = _deps(fetch_feed_cached=cached)
    metrics = await runner.run_tick(None, state, deps, now=NOW)
    assert metrics.not_modified == 1 and metrics.matched == 0
    src = state.sources[0]
    assert src.last_checked == utils.to_iso(NOW)
    assert src.next_check_at == utils.to_iso(NOW + timedelta(minutes=15))
    assert src.failure_count == 0
    assert src.retry_after is None
    assert src.etag == '"v1"'
    assert len(state.seen_items) == 0
    assert await state.pending.count() == 0


async def test_edits_made_during_a_poll_survive_write_back():
    runner = importlib.import_module('core.runner')
    registry = importlib.import_module('core.registry')
    utils = importlib.import_module('core.utils')
    state = _state()
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(session, url, etag=None, last_modified=None):
        started.set()
        await release.wait()
        return Result([_item('Ubuntu 24.04', 'g1')], etag='"v2"')

    deps, _ = _deps(fetch_feed_cached=slow)
    tick = asyncio.ensure_future(runner.run_tick(None, state, deps, now=NOW))
    await started.wait()
    await registry.toggle_source(state, 's1', False)
    renamed = (await registry.list_sources(state))[0]
    renamed.name = 'Renamed'
    await registry.update_source(state, renamed)
    release.set()
    await tick

    src = state.sources[0]
    assert src.enabled is False
    assert src.name == 'Renamed'
    assert src.etag == '"v2"'
    assert src.last_checked == utils.to_iso(NOW)


async def test_source_removed_during_a_poll_stays_removed():
    runner = importlib.import_module('core.runner')
    registry = importlib.import_module('core.registry')
    state = _state()
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(session, url, etag=None, last_modified=None):
        started.set()
        await release.wait()
        return Result()

    deps, _ = _deps(fetch_feed_cached=slow)
    tick = asyncio.ensure_future(runner.run_tick(None, state, deps, now=NOW))
    await started.wait()
    await registry.remove_source(state, 's1')
    release.set()
    await tick
    assert state.sources == []


async def test_failure_sets_backoff_and_success_resets_it():
    runner = importlib.import_module('core.runner')
    errors = importlib.import_module('core.errors')
    state = _state()

    async def broken(session, url, etag=None, last_modified=None):
        raise errors.FetchError('HTTP 503')

    deps, _ = _deps(fetch_feed_cached=broken)
    metrics = await runner.run_tick(None, state, deps, now=NOW)
    src = state.sources[0]
    assert metrics.failed == 1
    assert src.failure_count == 1
    assert src.retry_after == (NOW + timedelta(minutes=1)).isoformat()

    # still inside the backoff window: skipped even though due
    src.next_check_at = NOW.isoformat()
    metrics = await runner.run_tick(None, state, deps, now=NOW + timedelta(seconds=30))
    assert metrics.checked == 0

    ok_deps, _ = _deps()
    await runner.run_tick(None, state, ok_deps, now=NOW + timedelta(minutes=2))
    assert state.sources[0].failure_count == 0
    assert state.sources[0].retry_after is None


async def test_tick_skips_without_enabled_interests():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    state = _state(interests=[models.Interest(id='i1', name='Off', enabled=False)])
    deps, calls = _deps()
    metrics = await runner.run_tick(None, state, deps, now=NOW)
    assert metrics.checked == 0
    assert calls['cached'] == [] and calls['saved'] == 0
    assert state.last_global_check is None


async def test_is_due_rules():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    src = models.Source(id='s', name='n', url='u')
    assert runner.is_due(src, NOW, True) is True
    assert runner.is_due(src, NOW, False) is False
    src.next_check_at = 'garbage'
    assert runner.is_due(src, NOW, False) is True
    src.next_check_at = (NOW + timedelta(minutes=5)).isoformat()
    assert runner.is_due(src, NOW, True) is False
    assert runner.is_due(src, NOW + timedelta(minutes=5), False) is True


async def test_global_pass_interval():
    runner = importlib.import_module('core.runner')
    state = _state()
    assert runner.global_pass_due(state, NOW, 15)
    state.last_global_check = NOW
    assert not runner.global_pass_due(state, NOW + timedelta(minutes=14), 15)
    assert runner.global_pass_due(state, NOW + timedelta(minutes=15), 15)


async def test_placeholder_source_fetches_once_per_interest_with_encoded_term():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    state = _state(
        sources=[models.Source(id='s1', name='Search', url='http://idx/rss?q={search}')],
        interests=[
            models.Interest(id='i1', name='Ubuntu', search_term='ubuntu 24.04 & more'),
            models.Interest(id='i2', name='Fedora'),
        ],
    )
    deps, calls = _deps()
    await runner.run_tick(None, state, deps, now=NOW)
    assert calls['plain'] == [
        'http://idx/rss?q=ubuntu%2024.04%20%26%20more',
        'http://idx/rss?q=Fedora',
    ]
    assert calls['cached'] == []


async def test_placeholder_source_fails_only_when_every_interest_fails():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    errors = importlib.import_module('core.errors')
    state = _state(
        sources=[models.Source(id='s1', name='Search', url='http://idx/?q={search}')],
        interests=[models.Interest(id='i1', name='a'), models.Interest(id='i2', name='b')],
    )

    async def half_broken(session, url):
        if url.endswith('=a'):
            raise errors.FetchError('down')
        return []

    deps, _ = _deps(fetch_feed=half_broken)
    metrics = await runner.run_tick(None, state, deps, now=NOW)
    assert metrics.failed == 0
    assert state.sources[0].failure_count == 0

    async def all_broken(session, url):
        raise errors.FetchError('down')

    state.sources[0].next_check_at = None
    state.last_global_check = None
    deps, _ = _deps(fetch_feed=all_broken)
    metrics = await runner.run_tick(None, state, deps, now=NOW)
    assert metrics.failed == 1
    assert state.sources[0].failure_count == 1


async def test_scraper_source_uses_scrape_url_per_interest():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    scraper = models.ScraperSettings(item_selector='tr', title_selector='a', link_selector='a')
    state = _state(sources=[models.Source(id='s1', name='Site', url='http://site', kind=models.SourceKind.SCRAPER, scraper=scraper)])
    deps, calls = _deps()
    await runner.run_tick(None, state, deps, now=NOW)
    assert calls['scrape'] == ['http://site?q=Ubuntu']
    pending = await state.pending.list()
    assert pending[0].source_name == 'Site (scraper)'


async def test_check_now_ignores_schedule_and_leaves_timing():
    runner = importlib.import_module('core.runner')
    state = _state()
    state.sources[0].next_check_at = (NOW + timedelta(hours=1)).isoformat()
    deps, calls = _deps()
    total = await runner.check_now(None, state, deps)
    assert total == 1
    assert calls['plain'] == ['http://feed']
    assert state.sources[0].next_check_at == (NOW + timedelta(hours=1)).isoformat()
    assert state.sources[0].last_checked is None
    assert calls['saved'] == 1


async def test_recheck_interest_unknown_and_disabled():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    errors = importlib.import_module('core.errors')
    state = _state(interests=[models.Interest(id='off', name='Off', enabled=False)])
    deps, calls = _deps()
    with pytest.raises(errors.NotFoundError):
        await runner.recheck_interest(None, state, deps, 'missing')
    assert await runner.recheck_interest(None, state, deps, 'off') == 0
    assert calls['plain'] == []


async def test_recheck_interest_only_uses_that_interest():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    state = _state(interests=[
        models.Interest(id='a', name='A', filters=[models.FeedFilter(type=models.FilterType.MUST_CONTAIN, value='fedora')]),
        models.Interest(id='b', name='B'),
    ])
    deps, _ = _deps()
    assert await runner.recheck_interest(None, state, deps, 'b') == 1
    assert [m.interest_id for m in await state.pending.list()] == ['b']


async def test_summarize_counts_per_source():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    m = runner.Metrics()
    src = models.Source(id='s', name='Feed', url='u')
    m.bump('checked', src)
    m.bump('matched', src, 3)
    summary = runner.summarize(_state(), m, 60)
    assert summary['checked'] == 1 and summary['matched'] == 3
    assert summary['per_source'] == {'Feed': {'checked': 1, 'failed': 0, 'not_modified': 0, 'matched': 3}}


async def test_run_forever_stops_on_event_and_persists():
    runner = importlib.import_module('core.runner')
    state = _state()
    deps, calls = _deps(tick_seconds=0.01)
    stop = asyncio.Event()

    async def stopper():
        await asyncio.sleep(0.05)
        stop.set()

    await asyncio.gather(runner.run_forever(None, state, deps, stop), stopper())
    assert deps.event_bus.flushes >= 1
    # one save per tick plus the final one
    assert calls['saved'] >= 2
    assert await state.pending.count() == 1
