import importlib
import json
import logging

import pytest


pytestmark = pytest.mark.asyncio


class FakeResp:
    status = 204

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self):
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json})
        return FakeResp()


def _match():
    models = importlib.import_module('core.models')
    return models.PendingMatch(
        id='m1', source_id='s1', source_name='Feed', interest_id='i1',
        interest_name='Ubuntu', title='Ubuntu 24.04', created_at='2024-05-01T00:00:00+00:00',
    )


def _bus(config=None, structured=True):
    events = importlib.import_module('core.events')
    return events.EventBus(
        config or {},
        structured_logs=structured,
        debug_logging=False,
        logger=logging.getLogger('tests.events'),
    )


async def test_new_match_logs_structured_payload(caplog):
    bus = _bus()
    with caplog.at_level(logging.INFO, logger='tests.events'):
        await bus.new_match(None, _match())
    payload = json.loads(caplog.records[-1].getMessage())
    assert payload == {
        'event': 'new_match',
        'id': 'm1',
        'source_name': 'Feed',
        'interest_name': 'Ubuntu',
        'title': 'Ubuntu 24.04',
    }


async def test_listeners_get_events_and_failures_do_not_propagate():
    bus = _bus(structured=False)
    seen = []

    def broken(event, fields):
        raise RuntimeError('boom')

    bus.subscribe(broken)
    bus.subscribe(lambda event, fields: seen.append((event, fields)))
    await bus.pending_count(None, 3)
    assert seen == [('pending_count', {'count': 3})]


async def test_new_match_notifies_configured_destinations():
    session = FakeSession()
    bus = _bus({'notifications': {'destinations': [{'name': 'g', 'url': 'http://hook'}]}})
    await bus.new_match(session, _match())
    assert session.calls[0]['url'] == 'http://hook'
    assert 'Ubuntu 24.04' in session.calls[0]['json']['message']


async def test_pending_count_never_notifies():
    session = FakeSession()
    bus = _bus({'notifications': {'destinations': [{'name': 'g', 'url': 'http://hook'}]}})
    await bus.pending_count(session, 1)
    assert session.calls == []
