import importlib
from datetime import datetime, timedelta, timezone


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _source(**kw):
    models = importlib.import_module('core.models')
    return models.Source(id='s1', name='Feed', url='http://feed', **kw)


def test_backoff_schedule_caps_at_thirty_minutes():
    backoff = importlib.import_module('core.backoff')
    minutes = [backoff.calculate_backoff(n).total_seconds() / 60 for n in range(1, 9)]
    assert minutes == [1, 2, 4, 8, 16, 30, 30, 30]
    assert backoff.calculate_backoff(10_000) == timedelta(minutes=30)


def test_record_failure_is_monotonic_and_sets_retry_after():
    backoff = importlib.import_module('core.backoff')
    utils = importlib.import_module('core.utils')
    src = _source()
    delays = []
    for _ in range(7):
        delays.append(backoff.record_failure(src, NOW))
    assert delays == sorted(delays)
    assert src.failure_count == 7
    assert utils.parse_iso(src.retry_after) == NOW + timedelta(minutes=30)


def test_failure_count_saturates():
    backoff = importlib.import_module('core.backoff')
    src = _source(failure_count=backoff.MAX_FAILURE_COUNT)
    backoff.record_failure(src, NOW)
    assert src.failure_count == backoff.MAX_FAILURE_COUNT


def test_success_resets_and_backoff_window():
    backoff = importlib.import_module('core.backoff')
    src = _source()
    backoff.record_failure(src, NOW)
    assert backoff.is_in_backoff(src, NOW + timedelta(seconds=30))
    assert not backoff.is_in_backoff(src, NOW + timedelta(minutes=2))
    backoff.record_success(src)
    assert src.failure_count == 0 and src.retry_after is None
    assert not backoff.is_in_backoff(src, NOW)
