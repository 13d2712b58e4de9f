import importlib

import pytest


MIB = 1024 * 1024


def _item(title, size=None):
    models = importlib.import_module('core.models')
    return models.ParsedFeedItem(id=title, guid=title, title=title, size=size)


def _f(ftype, value, enabled=True):
    models = importlib.import_module('core.models')
    return models.FeedFilter(type=models.FilterType(ftype), value=value, enabled=enabled)


def test_no_enabled_filters_matches_everything():
    filters = importlib.import_module('core.filters')
    assert filters.evaluate_filters(_item('Anything'), []) == 'no filters'
    assert filters.evaluate_filters(_item('Anything'), [_f('must_contain', 'zzz', enabled=False)]) == 'no filters'


def test_ubuntu_and_filters_describe_each_clause():
    filters = importlib.import_module('core.filters')
    fl = [_f('must_contain', 'ubuntu'), _f('must_not_contain', 'beta')]
    desc = filters.evaluate_filters(_item('Ubuntu 24.04 Desktop amd64'), fl)
    assert desc == 'contains "ubuntu", excludes "beta"'
    assert filters.evaluate_filters(_item('Ubuntu 24.10 Beta'), fl) is None


def test_or_logic_needs_only_one_and_describes_satisfied_ones():
    filters = importlib.import_module('core.filters')
    models = importlib.import_module('core.models')
    fl = [_f('must_contain', 'debian'), _f('must_contain', 'fedora')]
    desc = filters.evaluate_filters(_item('Fedora Workstation 40'), fl, models.FilterLogic.OR)
    assert desc == 'contains "fedora"'
    assert filters.evaluate_filters(_item('Arch Linux'), fl, models.FilterLogic.OR) is None


def test_regex_is_case_sensitive_and_invalid_pattern_fails_closed():
    filters = importlib.import_module('core.filters')
    assert filters.evaluate_filters(_item('Show S01E02 1080p'), [_f('regex', r'S\d+E\d+')]) == r'regex /S\d+E\d+/'
    assert filters.evaluate_filters(_item('show s01e02'), [_f('regex', r'S\d+E\d+')]) is None
    assert filters.evaluate_filters(_item('Show [broken'), [_f('regex', '[broken')]) is None


def test_patterns_only_see_the_head_of_long_titles():
    filters = importlib.import_module('core.filters')
    title = 'Ubuntu ' + 'x' * filters.MAX_PATTERN_TITLE + ' 1080p'
    assert filters.evaluate_filters(_item(title), [_f('regex', r'^Ubuntu')]) is not None
    assert filters.evaluate_filters(_item(title), [_f('regex', r'1080p')]) is None
    assert filters.evaluate_filters(_item(title), [_f('wildcard', '*1080P*')]) is None
    assert filters.evaluate_filters(_item(title), [_f('must_contain', '1080p')]) is not None


def test_wildcard_escapes_literals_and_ignores_case():
    filters = importlib.import_module('core.filters')
    assert filters.wildcard_to_regex('a.b*c?') == r'a\.b.*c.'
    assert filters.evaluate_filters(_item('MY.SHOW.S01E01.720p'), [_f('wildcard', 'my.show*720?')]) is not None
    # the dot is literal, so "myXshow" must not match
    assert filters.evaluate_filters(_item('myXshow 720p'), [_f('wildcard', 'my.show*')]) is None


@pytest.mark.parametrize('size_mb,expected', [
    (99, False),
    (100, True),
    (300, True),
    (500, True),
    (501, False),
])
def test_size_range_bounds_are_inclusive(size_mb, expected):
    filters = importlib.import_module('core.filters')
    res = filters.evaluate_filters(_item('x', size=size_mb * MIB), [_f('size_range', '100-500')])
    assert (res is not None) is expected


def test_size_range_compares_whole_mebibytes():
    filters = importlib.import_module('core.filters')
    # 500 MiB plus a few bytes still floors to 500
    assert filters.evaluate_filters(_item('x', size=500 * MIB + 10), [_f('size_range', '100-500')]) is not None


def test_size_range_unknown_size_and_malformed_values_pass():
    filters = importlib.import_module('core.filters')
    assert filters.evaluate_filters(_item('x', size=None), [_f('size_range', '100-500')]) == 'size 100-500'
    assert filters.evaluate_filters(_item('x', size=10 * MIB), [_f('size_range', 'nonsense')]) is not None
    assert filters.evaluate_filters(_item('x', size=10 * MIB), [_f('size_range', '1-2-3')]) is not None


def test_size_range_open_bounds():
    filters = importlib.import_module('core.filters')
    assert filters.parse_size_range('-500') == (0.0, 500.0)
    lo, hi = filters.parse_size_range('100-')
    assert lo == 100.0 and hi == float('inf')
    assert filters.evaluate_filters(_item('x', size=9000 * MIB), [_f('size_range', '100-')]) is not None


def test_preview_feed_counts_matches():
    filters = importlib.import_module('core.filters')
    items = [_item('Ubuntu 24.04', size=4000 * MIB), _item('Windows 11')]
    out = filters.preview_feed(items, [_f('must_contain', 'ubuntu')])
    assert out['total_count'] == 2
    assert out['matched_count'] == 1
    assert out['items'][0] == {
        'title': 'Ubuntu 24.04',
        'matches': True,
        'matched_filter': 'contains "ubuntu"',
        'size': 4000 * MIB,
    }
    assert out['items'][1] == {'title': 'Windows 11', 'matches': False}
