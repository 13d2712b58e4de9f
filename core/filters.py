from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from core.models import FeedFilter, FilterLogic, FilterType, ParsedFeedItem

NO_FILTERS = 'no filters'
_MIB = 1024 * 1024
# Patterns only see this much of a title
MAX_PATTERN_TITLE = 1024


def wildcard_to_regex(pattern: str) -> str:
    parts = []
    for ch in pattern:
        if ch == '*':
            parts.append('.*')
        elif ch == '?':
            parts.append('.')
        else:
            parts.append(re.escape(ch))
    return ''.join(parts)


def parse_size_range(value: str) -> Optional[Tuple[float, float]]:
    parts = (value or '').split('-')
    if len(parts) != 2:
        return None
    try:
        lo = float(int(parts[0].strip()))
    except ValueError:
        lo = 0.0
    try:
        hi = float(int(parts[1].strip()))
    except ValueError:
        hi = math.inf
    return lo, hi


def _matches_regex(pattern: str, title: str, flags: int = 0) -> bool:
    """User patterns run on the backtracking `re` engine, so the title is capped."""
    try:
        return re.search(pattern, title[:MAX_PATTERN_TITLE], flags) is not None
    except re.error:
        return False


def evaluate_single_filter(item: ParsedFeedItem, flt: FeedFilter) -> bool:
    title = item.title or ''
    ftype = flt.type
    if ftype is FilterType.MUST_CONTAIN:
        return flt.value.lower() in title.lower()
    if ftype is FilterType.MUST_NOT_CONTAIN:
        return flt.value.lower() not in title.lower()
    if ftype is FilterType.REGEX:
        return _matches_regex(flt.value, title)
    if ftype is FilterType.WILDCARD:
        return _matches_regex(wildcard_to_regex(flt.value), title, re.IGNORECASE)
    if ftype is FilterType.SIZE_RANGE:
        # Unknown size never excludes an item
        if item.size is None:
            return True
        bounds = parse_size_range(flt.value)
        if bounds is None:
            return True
        size_mb = item.size // _MIB
        return bounds[0] <= size_mb <= bounds[1]
    raise ValueError(f'unknown filter type: {ftype!r}')


def describe_filter(flt: FeedFilter) -> str:
    ftype = flt.type
    if ftype is FilterType.MUST_CONTAIN:
        return f'contains "{flt.value}"'
    if ftype is FilterType.MUST_NOT_CONTAIN:
        return f'excludes "{flt.value}"'
    if ftype is FilterType.REGEX:
        return f'regex /{flt.value}/'
    if ftype is FilterType.WILDCARD:
        return f'wildcard "{flt.value}"'
    if ftype is FilterType.SIZE_RANGE:
        return f'size {flt.value}'
    raise ValueError(f'unknown filter type: {ftype!r}')


def evaluate_filters(
    item: ParsedFeedItem,
    filters: Iterable[FeedFilter],
    logic: FilterLogic = FilterLogic.AND,
) -> Optional[str]:
    enabled = [f for f in filters if f.enabled]
    if not enabled:
        return NO_FILTERS
    results = [evaluate_single_filter(item, f) for f in enabled]
    if logic is FilterLogic.OR:
        matched = any(results)
    else:
        matched = all(results)
    if not matched:
        return None
    return ', '.join(describe_filter(f) for f, ok in zip(enabled, results) if ok)


def preview_feed(
    items: Sequence[ParsedFeedItem],
    filters: Sequence[FeedFilter],
    logic: FilterLogic = FilterLogic.AND,
) -> Dict[str, Any]:
    rows: List[Dict[str, Any]] = []
    for item in items:
        desc = evaluate_filters(item, filters, logic)
        row: Dict[str, Any] = {'title': item.title, 'matches': desc is not None}
        if desc is not None:
            row['matched_filter'] = desc
        if item.size is not None:
            row['size'] = item.size
        rows.append(row)
    return {
        'items': rows,
        'total_count': len(rows),
        'matched_count': sum(1 for r in rows if r['matches']),
    }
