from __future__ import annotations

import re
from typing import Optional

_SEASON_EPISODE = re.compile(r'S(\d{1,2})E(\d{1,2})', re.IGNORECASE)
_CROSS_EPISODE = re.compile(r'(\d{1,2})x(\d{2})', re.IGNORECASE)
_DAILY = re.compile(r'(\d{4})[.\-](\d{2})[.\-](\d{2})')

_UPGRADE_MARKERS = ('proper', 'repack', 'rerip')


def extract_episode_id(title: str) -> Optional[str]:
    """Canonical episode id for a release title.

    Tries S01E01 / S1E1, then 1x01, then a daily 2024.01.15 date; the first
    pattern that matches wins. Returns None when the title carries no
    episode marker.
    """
    if not title:
        return None
    m = _SEASON_EPISODE.search(title)
    if m:
        return f'S{int(m.group(1)):02d}E{int(m.group(2)):02d}'
    m = _CROSS_EPISODE.search(title)
    if m:
        return f'S{int(m.group(1)):02d}E{int(m.group(2)):02d}'
    m = _DAILY.search(title)
    if m:
        return f'{m.group(1)}-{m.group(2)}-{m.group(3)}'
    return None


def is_quality_upgrade(title: str) -> bool:
    lower = (title or '').lower()
    return any(marker in lower for marker in _UPGRADE_MARKERS)
