from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Set

from core.models import Interest, ParsedFeedItem, Source
from core.utils import now_utc, parse_iso, to_iso

logger = logging.getLogger(__name__)

SEEN_ITEM_MAX_AGE = timedelta(days=60)
CLEANUP_INTERVAL = timedelta(hours=1)


def make_item_key(source: Source, item: ParsedFeedItem, interest: Optional[Interest] = None) -> str:
    base_id = item.guid if source.use_guid_dedup else item.id
    if interest is not None:
        return f'{source.id}:{interest.id}:{base_id}'
    return f'{source.id}:{base_id}'


class SeenItemLedger:
    """Keys of (source, item) pairs already evaluated, with first-seen time.

    `lock` guards the whole check-evaluate-insert sequence; callers that need
    the atomic gate hold it themselves and use `contains` / `mark` inside.
    """

    def __init__(self, entries: Optional[Dict[str, str]] = None) -> None:
        self._entries: Dict[str, str] = dict(entries or {})
        self.lock = asyncio.Lock()
        self.last_cleanup: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def contains(self, key: str) -> bool:
        return key in self._entries

    def mark(self, key: str, now: Optional[datetime] = None) -> None:
        self._entries[key] = to_iso(now or now_utc())

    async def check_and_insert(self, key: str, now: Optional[datetime] = None) -> bool:
        async with self.lock:
            if key in self._entries:
                return False
            self.mark(key, now)
            return True

    def snapshot(self) -> Dict[str, str]:
        return dict(self._entries)

    def remove_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def purge_older_than(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        now = now or now_utc()
        before = len(self._entries)
        kept = {}
        for key, stamp in self._entries.items():
            ts = parse_iso(stamp)
            if ts is not None and (now - ts) < max_age:
                kept[key] = stamp
        self._entries = kept
        return before - len(kept)

    async def maybe_cleanup(self, now: Optional[datetime] = None) -> int:
        now = now or now_utc()
        if self.last_cleanup is not None and (now - self.last_cleanup) < CLEANUP_INTERVAL:
            return 0
        async with self.lock:
            removed = self.purge_older_than(SEEN_ITEM_MAX_AGE, now)
        self.last_cleanup = now
        if removed:
            logger.info(f'Cleaned up {removed} stale seen items')
        return removed


class SeenEpisodeLedger:
    def __init__(self, entries: Optional[Dict[str, Iterable[str]]] = None) -> None:
        self._episodes: Dict[str, Set[str]] = {k: set(v) for k, v in (entries or {}).items()}
        self.lock = asyncio.Lock()

    def would_duplicate(self, interest_id: str, episode_id: str) -> bool:
        return episode_id in self._episodes.get(interest_id, ())

    def record(self, interest_id: str, episode_id: str) -> None:
        self._episodes.setdefault(interest_id, set()).add(episode_id)

    def episodes_for(self, interest_id: str) -> Set[str]:
        return set(self._episodes.get(interest_id, ()))

    def forget_interest(self, interest_id: str) -> None:
        self._episodes.pop(interest_id, None)

    def snapshot(self) -> Dict[str, list]:
        return {k: sorted(v) for k, v in self._episodes.items()}
