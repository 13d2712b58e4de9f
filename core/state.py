from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from core.ledger import SeenEpisodeLedger, SeenItemLedger
from core.models import BadItem, Interest, PendingMatch, Source, TorrentMetadata

POLL_FIELDS = ('last_checked', 'next_check_at', 'etag', 'last_modified', 'failure_count', 'retry_after')


class PendingQueue:
    def __init__(self, matches: Optional[List[PendingMatch]] = None) -> None:
        self._matches: List[PendingMatch] = list(matches or [])
        self.lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._matches)

    async def push(self, match: PendingMatch) -> int:
        async with self.lock:
            self._matches.append(match)
            return len(self._matches)

    async def get(self, match_id: str) -> Optional[PendingMatch]:
        async with self.lock:
            for m in self._matches:
                if m.id == match_id:
                    return m
        return None

    async def remove(self, match_id: str) -> Optional[PendingMatch]:
        async with self.lock:
            for idx, m in enumerate(self._matches):
                if m.id == match_id:
                    return self._matches.pop(idx)
        return None

    async def take(self, match_id: str, validate: Optional[Callable[[PendingMatch], None]] = None) -> Optional[PendingMatch]:
        # validate may raise to leave the match queued
        async with self.lock:
            for idx, m in enumerate(self._matches):
                if m.id == match_id:
                    if validate is not None:
                        validate(m)
                    return self._matches.pop(idx)
        return None

    async def attach_metadata(self, match_id: str, metadata: TorrentMetadata) -> bool:
        async with self.lock:
            for m in self._matches:
                if m.id == match_id:
                    m.metadata = metadata
                    return True
        return False

    async def list(self) -> List[PendingMatch]:
        async with self.lock:
            return list(self._matches)

    async def count(self) -> int:
        async with self.lock:
            return len(self._matches)


@dataclass
class EngineState:
    """Everything the scheduler and the command layer share.

    Built once by the host process and passed by reference; each
    collection has its own lock and readers work on copies.
    """

    sources: List[Source] = field(default_factory=list)
    interests: List[Interest] = field(default_factory=list)
    seen_items: SeenItemLedger = field(default_factory=SeenItemLedger)
    seen_episodes: SeenEpisodeLedger = field(default_factory=SeenEpisodeLedger)
    bad_items: Dict[str, BadItem] = field(default_factory=dict)
    pending: PendingQueue = field(default_factory=PendingQueue)
    sources_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    interests_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    bad_items_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_global_check: Optional[datetime] = None

    async def snapshot_sources(self) -> List[Source]:
        async with self.sources_lock:
            return [copy.deepcopy(s) for s in self.sources]

    async def snapshot_interests(self) -> List[Interest]:
        async with self.interests_lock:
            return [copy.deepcopy(i) for i in self.interests]

    async def enabled_interests(self) -> List[Interest]:
        return [i for i in await self.snapshot_interests() if i.enabled]

    async def find_interest(self, interest_id: str) -> Optional[Interest]:
        async with self.interests_lock:
            for i in self.interests:
                if i.id == interest_id:
                    return copy.deepcopy(i)
        return None

    async def write_back_sources(self, updated: List[Source]) -> int:
        # Only poll bookkeeping is copied; edits made during the poll survive
        by_id = {s.id: s for s in updated}
        written = 0
        async with self.sources_lock:
            for live in self.sources:
                polled = by_id.get(live.id)
                if polled is None:
                    continue
                for name in POLL_FIELDS:
                    setattr(live, name, getattr(polled, name))
                written += 1
        return written
