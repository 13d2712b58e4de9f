from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from core.models import PendingMatch

NEW_MATCH = 'new_match'
PENDING_COUNT = 'pending_count'


class EventBus:
    def __init__(
        self,
        config: Dict[str, Any],
        *,
        structured_logs: bool,
        debug_logging: bool,
        logger,
    ) -> None:
        self.config = config
        self.structured_logs = structured_logs
        self.debug_logging = debug_logging
        self.logger = logger
        self._listeners: List[Callable[[str, Dict[str, Any]], Any]] = []

    def subscribe(self, listener: Callable[[str, Dict[str, Any]], Any]) -> None:
        self._listeners.append(listener)

    def log(self, event: str, **fields) -> None:
        payload = {"event": event, **fields}
        try:
            if self.structured_logs:
                self.logger.info(json.dumps(payload, ensure_ascii=False))
            else:
                self.logger.info(f"{event}: {fields}")
        except Exception:
            self.logger.info(str(payload))

    def _fan_out(self, event: str, fields: Dict[str, Any]) -> None:
        # Listeners are fire-and-forget; a broken UI hook never stops a poll
        for listener in list(self._listeners):
            try:
                listener(event, dict(fields))
            except Exception as e:
                logging.warning(f"Event listener failed for {event}: {e}")

    async def emit(
        self,
        session: Optional[aiohttp.ClientSession],
        event: str,
        *,
        match: Optional[PendingMatch] = None,
        notify: bool = False,
        **fields,
    ) -> None:
        if match is not None:
            fields.setdefault('id', match.id)
            fields.setdefault('source_name', match.source_name)
            fields.setdefault('interest_name', match.interest_name)
            fields.setdefault('title', match.title)

        self.log(event, **fields)
        self._fan_out(event, fields)

        if notify and match is not None and session is not None:
            try:
                from integrations import notifications as notif

                await notif.handle(session, event, match, self.config, self.debug_logging)
            except Exception as e:
                if self.debug_logging:
                    logging.warning(f"Event {event}: notify error: {e}")

    async def new_match(self, session: Optional[aiohttp.ClientSession], match: PendingMatch) -> None:
        await self.emit(session, NEW_MATCH, match=match, notify=True)

    async def pending_count(self, session: Optional[aiohttp.ClientSession], count: int) -> None:
        await self.emit(session, PENDING_COUNT, count=count)

    async def flush(self, session: aiohttp.ClientSession) -> None:
        try:
            from integrations import notifications as notif

            await notif.flush(session, self.config, self.debug_logging)
        except Exception as e:
            if self.debug_logging:
                logging.warning(f"Notify: flush error: {e}")
