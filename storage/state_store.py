from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List

from core.ledger import SeenItemLedger
from core.models import BadItem, Interest, PendingMatch, Source
from core.state import EngineState, PendingQueue

SOURCES_FILE = 'rss_sources.json'
INTERESTS_FILE = 'rss_interests.json'
SEEN_ITEMS_FILE = 'rss_seen_items.json'
BAD_ITEMS_FILE = 'rss_bad_items.json'
PENDING_FILE = 'rss_pending.json'


def load_blob(path: str, default: Any) -> Any:
    try:
        with open(path, 'r') as file:
            return json.load(file)
    except FileNotFoundError:
        return default
    except (json.JSONDecodeError, OSError) as e:
        logging.warning(f"State file {path} is unreadable ({e}); starting empty.")
        return default


def save_blob(data: Any, path: str) -> None:
    tmp_path = path + '.tmp'
    with open(tmp_path, 'w') as file:
        json.dump(data, file, indent=4)
    os.replace(tmp_path, path)


def _records(blob: Any, label: str) -> List[Dict[str, Any]]:
    if not isinstance(blob, list):
        if blob:
            logging.warning(f"State file for {label} is not a list; ignoring.")
        return []
    return [r for r in blob if isinstance(r, dict)]


def load_state(data_dir: str) -> EngineState:
    state = EngineState()
    for raw in _records(load_blob(os.path.join(data_dir, SOURCES_FILE), []), 'sources'):
        try:
            state.sources.append(Source.from_dict(raw))
        except ValueError as e:
            logging.warning(f"Skipping invalid source {raw.get('name')}: {e}")
    for raw in _records(load_blob(os.path.join(data_dir, INTERESTS_FILE), []), 'interests'):
        try:
            state.interests.append(Interest.from_dict(raw))
        except ValueError as e:
            logging.warning(f"Skipping invalid interest {raw.get('name')}: {e}")
    seen = load_blob(os.path.join(data_dir, SEEN_ITEMS_FILE), {})
    if isinstance(seen, dict):
        state.seen_items = SeenItemLedger({str(k): str(v) for k, v in seen.items()})
    bad = load_blob(os.path.join(data_dir, BAD_ITEMS_FILE), {})
    if isinstance(bad, dict):
        for raw in bad.values():
            if isinstance(raw, dict):
                item = BadItem.from_dict(raw)
                if item.info_hash:
                    state.bad_items[item.info_hash] = item
    pending = []
    for raw in _records(load_blob(os.path.join(data_dir, PENDING_FILE), []), 'pending matches'):
        try:
            pending.append(PendingMatch.from_dict(raw))
        except (TypeError, ValueError) as e:
            logging.warning(f"Skipping invalid pending match {raw.get('title')}: {e}")
    state.pending = PendingQueue(pending)
    logging.info(
        f"Loaded {len(state.sources)} source(s), {len(state.interests)} interest(s), "
        f"{len(state.seen_items)} seen item(s), {len(state.bad_items)} bad item(s), "
        f"{len(state.pending)} pending match(es)"
    )
    return state


async def save_state(state: EngineState, data_dir: str) -> None:
    os.makedirs(data_dir, exist_ok=True)
    sources = [s.to_dict() for s in await state.snapshot_sources()]
    interests = [i.to_dict() for i in await state.snapshot_interests()]
    async with state.seen_items.lock:
        seen = state.seen_items.snapshot()
    async with state.bad_items_lock:
        bad = {h: b.to_dict() for h, b in state.bad_items.items()}
    pending = [m.to_dict() for m in await state.pending.list()]
    save_blob(sources, os.path.join(data_dir, SOURCES_FILE))
    save_blob(interests, os.path.join(data_dir, INTERESTS_FILE))
    save_blob(seen, os.path.join(data_dir, SEEN_ITEMS_FILE))
    save_blob(bad, os.path.join(data_dir, BAD_ITEMS_FILE))
    save_blob(pending, os.path.join(data_dir, PENDING_FILE))
