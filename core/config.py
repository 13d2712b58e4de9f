from __future__ import annotations

import logging
import os
from typing import Any, Dict, List

import yaml

NOTIFICATION_TYPES = {'discord', 'slack', 'generic'}


def load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError) as e:
        logging.warning(f'Could not read config {path}: {e}')
        return {}


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    # General settings accessor
    def general(self, key: str, default: Any = None) -> Any:
        gen = self.cfg.get('general') if isinstance(self.cfg.get('general'), dict) else {}
        return gen.get(key, default)

    # Clients
    def clients(self) -> Dict[str, Any]:
        return self.cfg.get('clients') if isinstance(self.cfg.get('clients'), dict) else {}

    # Notifications accessors
    def notification_destinations(self) -> List[Dict[str, Any]]:
        notif = self.cfg.get('notifications') if isinstance(self.cfg.get('notifications'), dict) else {}
        dests = notif.get('destinations') if isinstance(notif.get('destinations'), list) else []
        out: List[Dict[str, Any]] = []
        for d in dests:
            if not isinstance(d, dict):
                continue
            typ = str(d.get('type') or 'generic').lower()
            if not d.get('url') or typ not in NOTIFICATION_TYPES:
                continue
            out.append(d)
        return out

    # Seed records for an empty store
    def seed_sources(self) -> List[Dict[str, Any]]:
        seeds = self.cfg.get('sources')
        return [s for s in seeds if isinstance(s, dict)] if isinstance(seeds, list) else []

    def seed_interests(self) -> List[Dict[str, Any]]:
        seeds = self.cfg.get('interests')
        return [i for i in seeds if isinstance(i, dict)] if isinstance(seeds, list) else []


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = dict(cfg)

    def _nz(v, cast, default):
        try:
            return cast(v)
        except (TypeError, ValueError):
            return default

    gen = out.get('general') if isinstance(out.get('general'), dict) else {}
    if gen:
        gen = dict(gen)
        if 'check_interval_minutes' in gen:
            gen['check_interval_minutes'] = max(1, _nz(gen.get('check_interval_minutes'), int, 15))
        if 'tick_seconds' in gen:
            ticks = _nz(gen.get('tick_seconds'), float, 60.0)
            gen['tick_seconds'] = ticks if ticks > 0 else 60.0
        if 'request_timeout' in gen:
            gen['request_timeout'] = max(1, _nz(gen.get('request_timeout'), int, 30))
        if 'retry_attempts' in gen:
            gen['retry_attempts'] = max(0, _nz(gen.get('retry_attempts'), int, 2))
        if 'retry_backoff' in gen:
            gen['retry_backoff'] = max(0.0, _nz(gen.get('retry_backoff'), float, 1.0))
        if 'max_concurrent_sources' in gen:
            gen['max_concurrent_sources'] = max(1, _nz(gen.get('max_concurrent_sources'), int, 1))
        out['general'] = gen

    # Notifications destinations validation/cleanup
    notif = out.get('notifications') if isinstance(out.get('notifications'), dict) else {}
    dests = notif.get('destinations') if isinstance(notif.get('destinations'), list) else []
    cleaned = []
    for d in dests:
        if not isinstance(d, dict):
            continue
        typ = str(d.get('type') or 'generic').lower()
        if not d.get('url') or typ not in NOTIFICATION_TYPES:
            if debug_logging:
                logging.warning(f'Ignoring invalid notification destination: {d}')
            continue
        evs = d.get('events')
        if evs is not None and not isinstance(evs, list):
            d['events'] = [str(evs)]
        cleaned.append(d)
    if notif:
        notif = dict(notif)
        notif['destinations'] = cleaned
        out['notifications'] = notif
    return out


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> None:
    problems = []
    clients = cfg.get('clients') if isinstance(cfg.get('clients'), dict) else {}
    qb = clients.get('qbittorrent') if isinstance(clients.get('qbittorrent'), dict) else {}
    if qb and qb.get('url') and (qb.get('username') is None or qb.get('password') is None):
        problems.append('qBittorrent client needs username and password; it will be skipped.')
    if not clients:
        problems.append('No download client configured; approving matches will fail.')
    for key in ('sources', 'interests'):
        seeds = cfg.get(key)
        if seeds is not None and not isinstance(seeds, list):
            problems.append(f"'{key}' must be a list; it will be ignored.")
    notif = cfg.get('notifications') if isinstance(cfg.get('notifications'), dict) else {}
    dests = notif.get('destinations') if isinstance(notif.get('destinations'), list) else []
    for d in dests:
        if isinstance(d, dict) and not d.get('url'):
            problems.append(f"Notification destination '{d.get('name') or d.get('type')}' missing url; it will be ignored.")
    for p in problems:
        logging.warning(p)
