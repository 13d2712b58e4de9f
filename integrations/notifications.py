from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from core.models import PendingMatch

# Public queues so callers can inspect/clear for tests
notify_queues: Dict[str, List[str]] = {}
notify_dests: Dict[str, Dict[str, Any]] = {}

DEFAULT_TEMPLATE = 'New match for {interest} from {source}: {title} (id={id})'


def _notif_destinations(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    notifications = config.get('notifications') if isinstance(config.get('notifications'), dict) else {}
    dests = notifications.get('destinations') if isinstance(notifications, dict) else None
    if isinstance(dests, list) and dests:
        return [d for d in dests if isinstance(d, dict) and d.get('url')]
    return []


def _notif_match_events(dest: Dict[str, Any], event: str) -> bool:
    evs = dest.get('events')
    if not isinstance(evs, list) or not evs:
        return True
    if '*' in evs:
        return True
    return event in evs


def _notif_template(dest: Dict[str, Any]) -> str:
    t = dest.get('template')
    if isinstance(t, str) and t:
        return t
    return DEFAULT_TEMPLATE


def _notif_fields(event: str, match: PendingMatch) -> Dict[str, str]:
    return {
        'event': event,
        'id': match.id,
        'source': match.source_name,
        'interest': match.interest_name,
        'title': match.title,
    }


def _notif_format_line(dest: Dict[str, Any], event: str, match: PendingMatch) -> str:
    template = _notif_template(dest)
    fields = _notif_fields(event, match)
    # raw_json templates contain literal braces, so substitute by hand
    if bool(dest.get('raw_json', False)):
        line = template
        for key, value in fields.items():
            line = line.replace('{' + key + '}', json.dumps(value)[1:-1])
        return line
    try:
        return template.format(**fields)
    except (KeyError, IndexError, ValueError):
        return DEFAULT_TEMPLATE.format(**fields)


async def _notif_post(
    session: aiohttp.ClientSession,
    url: str,
    payload: Dict[str, Any],
    headers: Optional[Dict[str, str]],
) -> None:
    timeout = aiohttp.ClientTimeout(total=5)
    async with session.post(url, json=payload, headers=headers, timeout=timeout) as resp:
        status = getattr(resp, 'status', None)
    if isinstance(status, int) and status >= 400:
        raise aiohttp.ClientError(f'HTTP {status}')


async def _notif_send_immediate(
    session: aiohttp.ClientSession,
    dest: Dict[str, Any],
    line: str,
    debug_logging: bool,
) -> None:
    url = dest.get('url')
    typ = str(dest.get('type') or 'generic').lower()
    headers = dest.get('headers') if isinstance(dest.get('headers'), dict) else None
    try:
        if typ == 'discord':
            await _notif_post(session, url, {'content': line}, None)
        elif typ == 'slack':
            await _notif_post(session, url, {'text': line}, None)
        elif bool(dest.get('raw_json', False)):
            try:
                doc = json.loads(line)
            except ValueError:
                doc = {'message': line}
            await _notif_post(session, url, doc, headers)
        else:
            await _notif_post(session, url, {'message': line}, headers)
    except Exception as e:
        if debug_logging:
            logging.warning(f"Notify({typ}): send failed: {e}")


def _notif_enqueue(dest: Dict[str, Any], line: str) -> None:
    key = str(dest.get('name') or dest.get('url'))
    notify_dests[key] = dest
    notify_queues.setdefault(key, []).append(line)


async def handle(
    session: aiohttp.ClientSession,
    event: str,
    match: PendingMatch,
    config: Dict[str, Any],
    debug_logging: bool,
) -> None:
    dests = _notif_destinations(config)
    if not dests:
        return
    for d in dests:
        if not _notif_match_events(d, event):
            continue
        line = _notif_format_line(d, event, match)
        if bool(d.get('batch', False)):
            _notif_enqueue(d, line)
        else:
            await _notif_send_immediate(session, d, line, debug_logging)


async def flush(
    session: aiohttp.ClientSession,
    config: Dict[str, Any],
    debug_logging: bool,
) -> None:
    for key, lines in list(notify_queues.items()):
        dest = notify_dests.get(key) or {}
        if not lines:
            continue
        typ = str(dest.get('type') or 'generic').lower()
        url = dest.get('url')
        content = '\n'.join(lines)
        try:
            if typ == 'discord':
                if len(content) > 1900:
                    content = content[:1900] + '\n...'
                await _notif_post(session, url, {'content': content}, None)
            elif typ == 'slack':
                if len(content) > 38000:
                    content = content[:38000] + '\n...'
                await _notif_post(session, url, {'text': content}, None)
            else:
                headers = dest.get('headers') if isinstance(dest.get('headers'), dict) else None
                if bool(dest.get('raw_json', False)):
                    try:
                        arr = [json.loads(l) for l in lines]
                    except ValueError:
                        arr = [{'message': l} for l in lines]
                    await _notif_post(session, url, {'events': arr}, headers)
                else:
                    await _notif_post(session, url, {'message': content}, headers)
        except Exception as e:
            if debug_logging:
                logging.warning(f"Notify({typ}): batch flush failed: {e}")
        finally:
            lines.clear()
