import os
import asyncio
import logging
import signal
import aiohttp
from typing import Any, Dict, Optional


# Helper function to get environment variables with type casting
def get_env_var(key, default=None, cast_to=str):
    value = os.environ.get(key, default)
    if value is not None:
        return cast_to(value)
    return default


def _truthy(x: str) -> bool:
    return str(x).lower() in ['true', '1', 'yes']


# Fetch debug flag from environment and set logging level
DEBUG_LOGGING = get_env_var('DEBUG_LOGGING', default='false', cast_to=_truthy)
logging_level = logging.DEBUG if DEBUG_LOGGING else logging.INFO

logging.basicConfig(
    format='%(asctime)s [%(levelname)s]: %(message)s',
    level=logging_level,
    handlers=[logging.StreamHandler()],
    force=True,
)

# Dedicated non-propagating logger for structured event logs to avoid duplicates
EVENT_LOG = logging.getLogger('feed_screener.events')
EVENT_LOG.setLevel(logging_level)
EVENT_LOG.propagate = False
# Exactly one handler even if the module is imported twice
for _h in list(EVENT_LOG.handlers):
    EVENT_LOG.removeHandler(_h)
_h = logging.StreamHandler()
_h.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s]: %(message)s'))
EVENT_LOG.addHandler(_h)

CONFIG_PATH = get_env_var('CONFIG_PATH', '/app/config.yaml')
DATA_DIR = get_env_var('DATA_DIR', '/app/data')
DOWNLOAD_DIRECTORY = get_env_var('DOWNLOAD_DIRECTORY', None)

# Scheduling
CHECK_INTERVAL_MINUTES = get_env_var('CHECK_INTERVAL_MINUTES', 15, cast_to=int)
TICK_SECONDS = get_env_var('TICK_SECONDS', 60, cast_to=float)
MAX_CONCURRENT_SOURCES = get_env_var('MAX_CONCURRENT_SOURCES', 1, cast_to=int)

# Logging controls
STRUCTURED_LOGS = get_env_var('STRUCTURED_LOGS', default='true', cast_to=_truthy)

# Request and retry configuration
REQUEST_TIMEOUT = get_env_var('REQUEST_TIMEOUT', 30, cast_to=int)
RETRY_ATTEMPTS = get_env_var('RETRY_ATTEMPTS', 2, cast_to=int)
RETRY_BACKOFF = get_env_var('RETRY_BACKOFF', 1.0, cast_to=float)  # base seconds

from core.config import ConfigAccessor as _ConfigAccessor
from core.config import load_yaml as _load_yaml
from core.config import sanitize_config as _sanitize_config
from core.config import validate_config as _validate_config

# YAML config loading
CONFIG: Dict[str, Any] = _sanitize_config(_load_yaml(CONFIG_PATH), DEBUG_LOGGING)
_validate_config(CONFIG, DEBUG_LOGGING)

_AC = _ConfigAccessor(CONFIG)


# Prefer YAML general for app-level settings; fallback to env-loaded defaults
def _get_general(key: str, default: Any) -> Any:
    val = _AC.general(key, None)
    return default if val is None else val


DEBUG_LOGGING = bool(_get_general('debug_logging', DEBUG_LOGGING))
STRUCTURED_LOGS = bool(_get_general('structured_logs', STRUCTURED_LOGS))
DATA_DIR = str(_get_general('data_dir', DATA_DIR))
DOWNLOAD_DIRECTORY = _get_general('download_directory', DOWNLOAD_DIRECTORY)
CHECK_INTERVAL_MINUTES = int(_get_general('check_interval_minutes', CHECK_INTERVAL_MINUTES))
TICK_SECONDS = float(_get_general('tick_seconds', TICK_SECONDS))
MAX_CONCURRENT_SOURCES = int(_get_general('max_concurrent_sources', MAX_CONCURRENT_SOURCES))
REQUEST_TIMEOUT = int(_get_general('request_timeout', REQUEST_TIMEOUT))
RETRY_ATTEMPTS = int(_get_general('retry_attempts', RETRY_ATTEMPTS))
RETRY_BACKOFF = float(_get_general('retry_backoff', RETRY_BACKOFF))

from core import registry as _registry
from core import runner as _runner
from core.actions import ActionsDeps
from core.errors import ScreenerError
from core.events import EventBus
from core.runner import SchedulerDeps
from core.state import EngineState
from integrations import clients as _clients
from integrations import feeds as _feeds
from integrations import metadata as _metadata
from integrations import scraper as _scraper
from storage import state_store as _store

HTTP_OPTS = {
    'request_timeout': REQUEST_TIMEOUT,
    'retry_attempts': RETRY_ATTEMPTS,
    'retry_backoff': RETRY_BACKOFF,
    'debug_logging': DEBUG_LOGGING,
}

EVENT_BUS = EventBus(
    CONFIG,
    structured_logs=STRUCTURED_LOGS,
    debug_logging=DEBUG_LOGGING,
    logger=EVENT_LOG,
)


async def save_state(state: EngineState) -> None:
    await _store.save_state(state, DATA_DIR)


def build_scheduler_deps() -> SchedulerDeps:
    return SchedulerDeps(
        fetch_feed=lambda s, url: _feeds.fetch_feed(s, url, **HTTP_OPTS),
        fetch_feed_cached=lambda s, url, etag, lm: _feeds.fetch_feed_cached(s, url, etag, lm, **HTTP_OPTS),
        scrape=lambda s, src, url: _scraper.scrape_page(s, src, url, **HTTP_OPTS),
        build_scrape_url=_scraper.build_search_url,
        save_state=save_state,
        event_bus=EVENT_BUS,
        check_interval_minutes=CHECK_INTERVAL_MINUTES,
        tick_seconds=TICK_SECONDS,
        max_concurrent_sources=MAX_CONCURRENT_SOURCES,
        debug_logging=DEBUG_LOGGING,
    )


def build_actions_deps(state: EngineState, scheduler: SchedulerDeps) -> ActionsDeps:
    return ActionsDeps(
        add_torrent=lambda s, uri, path: _clients.add_torrent(s, uri, path, CONFIG),
        fetch_metadata=lambda s, url: _metadata.fetch_torrent_metadata(s, url, **HTTP_OPTS),
        recheck_interest=lambda s, interest_id: _runner.recheck_interest(s, state, scheduler, interest_id),
        event_bus=EVENT_BUS,
        default_download_path=DOWNLOAD_DIRECTORY,
        debug_logging=DEBUG_LOGGING,
    )


async def seed_state(state: EngineState) -> None:
    # Only an empty store is seeded from the YAML lists
    if not state.sources:
        for raw in _AC.seed_sources():
            try:
                await _registry.add_source(state, raw)
            except (ScreenerError, ValueError) as e:
                logging.warning(f"Skipping seed source {raw.get('name') or raw.get('url')}: {e}")
    if not state.interests:
        for raw in _AC.seed_interests():
            try:
                await _registry.add_interest(state, raw)
            except (ScreenerError, ValueError) as e:
                logging.warning(f"Skipping seed interest {raw.get('name')}: {e}")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass


async def main(stop_event: Optional[asyncio.Event] = None):
    state = _store.load_state(DATA_DIR)
    await seed_state(state)
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)
    deps = build_scheduler_deps()
    async with aiohttp.ClientSession() as session:
        logging.info(
            f'Feed screener started: {len(state.sources)} source(s), {len(state.interests)} interest(s), '
            f'check every {CHECK_INTERVAL_MINUTES}m'
        )
        await _runner.run_forever(session, state, deps, stop_event)


def run():
    asyncio.run(main())


if __name__ == '__main__':
    run()
