from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

SEARCH_PLACEHOLDER = '{search}'


class FilterType(str, Enum):
    MUST_CONTAIN = 'must_contain'
    MUST_NOT_CONTAIN = 'must_not_contain'
    REGEX = 'regex'
    WILDCARD = 'wildcard'
    SIZE_RANGE = 'size_range'


class FilterLogic(str, Enum):
    AND = 'and'
    OR = 'or'


class SourceKind(str, Enum):
    FEED = 'feed'
    SCRAPER = 'scraper'


def new_id() -> str:
    return str(uuid.uuid4())


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class FeedFilter:
    type: FilterType
    value: str
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeedFilter':
        return cls(
            type=FilterType(str(data.get('type') or 'must_contain').lower()),
            value=str(data.get('value') or ''),
            enabled=bool(data.get('enabled', True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'value': self.value, 'enabled': self.enabled}


@dataclass
class ScraperSettings:
    item_selector: str
    title_selector: str
    link_selector: str
    size_selector: Optional[str] = None
    search_url_template: Optional[str] = None
    request_delay_ms: int = 500

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScraperSettings':
        delay = _opt_int(data.get('request_delay_ms'))
        return cls(
            item_selector=str(data.get('item_selector') or ''),
            title_selector=str(data.get('title_selector') or ''),
            link_selector=str(data.get('link_selector') or ''),
            size_selector=data.get('size_selector') or None,
            search_url_template=data.get('search_url_template') or None,
            request_delay_ms=500 if delay is None else max(0, delay),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(asdict(self))


@dataclass
class Source:
    id: str
    name: str
    url: str
    enabled: bool = True
    kind: SourceKind = SourceKind.FEED
    check_interval_minutes: Optional[int] = None
    last_checked: Optional[str] = None
    next_check_at: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    failure_count: int = 0
    retry_after: Optional[str] = None
    use_guid_dedup: bool = True
    scraper: Optional[ScraperSettings] = None

    @property
    def has_search_placeholder(self) -> bool:
        return SEARCH_PLACEHOLDER in self.url

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Source':
        kind = SourceKind(str(data.get('kind') or 'feed').lower())
        scraper = data.get('scraper')
        interval = _opt_int(data.get('check_interval_minutes', data.get('check_interval')))
        return cls(
            id=str(data.get('id') or new_id()),
            name=str(data.get('name') or data.get('url') or ''),
            url=str(data.get('url') or ''),
            enabled=bool(data.get('enabled', True)),
            kind=kind,
            check_interval_minutes=interval if interval and interval > 0 else None,
            last_checked=data.get('last_checked'),
            next_check_at=data.get('next_check_at'),
            etag=data.get('etag'),
            last_modified=data.get('last_modified'),
            failure_count=max(0, _opt_int(data.get('failure_count')) or 0),
            retry_after=data.get('retry_after'),
            use_guid_dedup=bool(data.get('use_guid_dedup', True)),
            scraper=ScraperSettings.from_dict(scraper) if isinstance(scraper, dict) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out['kind'] = self.kind.value
        out['scraper'] = self.scraper.to_dict() if self.scraper else None
        return _drop_none(out)


@dataclass
class Interest:
    id: str
    name: str
    enabled: bool = True
    filters: List[FeedFilter] = field(default_factory=list)
    filter_logic: FilterLogic = FilterLogic.AND
    search_term: Optional[str] = None
    smart_episode_filter: bool = False
    download_path: Optional[str] = None

    @property
    def effective_search_term(self) -> str:
        return self.search_term if self.search_term else self.name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Interest':
        filters = data.get('filters') if isinstance(data.get('filters'), list) else []
        return cls(
            id=str(data.get('id') or new_id()),
            name=str(data.get('name') or ''),
            enabled=bool(data.get('enabled', True)),
            filters=[FeedFilter.from_dict(f) for f in filters if isinstance(f, dict)],
            filter_logic=FilterLogic(str(data.get('filter_logic') or 'and').lower()),
            search_term=data.get('search_term') or None,
            smart_episode_filter=bool(data.get('smart_episode_filter', False)),
            download_path=data.get('download_path') or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            'id': self.id,
            'name': self.name,
            'enabled': self.enabled,
            'filters': [f.to_dict() for f in self.filters],
            'filter_logic': self.filter_logic.value,
            'search_term': self.search_term,
            'smart_episode_filter': self.smart_episode_filter,
            'download_path': self.download_path,
        })


@dataclass
class ParsedFeedItem:
    id: str
    guid: str
    title: str
    magnet_uri: Optional[str] = None
    torrent_url: Optional[str] = None
    size: Optional[int] = None
    published_date: Optional[str] = None

    @property
    def link(self) -> Optional[str]:
        return self.magnet_uri or self.torrent_url

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(asdict(self))


@dataclass
class TorrentFilePreview:
    name: str
    size: int
    is_video: bool = False
    is_suspicious: bool = False


@dataclass
class TorrentMetadata:
    name: str
    total_size: int
    file_count: int
    files: List[TorrentFilePreview] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TorrentMetadata':
        files = [TorrentFilePreview(**f) for f in (data.get('files') or []) if isinstance(f, dict)]
        return cls(
            name=str(data.get('name') or ''),
            total_size=int(data.get('total_size') or 0),
            file_count=int(data.get('file_count') or len(files)),
            files=files,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PendingMatch:
    id: str
    source_id: str
    source_name: str
    interest_id: str
    interest_name: str
    title: str
    created_at: str
    magnet_uri: Optional[str] = None
    torrent_url: Optional[str] = None
    metadata: Optional[TorrentMetadata] = None

    @property
    def link(self) -> Optional[str]:
        return self.magnet_uri or self.torrent_url

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingMatch':
        metadata = data.get('metadata')
        return cls(
            id=str(data.get('id') or new_id()),
            source_id=str(data.get('source_id') or ''),
            source_name=str(data.get('source_name') or ''),
            interest_id=str(data.get('interest_id') or ''),
            interest_name=str(data.get('interest_name') or ''),
            title=str(data.get('title') or ''),
            created_at=str(data.get('created_at') or ''),
            magnet_uri=data.get('magnet_uri') or None,
            torrent_url=data.get('torrent_url') or None,
            metadata=TorrentMetadata.from_dict(metadata) if isinstance(metadata, dict) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out['metadata'] = self.metadata.to_dict() if self.metadata else None
        return _drop_none(out)


@dataclass
class BadItem:
    info_hash: str
    title: str
    marked_at: str
    interest_id: Optional[str] = None
    interest_name: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BadItem':
        return cls(
            info_hash=str(data.get('info_hash') or '').lower(),
            title=str(data.get('title') or ''),
            marked_at=str(data.get('marked_at') or ''),
            interest_id=data.get('interest_id'),
            interest_name=data.get('interest_name'),
            reason=data.get('reason'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(asdict(self))
