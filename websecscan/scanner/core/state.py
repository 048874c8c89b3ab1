"""
Scan data model for WebSecScan

Crawl target, frontier entries, discovered endpoints and the per-scan
state container.
"""

import time
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple
from urllib.parse import urlparse

from websecscan.exceptions import ConfigurationError, FatalEngineError


class ScanStatus(Enum):
    """Scan lifecycle status."""
    RUNNING = 'running'
    COMPLETED = 'completed'
    INCOMPLETE = 'incomplete'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self is not ScanStatus.RUNNING


class EndpointSource(Enum):
    """How an endpoint was discovered."""
    LINK = 'link'
    SCRIPT = 'script'
    FORM = 'form'
    REDIRECT = 'redirect'


@dataclass(frozen=True)
class CrawlTarget:
    """The scan root. Built once per scan."""
    root_url: str
    origin: str
    created_at: datetime

    @classmethod
    def from_url(cls, url: str) -> 'CrawlTarget':
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ConfigurationError(f"Target must be an absolute http(s) URL: {url!r}",
                                     component='target', url=url)
        origin = f"{parsed.scheme}://{parsed.netloc.lower()}"
        return cls(root_url=url, origin=origin, created_at=datetime.now(timezone.utc))

    def is_same_origin(self, url: str) -> bool:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc.lower()}" == self.origin


@dataclass(frozen=True)
class FrontierEntry:
    """A URL waiting in the crawl frontier."""
    url: str
    depth: int
    parent: Optional[str] = None

    def child(self, url: str) -> 'FrontierEntry':
        return FrontierEntry(url=url, depth=self.depth + 1, parent=self.url)


@dataclass(frozen=True)
class DiscoveredEndpoint:
    """An endpoint found during crawling that runners can probe."""
    url: str
    method: str = 'GET'
    parameters: Tuple[str, ...] = ()
    depth: int = 0
    source: EndpointSource = EndpointSource.LINK

    @property
    def key(self) -> Tuple[str, str]:
        return self.method, self.url

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'method': self.method,
            'parameters': list(self.parameters),
            'depth': self.depth,
            'source': self.source.value,
        }


@dataclass(frozen=True)
class CookieObservation:
    """A Set-Cookie header seen on a crawled response."""
    url: str
    header: str


class ScanState:
    """
    Mutable state of one scan.

    Append-only while RUNNING. Once freeze() is called with a terminal
    status every mutator raises FatalEngineError.
    """

    def __init__(self, target: CrawlTarget):
        self.target = target
        self.status = ScanStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self._started_monotonic = time.monotonic()
        self._duration: Optional[float] = None

        self._visited: Set[str] = set()
        self._pages_counted = 0
        self._findings: Dict[str, Any] = {}
        self._errors: List[Dict[str, Any]] = []
        self._cookies: List[CookieObservation] = []

        self._requests_issued = 0
        self._forms_discovered = 0
        self._endpoints_discovered = 0
        self.skipped_by_robots = 0
        self.failed_requests = 0
        self.max_depth_reached = 0
        self.abort_reason: Optional[str] = None

    def _ensure_mutable(self):
        if self.status.is_terminal:
            raise FatalEngineError(f"Scan state is frozen ({self.status.value})",
                                   component='state')

    # Mutators

    def mark_visited(self, url: str, depth: int):
        self._ensure_mutable()
        self._visited.add(url)
        self.max_depth_reached = max(self.max_depth_reached, depth)

    def count_page(self):
        """Count one fetch attempt against the page cap."""
        self._ensure_mutable()
        self._pages_counted += 1

    def record_error(self, message: str, component: str, url: Optional[str] = None):
        self._ensure_mutable()
        self._errors.append({
            'component': component,
            'url': url,
            'message': message,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })

    def note_robots_skip(self):
        self._ensure_mutable()
        self.skipped_by_robots += 1

    def note_failed_request(self):
        self._ensure_mutable()
        self.failed_requests += 1

    def record_cookie(self, url: str, header: str):
        self._ensure_mutable()
        self._cookies.append(CookieObservation(url=url, header=header))

    def record_requests(self, count: int):
        """Store the governor's request count; it never decreases."""
        self._ensure_mutable()
        self._requests_issued = max(self._requests_issued, count)

    def record_discovery(self, endpoints: int, forms: int):
        self._ensure_mutable()
        self._endpoints_discovered = endpoints
        self._forms_discovered = forms

    def record_findings(self, findings: List[Any]):
        """Store findings keyed by fingerprint."""
        self._ensure_mutable()
        for finding in findings:
            self._findings[finding.fingerprint] = finding

    def freeze(self, status: ScanStatus, reason: Optional[str] = None):
        """Move to a terminal status. Later mutation raises FatalEngineError."""
        if not status.is_terminal:
            raise ValueError("freeze() requires a terminal status")
        self._ensure_mutable()
        if reason:
            self.abort_reason = reason
        self.status = status
        self.finished_at = datetime.now(timezone.utc)
        self._duration = time.monotonic() - self._started_monotonic

    # Read-only views

    @property
    def visited(self) -> FrozenSet[str]:
        return frozenset(self._visited)

    def is_visited(self, url: str) -> bool:
        return url in self._visited

    @property
    def requests_issued(self) -> int:
        return self._requests_issued

    @property
    def endpoints_discovered(self) -> int:
        return self._endpoints_discovered

    @property
    def forms_discovered(self) -> int:
        return self._forms_discovered

    @property
    def pages_counted(self) -> int:
        return self._pages_counted

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return list(self._errors)

    @property
    def cookies(self) -> Tuple[CookieObservation, ...]:
        return tuple(self._cookies)

    @property
    def findings(self) -> Dict[str, Any]:
        return dict(self._findings)

    @property
    def duration(self) -> float:
        if self._duration is not None:
            return self._duration
        return time.monotonic() - self._started_monotonic

    def metadata(self) -> Dict[str, Any]:
        """Crawl statistics for reporting."""
        duration = self.duration
        return {
            'pages_scanned': len(self._visited),
            'pages_attempted': self._pages_counted,
            'total_requests': self.requests_issued,
            'failed_requests': self.failed_requests,
            'skipped_by_robots': self.skipped_by_robots,
            'max_depth_reached': self.max_depth_reached,
            'forms_discovered': self.forms_discovered,
            'endpoints_discovered': self.endpoints_discovered,
            'duration': round(duration, 3),
            'crawl_speed': round(len(self._visited) / duration, 3) if duration > 0 else 0.0,
        }
