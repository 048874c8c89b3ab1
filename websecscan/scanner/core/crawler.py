"""
Async Web Crawler for WebSecScan

Conservative breadth-first crawler:
- FIFO frontier with depth and page caps
- Same-origin scope (cross-origin only when explicitly allowed)
- robots.txt compliance
- Endpoint discovery from links, forms, scripts and redirects
- Partial results when the emergency brake engages
"""

import re
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse, urldefrag, parse_qsl, urlencode
import logging

from websecscan.exceptions import EmergencyAbort, NetworkError, TesterError
from websecscan.scanner.core.requester import AsyncRequester, Response
from websecscan.scanner.core.parser import HTMLParser, Form, extract_script_urls
from websecscan.scanner.core.events import ScanEventChannel, ScanPhase
from websecscan.scanner.core import robots
from websecscan.scanner.core.robots import RobotsPolicy
from websecscan.scanner.core.state import (
    CrawlTarget, DiscoveredEndpoint, EndpointSource, FrontierEntry, ScanState
)

logger = logging.getLogger(__name__)


@dataclass
class PageSnapshot:
    """Status, headers and a capped body of one crawled page, for passive checks."""
    url: str
    status: int
    headers: Dict[str, str]
    body: str
    set_cookies: List[str] = field(default_factory=list)

    BODY_LIMIT = 256 * 1024

    @classmethod
    def from_response(cls, response: Response) -> 'PageSnapshot':
        return cls(url=response.url, status=response.status, headers=dict(response.headers),
                   body=response.body[:cls.BODY_LIMIT], set_cookies=list(response.set_cookies))

    def get_header(self, name: str, default: str = '') -> str:
        wanted = name.lower()
        return next((value for key, value in self.headers.items() if key.lower() == wanted), default)


@dataclass
class CrawlResult:
    """Everything the crawl discovered."""
    target: CrawlTarget
    endpoints: List[DiscoveredEndpoint] = field(default_factory=list)
    forms: List[Form] = field(default_factory=list)
    pages: List[str] = field(default_factory=list)
    responses: List[PageSnapshot] = field(default_factory=list)
    robots: Optional[RobotsPolicy] = None
    aborted: bool = False


def normalize_url(url: str) -> str:
    """Normalize URL for deduplication."""
    url, _ = urldefrag(url)
    parsed = urlparse(url)

    path = parsed.path
    if not path:
        path = '/'
    elif path != '/' and path.endswith('/'):
        path = path.rstrip('/')

    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True))) if parsed.query else ''

    normalized = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{path}"
    if query:
        normalized += f"?{query}"
    return normalized


class AsyncCrawler:
    """
    Breadth-first crawler for security scanning.

    A single coroutine owns the frontier and the visited set. Every fetch
    goes through the shared requester, so crawl traffic is paced by the
    same rate governor as the test runners.
    """

    # URL patterns to skip
    SKIP_EXTENSIONS = {
        '.css', '.js', '.jpg', '.jpeg', '.png', '.gif', '.svg', '.ico',
        '.woff', '.woff2', '.ttf', '.eot', '.pdf', '.doc', '.docx',
        '.xls', '.xlsx', '.ppt', '.pptx', '.zip', '.rar', '.tar', '.gz',
        '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.flv', '.webm',
        '.rss', '.atom', '.map'
    }

    # Links that could change server state when followed
    SKIP_PATTERNS = [
        re.compile(p, re.IGNORECASE) for p in (
            r'logout', r'signout', r'sign-out', r'log-out',
            r'delete', r'remove', r'unsubscribe', r'destroy'
        )
    ]

    MAX_SCRIPT_FETCHES = 10

    def __init__(
            self,
            requester: AsyncRequester,
            max_depth: int = 2,
            max_pages: int = 50,
            respect_robots: bool = True,
            robots_override: bool = False,
            robots_fail_open: bool = True,
            allow_external_links: bool = False,
            parse_sitemap: bool = False,
            events: Optional[ScanEventChannel] = None
    ):
        """
        Initialize the crawler.

        Args:
            requester: AsyncRequester instance
            max_depth: Maximum crawl depth (root is depth 0)
            max_pages: Maximum page fetch attempts
            respect_robots: Whether to load and honor robots.txt
            robots_override: Caller consented to crawl robots-disallowed paths
            robots_fail_open: Allow everything when robots.txt is unavailable
            allow_external_links: Follow links to other origins
            parse_sitemap: Seed the frontier from /sitemap.xml
            events: Channel for progress events
        """
        self.requester = requester
        self.max_depth = max_depth
        self.max_pages = max_pages
        self.respect_robots = respect_robots
        self.robots_override = robots_override
        self.robots_fail_open = robots_fail_open
        self.allow_external_links = allow_external_links
        self.parse_sitemap = parse_sitemap
        self.events = events or ScanEventChannel()

        self._frontier: Deque[FrontierEntry] = deque()
        self._queued: Set[str] = set()
        self._sources: Dict[str, EndpointSource] = {}
        self._endpoints: Dict[Tuple[str, str], DiscoveredEndpoint] = {}
        self._scripts_fetched: Set[str] = set()
        self._policy: Optional[RobotsPolicy] = None
        self._target: Optional[CrawlTarget] = None
        self._cancelled = False

    async def crawl(self, target: CrawlTarget, state: Optional[ScanState] = None) -> CrawlResult:
        """
        Crawl from target.root_url.

        Args:
            target: Scan root
            state: Scan state to record into (created if omitted)

        Returns:
            CrawlResult; `aborted` is set when the emergency brake engaged
        """
        state = state or ScanState(target)
        result = CrawlResult(target=target)
        self._reset()

        self.events.info(f"Starting crawl of {target.root_url}", phase=ScanPhase.CRAWLING,
                         max_depth=self.max_depth, max_pages=self.max_pages)

        try:
            if self.respect_robots:
                self._policy = await robots.load(self.requester, target.origin,
                                                 fail_open=self.robots_fail_open,
                                                 events=self.events)
                result.robots = self._policy

            self._target = target
            self.requester.url_filter = self._may_fetch

            root = normalize_url(target.root_url)
            self._enqueue(FrontierEntry(url=root, depth=0), EndpointSource.LINK)

            if self.parse_sitemap:
                await self._seed_from_sitemap(target)

            while self._frontier and not self._cancelled:
                if state.pages_counted >= self.max_pages:
                    logger.info(f"Page cap of {self.max_pages} reached")
                    break

                entry = self._frontier.popleft()
                if state.is_visited(entry.url) or entry.depth > self.max_depth:
                    continue
                if not self._robots_allows(entry.url):
                    state.note_robots_skip()
                    self.events.info(f"Skipped by robots.txt: {entry.url}", phase=ScanPhase.CRAWLING)
                    continue

                await self._process_entry(entry, target, state, result)

        except EmergencyAbort as e:
            result.aborted = True
            state.record_error(str(e), component='crawler', url=e.url)
            self.events.warning("Crawl stopped by emergency brake, returning partial results",
                                phase=ScanPhase.CRAWLING, pages=len(state.visited))

        state.record_requests(self.requester.supervisor.governor.requests_issued)
        result.endpoints = list(self._endpoints.values())
        state.record_discovery(len(result.endpoints), len(result.forms))

        self.events.success(
            f"Crawl finished: {len(result.pages)} pages, {len(result.endpoints)} endpoints, "
            f"{len(result.forms)} forms",
            phase=ScanPhase.CRAWLING, **state.metadata()
        )
        return result

    def _reset(self):
        self._frontier.clear()
        self._queued.clear()
        self._sources.clear()
        self._endpoints.clear()
        self._scripts_fetched.clear()
        self._policy = None
        self._target = None
        self._cancelled = False

    async def _process_entry(self, entry: FrontierEntry, target: CrawlTarget,
                             state: ScanState, result: CrawlResult):
        """Fetch one frontier entry and expand its children."""
        state.count_page()

        try:
            response = await self.requester.get(entry.url, component='crawler')
        except (NetworkError, TesterError) as e:
            state.note_failed_request()
            state.record_error(e.message, component='crawler', url=entry.url)
            self.events.warning(f"Failed to fetch {entry.url}: {e.message}", phase=ScanPhase.CRAWLING)
            return

        state.mark_visited(entry.url, entry.depth)
        result.pages.append(entry.url)
        result.responses.append(PageSnapshot.from_response(response))
        logger.debug(f"Crawled [{entry.depth}] {entry.url} -> {response.status}")

        for header in response.set_cookies:
            state.record_cookie(response.url, header)

        self._record_endpoint(entry.url, 'GET', entry.depth, self._sources.get(entry.url, EndpointSource.LINK))

        final_url = normalize_url(response.redirect_url or entry.url)
        if final_url != entry.url:
            if not self._in_scope(final_url, target):
                logger.info(f"{entry.url} redirected out of scope to {final_url}")
                return
            self._record_endpoint(final_url, 'GET', entry.depth, EndpointSource.REDIRECT)
            self._queued.add(final_url)

        if response.is_html:
            await self._expand(entry, response, final_url, target, result)

    async def _expand(self, entry: FrontierEntry, response: Response, page_url: str,
                      target: CrawlTarget, result: CrawlResult):
        parsed = HTMLParser(target.root_url).parse(response.body, page_url)

        for form in parsed.forms:
            if not self._in_scope(form.action, target):
                continue
            if not self._robots_allows(form.action):
                logger.info(f"Form action {form.action} excluded by robots.txt")
                continue
            result.forms.append(form)
            self._record_endpoint(
                normalize_url(form.action), form.method, entry.depth, EndpointSource.FORM,
                parameters=tuple(f.name for f in form.fields)
            )

        for link in parsed.links:
            url = normalize_url(link.url)
            if not self._should_crawl(url, target):
                continue
            source = EndpointSource.SCRIPT if link.from_script else EndpointSource.LINK
            if link.parameters and self._robots_allows(url):
                self._record_endpoint(url, 'GET', entry.depth + 1, source)
            if entry.depth + 1 <= self.max_depth:
                self._enqueue(entry.child(url), source)

        script_urls = list(parsed.script_endpoints)
        for src in parsed.scripts:
            script_urls.extend(await self._fetch_script_endpoints(src, target))

        for url in script_urls:
            url = normalize_url(url)
            if self._in_scope(url, target) and self._robots_allows(url):
                self._record_endpoint(url, 'GET', entry.depth + 1, EndpointSource.SCRIPT)

    async def _fetch_script_endpoints(self, src: str, target: CrawlTarget) -> List[str]:
        """Fetch a same-origin external script and extract endpoint strings."""
        src = normalize_url(src)
        if (src in self._scripts_fetched
                or len(self._scripts_fetched) >= self.MAX_SCRIPT_FETCHES
                or not target.is_same_origin(src)
                or not self._robots_allows(src)):
            return []
        self._scripts_fetched.add(src)

        try:
            response = await self.requester.get(src, component='crawler')
        except (NetworkError, TesterError) as e:
            logger.warning(f"Could not fetch script {src}: {e.message}")
            return []

        if not response.is_success:
            return []
        return extract_script_urls(response.body, response.url)

    async def _seed_from_sitemap(self, target: CrawlTarget):
        sitemap_url = f"{target.origin}/sitemap.xml"
        if not self._robots_allows(sitemap_url):
            return
        try:
            response = await self.requester.get(sitemap_url, component='crawler')
        except (NetworkError, TesterError) as e:
            logger.info(f"No sitemap at {sitemap_url}: {e.message}")
            return
        if not response.is_success:
            return

        seeded = 0
        for loc in re.findall(r'<loc>\s*([^<\s]+)\s*</loc>', response.body, re.IGNORECASE):
            url = normalize_url(loc)
            if self._should_crawl(url, target):
                self._enqueue(FrontierEntry(url=url, depth=1, parent=sitemap_url), EndpointSource.LINK)
                seeded += 1
        self.events.info(f"Seeded {seeded} URLs from sitemap.xml", phase=ScanPhase.CRAWLING)

    def _enqueue(self, entry: FrontierEntry, source: EndpointSource):
        if entry.url in self._queued:
            return
        self._queued.add(entry.url)
        self._sources.setdefault(entry.url, source)
        self._frontier.append(entry)

    def _record_endpoint(self, url: str, method: str, depth: int, source: EndpointSource,
                         parameters: Tuple[str, ...] = ()):
        method = method.upper()
        if (method, url) in self._endpoints:
            return
        if not parameters:
            parameters = tuple(name for name, _ in parse_qsl(urlparse(url).query, keep_blank_values=True))
        self._endpoints[(method, url)] = DiscoveredEndpoint(
            url=url, method=method, parameters=parameters, depth=depth, source=source
        )

    def _in_scope(self, url: str, target: CrawlTarget) -> bool:
        if urlparse(url).scheme not in ('http', 'https'):
            return False
        return self.allow_external_links or target.is_same_origin(url)

    def _should_crawl(self, url: str, target: CrawlTarget) -> bool:
        """Check if URL should be crawled based on scope and rules."""
        if not self._in_scope(url, target):
            return False

        path_lower = urlparse(url).path.lower()
        if any(path_lower.endswith(ext) for ext in self.SKIP_EXTENSIONS):
            return False

        return not any(pattern.search(url) for pattern in self.SKIP_PATTERNS)

    def _may_fetch(self, url: str) -> bool:
        """Request filter installed on the requester: scope plus robots.txt."""
        if self._target is not None and not self._in_scope(url, self._target):
            return False
        return self._robots_allows(url)

    def _robots_allows(self, url: str) -> bool:
        if not self.respect_robots or self.robots_override or self._policy is None:
            return True
        parsed = urlparse(url)
        if f"{parsed.scheme}://{parsed.netloc.lower()}" != self._policy.origin:
            return True
        path = parsed.path or '/'
        if parsed.query:
            path = f"{path}?{parsed.query}"
        return self._policy.is_allowed(path)

    def cancel(self):
        """Cancel the crawl."""
        self._cancelled = True
