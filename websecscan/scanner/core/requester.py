"""
Async HTTP Requester for WebSecScan

aiohttp client shared by the crawler and all test runners:
- Every request is cleared by the safety supervisor (rate + budget)
- Per-request timeout
- Optional session credentials and an anonymous (credential-free) mode
- Transport failures raised as NetworkError / RequestTimeout
"""

import asyncio
import aiohttp
import ssl
import time
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse, parse_qsl, urlencode, urlunparse
from dataclasses import dataclass, field
from enum import Enum

from websecscan.exceptions import NetworkError, RequestBlocked, RequestTimeout
from websecscan.scanner.core.supervisor import SafetySupervisor

logger = logging.getLogger(__name__)


class RequestMethod(Enum):
    """Methods the scanner may send."""
    GET = 'GET'
    POST = 'POST'
    PUT = 'PUT'
    DELETE = 'DELETE'
    HEAD = 'HEAD'
    PATCH = 'PATCH'

    @classmethod
    def from_name(cls, name: str) -> 'RequestMethod':
        try:
            return cls(name.upper())
        except ValueError:
            return cls.GET


@dataclass
class Response:
    """A fully read response plus the request that produced it."""
    url: str
    status: int
    headers: Dict[str, str]
    body: str
    elapsed: float
    redirect_url: Optional[str] = None
    set_cookies: List[str] = field(default_factory=list)
    request_method: str = 'GET'
    request_url: str = ''

    @property
    def is_success(self) -> bool:
        return self.status // 100 == 2

    @property
    def content_type(self) -> str:
        return self.get_header('Content-Type').lower()

    @property
    def is_html(self) -> bool:
        return any(kind in self.content_type for kind in ('text/html', 'xhtml'))

    def get_header(self, name: str, default: str = '') -> str:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        return next((value for key, value in self.headers.items() if key.lower() == wanted), default)


class AsyncRequester:
    """
    The only way the scanner talks to the target.

    Two aiohttp sessions are kept: the main one carries a cookie jar and any
    operator-supplied credentials, the anonymous one sends neither. Both go
    through the same SafetySupervisor, so they share one rate slot.
    """

    USER_AGENT = 'WebSecScan/1.0 (Security Scanner)'

    DEFAULT_HEADERS = {
        'User-Agent': USER_AGENT,
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
        'Accept-Language': 'en-US,en;q=0.5',
    }

    MAX_BODY_SIZE = 2 * 1024 * 1024
    READ_CHUNK_SIZE = 64 * 1024

    MAX_REDIRECTS = 10
    REDIRECT_STATUSES = (301, 302, 303, 307, 308)

    def __init__(
            self,
            supervisor: SafetySupervisor,
            timeout: float = 10.0,
            max_retries: int = 1,
            verify_ssl: bool = True,
            session_headers: Optional[Dict[str, str]] = None,
            session_cookies: Optional[Dict[str, str]] = None,
            max_body_size: int = MAX_BODY_SIZE
    ):
        """
        Args:
            supervisor: Safety supervisor that clears every request
            timeout: Per-request timeout in seconds
            max_retries: Attempts per request; each attempt takes a rate slot
            verify_ssl: Verify TLS certificates
            session_headers: Extra headers for authenticated requests (never logged)
            session_cookies: Cookies for authenticated requests (never logged)
            max_body_size: Maximum number of body bytes read per response
        """
        self.supervisor = supervisor
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max(1, max_retries)
        self.verify_ssl = verify_ssl
        self.max_body_size = max_body_size

        self.headers = self.DEFAULT_HEADERS.copy()
        self._session_headers = dict(session_headers or {})
        self._session_cookies = dict(session_cookies or {})

        # Set by the crawler once robots.txt is known; None allows every URL
        self.url_filter: Optional[Callable[[str], bool]] = None

        self._session: Optional[aiohttp.ClientSession] = None
        self._anonymous_session: Optional[aiohttp.ClientSession] = None

        # Statistics
        self.stats = {
            'requests_made': 0,
            'requests_successful': 0,
            'requests_failed': 0,
            'requests_timed_out': 0,
            'total_bytes': 0,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def start(self):
        """Initialize the aiohttp sessions."""
        if self._session is None or self._session.closed:
            headers = self.headers.copy()
            headers.update(self._session_headers)

            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=10, ssl=self._ssl_context()),
                timeout=self.timeout,
                headers=headers,
                cookie_jar=aiohttp.CookieJar(unsafe=True)
            )
            if self._session_cookies:
                self._session.cookie_jar.update_cookies(self._session_cookies)

        if self._anonymous_session is None or self._anonymous_session.closed:
            self._anonymous_session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=2, ssl=self._ssl_context()),
                timeout=self.timeout,
                headers=self.headers.copy(),
                cookie_jar=aiohttp.DummyCookieJar()
            )

    async def close(self):
        """Close the aiohttp sessions."""
        for session in (self._session, self._anonymous_session):
            if session and not session.closed:
                await session.close()
        self._session = None
        self._anonymous_session = None

    async def request(
            self,
            url: str,
            method: RequestMethod = RequestMethod.GET,
            data: Optional[Dict[str, Any]] = None,
            headers: Optional[Dict[str, str]] = None,
            allow_redirects: bool = True,
            component: str = 'requester',
            anonymous: bool = False,
            timeout: Optional[float] = None
    ) -> Response:
        """
        Make an HTTP request.

        Redirects are followed hop by hop. Each hop is cleared by the
        supervisor and checked against `url_filter`; a hop the filter rejects
        is not fetched and the 3xx response is returned as is.

        Args:
            url: Target URL
            method: HTTP method
            data: Query parameters (GET/HEAD) or form body (other methods)
            headers: Per-request header overrides
            allow_redirects: Follow 3xx responses
            component: Name of the calling component, for diagnostics
            anonymous: Send without cookies or session headers
            timeout: Override the per-request timeout in seconds

        Returns:
            Response object

        Raises:
            RequestBlocked: `url_filter` rejects the URL
            EmergencyAbort: Scan budget exhausted
            RequestTimeout: Request exceeded its deadline
            NetworkError: Transport failure
        """
        if self.url_filter is not None and not self.url_filter(url):
            raise RequestBlocked("URL excluded from the scan", component=component, url=url)

        if self._session is None or self._session.closed:
            await self.start()

        session = self._anonymous_session if anonymous else self._session
        request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else self.timeout

        last_error: Optional[NetworkError] = None

        for attempt in range(self.max_retries):
            try:
                return await self._send(session, url, method, data, headers,
                                        allow_redirects, component, request_timeout)

            except asyncio.TimeoutError:
                self.stats['requests_timed_out'] += 1
                last_error = RequestTimeout("Request timed out", component=component, url=url)
                logger.warning(f"{component}: {method.value} {url} timed out (attempt {attempt + 1}/{self.max_retries})")

            except (aiohttp.ClientError, UnicodeDecodeError, LookupError) as e:
                last_error = NetworkError(f"Request failed: {e}", component=component, url=url)
                logger.warning(f"{component}: {method.value} {url} failed: {e} (attempt {attempt + 1}/{self.max_retries})")

        self.stats['requests_failed'] += 1
        raise last_error

    async def _send(self, session, url, method, data, headers, allow_redirects,
                    component, request_timeout) -> Response:
        """One attempt: the request plus any redirect hops it is allowed to follow."""
        start_time = time.monotonic()
        current_url, current_method, current_data = url, method, data
        set_cookies: List[str] = []
        hops = 0

        while True:
            await self.supervisor.clearance(component, current_url)
            self.stats['requests_made'] += 1
            body_method = current_method not in (RequestMethod.GET, RequestMethod.HEAD)

            async with session.request(
                    current_method.value,
                    current_url,
                    data=current_data if body_method else None,
                    params=current_data if not body_method else None,
                    headers=headers,
                    allow_redirects=False,
                    timeout=request_timeout
            ) as resp:
                set_cookies.extend(resp.headers.getall('Set-Cookie', []))
                location = resp.headers.get('Location')

                if (allow_redirects and location and resp.status in self.REDIRECT_STATUSES
                        and hops < self.MAX_REDIRECTS):
                    next_url = urljoin(str(resp.url), location)
                    if self.url_filter is None or self.url_filter(next_url):
                        hops += 1
                        keeps_body = resp.status in (307, 308) and body_method
                        if resp.status == 303 or (resp.status in (301, 302) and current_method is RequestMethod.POST):
                            current_method = RequestMethod.GET
                        current_data = current_data if keeps_body else None
                        current_url = next_url
                        continue
                    logger.info(f"{component}: not following redirect from {current_url} to {next_url}")

                raw = await self._read_body(resp)
                body = raw.decode(resp.charset or 'utf-8', errors='replace')

                self.stats['requests_successful'] += 1
                self.stats['total_bytes'] += len(raw)

                return Response(
                    url=str(resp.url),
                    status=resp.status,
                    headers=dict(resp.headers),
                    body=body,
                    elapsed=time.monotonic() - start_time,
                    redirect_url=str(resp.url) if hops else None,
                    set_cookies=set_cookies,
                    request_method=method.value,
                    request_url=url
                )

    async def _read_body(self, resp) -> bytes:
        """Read until EOF or `max_body_size` bytes, whichever comes first."""
        chunks: List[bytes] = []
        size = 0
        async for chunk in resp.content.iter_chunked(self.READ_CHUNK_SIZE):
            chunks.append(chunk)
            size += len(chunk)
            if size >= self.max_body_size:
                break
        return b''.join(chunks)[:self.max_body_size]

    async def get(self, url: str, **kwargs) -> Response:
        return await self.request(url, RequestMethod.GET, **kwargs)

    async def post(self, url: str, data: Dict = None, **kwargs) -> Response:
        return await self.request(url, RequestMethod.POST, data=data, **kwargs)

    async def head(self, url: str, **kwargs) -> Response:
        return await self.request(url, RequestMethod.HEAD, **kwargs)

    async def test_payload(
            self,
            url: str,
            parameter: str,
            payload: str,
            method: RequestMethod = RequestMethod.GET,
            base_params: Optional[Dict[str, str]] = None,
            component: str = 'requester'
    ) -> Response:
        """
        Send `payload` as the value of one parameter.

        Other parameters keep their values from the URL query (GET) or from
        `base_params` (form submissions).

        Args:
            url: Target URL
            parameter: Name of the parameter carrying the payload
            payload: Probe value
            method: HTTP method
            base_params: Baseline values for the other parameters
            component: Name of the calling component

        Returns:
            Response object
        """
        if method in (RequestMethod.GET, RequestMethod.HEAD):
            parsed = urlparse(url)
            params = dict(parse_qsl(parsed.query, keep_blank_values=True))
            if base_params:
                for key, value in base_params.items():
                    params.setdefault(key, value)
            params[parameter] = payload
            new_url = urlunparse(parsed._replace(query=urlencode(params)))
            return await self.request(new_url, method, component=component)

        data = dict(base_params or {})
        data[parameter] = payload
        return await self.request(url, method, data=data, component=component)

    def get_stats(self) -> Dict[str, int]:
        """Snapshot of the transport counters."""
        return self.stats.copy()
