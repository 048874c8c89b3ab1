"""
Authentication & Session Detection Module

Checks:
- Session cookie flags (Secure, HttpOnly, SameSite)
- Session token length
- Login forms served or submitted over plain HTTP
- Protected-looking endpoints reachable without credentials
"""

from dataclasses import dataclass
from typing import Any, List, Optional
from urllib.parse import urlparse
import re
import logging

from websecscan.scanner.modules.base import BaseModule, Finding, Severity, Confidence, TestPayload
from websecscan.scanner.core.cookies import SetCookie, session_cookies
from websecscan.scanner.core.parser import Form
from websecscan.scanner.core.requester import RequestMethod

logger = logging.getLogger(__name__)

MIN_SESSION_TOKEN_LENGTH = 16

PROTECTED_PATH_KEYWORDS = ('admin', 'dashboard', 'account', 'settings', 'profile', 'manage', 'internal')
WELL_KNOWN_PROTECTED_PATHS = ('/admin', '/dashboard', '/account', '/settings', '/profile')

LOGIN_PAGE_PATTERNS = [
    re.compile(r'<input[^>]+type\s*=\s*["\']?password', re.IGNORECASE),
    re.compile(r'<title>[^<]*(log\s*in|sign\s*in)[^<]*</title>', re.IGNORECASE),
]


@dataclass(frozen=True)
class AuthCheck:
    """One unit of work for the auth runner."""
    kind: str  # 'cookie' | 'login_form' | 'protected'
    subject: Any


class AuthSessionModule(BaseModule):
    """
    Authentication and session management runner.

    Cookie and form checks are passive. Protected endpoints are fetched
    once, anonymously and without following redirects.
    """

    name = "auth"
    description = "Detects weak session handling and missing access control"
    rule_id = "WSS-AUTH-001"
    cwe_id = "CWE-614"
    owasp_category = "A07:2021"

    RULE_SECURE = "WSS-AUTH-001"
    RULE_HTTPONLY = "WSS-AUTH-002"
    RULE_SAMESITE = "WSS-AUTH-003"
    RULE_WEAK_TOKEN = "WSS-AUTH-004"
    RULE_UNAUTHENTICATED = "WSS-AUTH-005"
    RULE_LOGIN_OVER_HTTP = "WSS-FORM-002"

    def targets(self, crawl, state=None) -> List[AuthCheck]:
        checks: List[AuthCheck] = []

        if state is not None:
            checks.extend(AuthCheck('cookie', c) for c in session_cookies(state.cookies))

        checks.extend(AuthCheck('login_form', f) for f in crawl.forms if f.has_password_field)

        for url in self._protected_candidates(crawl):
            checks.append(AuthCheck('protected', url))

        return checks

    async def run(self, target: AuthCheck, payloads: Optional[List[TestPayload]] = None) -> List[Finding]:
        if target.kind == 'cookie':
            return self.check_cookie(target.subject)
        if target.kind == 'login_form':
            return self.check_login_form(target.subject)
        if target.kind == 'protected':
            return await self.check_unauthenticated(target.subject)
        raise ValueError(f"unknown auth check {target.kind!r}")

    # Cookies

    def check_cookie(self, cookie: SetCookie) -> List[Finding]:
        """Flag attribute and entropy problems on one session cookie."""
        findings = []
        parsed = urlparse(cookie.url)
        origin_url = f"{parsed.scheme}://{parsed.netloc}/"
        is_https = parsed.scheme == 'https'
        evidence = f"Set-Cookie: {self.truncate(self._redact(cookie), 150)}"

        if not cookie.secure:
            findings.append(self.create_finding(
                title="Session Cookie Missing Secure Flag",
                severity=Severity.HIGH,
                confidence=Confidence.HIGH if is_https else Confidence.MEDIUM,
                url=origin_url,
                parameter=cookie.name,
                rule_id=self.RULE_SECURE,
                evidence=[evidence],
                description=f"Session cookie '{cookie.name}' can be sent over unencrypted connections.",
                remediation="Set the Secure attribute on all session cookies and serve the site over HTTPS only."
            ))

        if not cookie.httponly:
            findings.append(self.create_finding(
                title="Session Cookie Missing HttpOnly Flag",
                severity=Severity.MEDIUM,
                confidence=Confidence.HIGH,
                url=origin_url,
                parameter=cookie.name,
                rule_id=self.RULE_HTTPONLY,
                cwe_id='CWE-1004',
                evidence=[evidence],
                description=f"Session cookie '{cookie.name}' is readable from JavaScript, so any XSS "
                            f"can steal the session.",
                remediation="Set the HttpOnly attribute on all session cookies."
            ))

        if not cookie.samesite or cookie.samesite.lower() == 'none':
            findings.append(self.create_finding(
                title="Session Cookie Missing SameSite Attribute",
                severity=Severity.MEDIUM,
                confidence=Confidence.HIGH,
                url=origin_url,
                parameter=cookie.name,
                rule_id=self.RULE_SAMESITE,
                cwe_id='CWE-1275',
                evidence=[evidence],
                description=f"Session cookie '{cookie.name}' is sent on cross-site requests "
                            f"(SameSite={cookie.samesite or 'not set'}).",
                remediation="Set SameSite=Lax (or Strict) on session cookies."
            ))

        if cookie.value and len(cookie.value) < MIN_SESSION_TOKEN_LENGTH:
            findings.append(self.create_finding(
                title="Weak Session Token",
                severity=Severity.HIGH,
                confidence=Confidence.MEDIUM,
                url=origin_url,
                parameter=cookie.name,
                rule_id=self.RULE_WEAK_TOKEN,
                cwe_id='CWE-331',
                evidence=[evidence, f"token length: {len(cookie.value)}"],
                description=f"Session token in '{cookie.name}' is only {len(cookie.value)} characters "
                            f"long and may be guessable.",
                remediation="Generate session identifiers with a CSPRNG and at least 128 bits of entropy."
            ))

        return findings

    @staticmethod
    def _redact(cookie: SetCookie) -> str:
        """Set-Cookie header with the value masked."""
        if not cookie.value:
            return cookie.raw
        masked = cookie.value[:4] + '***'
        return cookie.raw.replace(cookie.value, masked, 1)

    # Login forms

    def check_login_form(self, form: Form) -> List[Finding]:
        """Password forms must be served and submitted over HTTPS."""
        page_http = urlparse(form.page_url).scheme == 'http'
        action_http = urlparse(form.action).scheme == 'http'
        if not (page_http or action_http):
            return []

        password_field = next((f.name for f in form.fields if f.is_password), None)
        where = 'served and submitted' if page_http and action_http else (
            'served' if page_http else 'submitted')

        return [self.create_finding(
            title="Login Form Over Insecure Channel",
            severity=Severity.HIGH,
            confidence=Confidence.HIGH,
            url=form.action,
            method=form.method,
            parameter=password_field,
            rule_id=self.RULE_LOGIN_OVER_HTTP,
            owasp_category="A02:2021",
            cwe_id='CWE-319',
            evidence=[f"Form on {form.page_url} posts to {form.action}"],
            description=f"A form with a password field is {where} over plain HTTP, exposing credentials "
                        f"to network attackers.",
            remediation="Serve login pages over HTTPS, submit credentials to HTTPS endpoints and enable HSTS."
        )]

    # Access control

    def _protected_candidates(self, crawl) -> List[str]:
        policy = crawl.robots
        seen = set()
        candidates = []

        def add(url: str):
            path = urlparse(url).path or '/'
            if url in seen or (policy is not None and not policy.is_allowed(path)):
                return
            seen.add(url)
            candidates.append(url)

        for endpoint in crawl.endpoints:
            path = urlparse(endpoint.url).path.lower()
            if endpoint.method == 'GET' and any(k in path for k in PROTECTED_PATH_KEYWORDS):
                add(endpoint.url.split('?')[0])

        for path in WELL_KNOWN_PROTECTED_PATHS:
            add(crawl.target.origin + path)

        return candidates

    async def check_unauthenticated(self, url: str) -> List[Finding]:
        """Fetch a protected-looking URL without any credentials."""
        response = await self.requester.request(
            url, RequestMethod.GET, component=self.name, anonymous=True, allow_redirects=False
        )

        if not response.is_success or not response.body.strip():
            return []
        if any(p.search(response.body) for p in LOGIN_PAGE_PATTERNS):
            return []

        self.logger.info(f"{url} answered {response.status} without credentials")
        return [self.create_finding(
            title="Protected Endpoint Accessible Without Authentication",
            severity=Severity.HIGH,
            confidence=Confidence.MEDIUM,
            url=url,
            rule_id=self.RULE_UNAUTHENTICATED,
            owasp_category="A01:2021",
            cwe_id='CWE-306',
            evidence=[f"HTTP {response.status} without cookies or credentials",
                      self.truncate(response.body.strip(), 200)],
            description=f"'{url}' looks like a protected area but returned content to an "
                        f"unauthenticated request.",
            remediation="Enforce authentication and authorization checks server-side on every "
                        "protected route."
        )]


def create(requester, events=None) -> AuthSessionModule:
    """Module factory used by the engine."""
    return AuthSessionModule(requester, events)
