"""
Security Headers Detection Module

Passive checks over the pages the crawler already fetched:
- Missing or misconfigured security headers (CSP, X-Frame-Options,
  X-Content-Type-Options, HSTS)
- Weak Content Security Policy directives
- Server technology disclosure
- Mixed content on HTTPS pages
- Stack traces and exception details in response bodies

No requests are sent.
"""

import re
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse
import logging

from bs4 import BeautifulSoup

from websecscan.scanner.modules.base import BaseModule, Finding, Severity, Confidence, TestPayload
from websecscan.scanner.core.crawler import PageSnapshot

logger = logging.getLogger(__name__)


RULE_MISSING_CSP = 'WSS-SEC-001'
RULE_WEAK_CSP = 'WSS-SEC-002'
RULE_FRAME_OPTIONS = 'WSS-SEC-003'
RULE_CONTENT_TYPE_OPTIONS = 'WSS-SEC-004'
RULE_HSTS = 'WSS-SEC-005'
RULE_MIXED_CONTENT = 'WSS-SEC-007'
RULE_TECH_DISCLOSURE = 'WSS-SEC-008'
RULE_STACK_TRACE = 'WSS-EXC-001'

# Six months, the shortest max-age accepted for HSTS preloading
MIN_HSTS_MAX_AGE = 15552000

DISCLOSURE_HEADERS = ('Server', 'X-Powered-By', 'X-AspNet-Version', 'X-AspNetMvc-Version')
VERSION_PATTERN = re.compile(r'\d+(?:\.\d+)+')

# (pattern, platform)
STACK_TRACE_PATTERNS = [
    (re.compile(r'Traceback\s+\(most\s+recent\s+call\s+last\)', re.IGNORECASE), 'Python'),
    (re.compile(r'File\s+"[^"]+",\s+line\s+\d+', re.IGNORECASE), 'Python'),
    (re.compile(r'Exception\s+in\s+thread\s+"[^"]+"', re.IGNORECASE), 'Java'),
    (re.compile(r'at\s+[\w$.]+\([\w$]+\.java:\d+\)'), 'Java'),
    (re.compile(r'\.php\s+on\s+line\s+\d+', re.IGNORECASE), 'PHP'),
    (re.compile(r'(?:Fatal|Parse)\s+error:\s', re.IGNORECASE), 'PHP'),
    (re.compile(r"\.rb:\d+:in\s+`[^`']+'"), 'Ruby'),
    (re.compile(r'System\.\w*Exception:'), '.NET'),
    (re.compile(r'at\s+[\w$.<>]+\s*\([^)\s]*:\d+:\d+\)'), 'Node.js'),
    (re.compile(r'Uncaught\s+\w*Error:'), 'JavaScript'),
]

# (tag, attribute, active content)
MIXED_CONTENT_SOURCES = (
    ('script', 'src', True),
    ('iframe', 'src', True),
    ('object', 'data', True),
    ('embed', 'src', True),
    ('img', 'src', False),
    ('audio', 'src', False),
    ('video', 'src', False),
    ('source', 'src', False),
)


def parse_csp(policy: str) -> Dict[str, List[str]]:
    """Split a policy into {directive: [source, ...]}; the first occurrence of a directive wins."""
    directives: Dict[str, List[str]] = {}
    for part in policy.split(';'):
        tokens = part.strip().split()
        if tokens and tokens[0].lower() not in directives:
            directives[tokens[0].lower()] = tokens[1:]
    return directives


def csp_weaknesses(directives: Dict[str, List[str]]) -> List[Tuple[str, bool]]:
    """
    Weaknesses of a parsed policy.

    Returns:
        List of (description, serious) pairs; serious issues undo the
        policy's XSS protection, the others leave gaps around it
    """
    issues = []
    default_src = directives.get('default-src')
    script_src = directives.get('script-src', default_src) or []
    style_src = directives.get('style-src', default_src) or []
    strict_dynamic = "'strict-dynamic'" in script_src
    has_nonce = any(s.startswith(("'nonce-", "'sha256-", "'sha384-", "'sha512-")) for s in script_src)

    if "'unsafe-inline'" in script_src and not (strict_dynamic or has_nonce):
        issues.append(("script-src allows 'unsafe-inline'", True))
    if "'unsafe-eval'" in script_src:
        issues.append(("script-src allows 'unsafe-eval'", True))
    if any(s in ('*', 'http:', 'https:', 'data:') for s in script_src) and not strict_dynamic:
        issues.append(("script-src allows any host or scheme", True))

    all_sources = [s for sources in directives.values() for s in sources]
    if any(s == 'http:' or s.startswith('http://') for s in all_sources):
        issues.append(("policy allows resources over plain http", True))

    if "'unsafe-inline'" in style_src:
        issues.append(("style-src allows 'unsafe-inline'", False))

    object_src = directives.get('object-src')
    if not ((object_src is not None and "'none'" in object_src)
            or (object_src is None and default_src is not None and "'none'" in default_src)):
        issues.append(("object-src is not 'none'", False))
    if 'base-uri' not in directives:
        issues.append(("base-uri is not restricted", False))
    if 'default-src' not in directives and 'script-src' not in directives:
        issues.append(("neither default-src nor script-src is set", True))

    return issues


class SecurityHeadersModule(BaseModule):
    """
    Security Headers Detection Module

    Header rules describe site-wide configuration, so each is reported once
    per origin, on the first crawled page that shows the problem. Mixed
    content and stack traces are reported per page.
    """

    name = "headers"
    description = "Checks security headers, CSP, mixed content and error disclosure"
    rule_id = RULE_MISSING_CSP
    cwe_id = "CWE-693"
    owasp_category = "A05:2021"

    def __init__(self, requester=None, events=None):
        super().__init__(requester, events)
        self._reported: Set[Tuple[str, str]] = set()

    def targets(self, crawl, state=None) -> List[PageSnapshot]:
        self._reported.clear()
        return list(crawl.responses)

    async def run(self, target: PageSnapshot, payloads: Optional[List[TestPayload]] = None) -> List[Finding]:
        return self.check_page(target)

    def check_page(self, page: PageSnapshot) -> List[Finding]:
        """
        Run every passive check on one crawled page.

        Args:
            page: Snapshot recorded by the crawler

        Returns:
            List of Finding objects
        """
        findings = []
        is_html = 'html' in page.get_header('Content-Type').lower()

        if is_html and 200 <= page.status < 300:
            findings.extend(self._check_csp(page))
            findings.extend(self._check_frame_options(page))
            findings.extend(self._check_content_type_options(page))
            findings.extend(self._check_hsts(page))
            findings.extend(self._check_mixed_content(page))
        findings.extend(self._check_disclosure_headers(page))
        findings.extend(self._check_stack_trace(page))

        return findings

    def _once(self, rule: str, page: PageSnapshot) -> bool:
        """True the first time `rule` fires for the page's origin."""
        parsed = urlparse(page.url)
        key = (rule, f"{parsed.scheme}://{parsed.netloc.lower()}")
        if key in self._reported:
            return False
        self._reported.add(key)
        return True

    def _check_csp(self, page: PageSnapshot) -> List[Finding]:
        policy = page.get_header('Content-Security-Policy')

        if not policy:
            if not self._once(RULE_MISSING_CSP, page):
                return []
            evidence = ["Content-Security-Policy header not set"]
            report_only = page.get_header('Content-Security-Policy-Report-Only')
            if report_only:
                evidence.append(f"Only a report-only policy is sent: {self.truncate(report_only, 200)}")
            return [self.create_finding(
                title="Missing Content Security Policy",
                severity=Severity.MEDIUM,
                confidence=Confidence.HIGH,
                url=page.url,
                rule_id=RULE_MISSING_CSP,
                evidence=evidence,
                description="No Content-Security-Policy is enforced, so injected scripts run without restriction.",
                remediation="Send Content-Security-Policy: default-src 'self'; object-src 'none'; base-uri 'self'",
                references=(
                    "https://developer.mozilla.org/en-US/docs/Web/HTTP/CSP",
                    "https://cheatsheetseries.owasp.org/cheatsheets/Content_Security_Policy_Cheat_Sheet.html",
                )
            )]

        issues = csp_weaknesses(parse_csp(policy))
        if not issues or not self._once(RULE_WEAK_CSP, page):
            return []

        serious = any(is_serious for _, is_serious in issues)
        return [self.create_finding(
            title="Weak Content Security Policy",
            severity=Severity.MEDIUM if serious else Severity.LOW,
            confidence=Confidence.HIGH,
            url=page.url,
            rule_id=RULE_WEAK_CSP,
            evidence=[f"Content-Security-Policy: {self.truncate(policy, 200)}"] + [d for d, _ in issues],
            description=f"The Content Security Policy is incomplete: {'; '.join(d for d, _ in issues)}.",
            remediation=(
                "Remove 'unsafe-inline' and 'unsafe-eval' from script-src, use nonces or hashes "
                "for inline scripts, and set object-src 'none' and base-uri 'self'."
            ),
            references=("https://cheatsheetseries.owasp.org/cheatsheets/Content_Security_Policy_Cheat_Sheet.html",)
        )]

    def _check_frame_options(self, page: PageSnapshot) -> List[Finding]:
        if 'frame-ancestors' in parse_csp(page.get_header('Content-Security-Policy')):
            return []

        value = page.get_header('X-Frame-Options')
        if value and value.strip().lower() in ('deny', 'sameorigin'):
            return []
        if not self._once(RULE_FRAME_OPTIONS, page):
            return []

        if value:
            title, severity = "Misconfigured X-Frame-Options Header", Severity.LOW
            evidence = f"X-Frame-Options: {value}"
        else:
            title, severity = "Missing X-Frame-Options Header", Severity.MEDIUM
            evidence = "Neither X-Frame-Options nor CSP frame-ancestors is set"

        return [self.create_finding(
            title=title,
            severity=severity,
            confidence=Confidence.HIGH,
            url=page.url,
            rule_id=RULE_FRAME_OPTIONS,
            cwe_id='CWE-1021',
            evidence=[evidence],
            description="Pages can be framed by other sites, which enables clickjacking.",
            remediation="Send X-Frame-Options: DENY (or SAMEORIGIN), or CSP frame-ancestors 'none'.",
            references=("https://cheatsheetseries.owasp.org/cheatsheets/Clickjacking_Defense_Cheat_Sheet.html",)
        )]

    def _check_content_type_options(self, page: PageSnapshot) -> List[Finding]:
        value = page.get_header('X-Content-Type-Options')
        if value.strip().lower() == 'nosniff' or not self._once(RULE_CONTENT_TYPE_OPTIONS, page):
            return []

        return [self.create_finding(
            title="Missing X-Content-Type-Options Header" if not value else "Misconfigured X-Content-Type-Options Header",
            severity=Severity.LOW,
            confidence=Confidence.HIGH,
            url=page.url,
            rule_id=RULE_CONTENT_TYPE_OPTIONS,
            evidence=[f"X-Content-Type-Options: {value}" if value else "X-Content-Type-Options header not set"],
            description="Browsers may MIME-sniff responses and run uploaded content as script.",
            remediation="Send X-Content-Type-Options: nosniff"
        )]

    def _check_hsts(self, page: PageSnapshot) -> List[Finding]:
        if urlparse(page.url).scheme != 'https':
            return []

        value = page.get_header('Strict-Transport-Security')
        max_age = None
        if value:
            match = re.search(r'max-age\s*=\s*"?(\d+)', value, re.IGNORECASE)
            max_age = int(match.group(1)) if match else 0
            if max_age >= MIN_HSTS_MAX_AGE:
                return []
        if not self._once(RULE_HSTS, page):
            return []

        if value:
            title, severity = "Weak Strict-Transport-Security Header", Severity.LOW
            evidence = f"Strict-Transport-Security: {value} (max-age {max_age} < {MIN_HSTS_MAX_AGE})"
        else:
            title, severity = "Missing Strict-Transport-Security Header", Severity.MEDIUM
            evidence = "Strict-Transport-Security header not set on an HTTPS page"

        return [self.create_finding(
            title=title,
            severity=severity,
            confidence=Confidence.HIGH,
            url=page.url,
            rule_id=RULE_HSTS,
            owasp_category='A02:2021',
            cwe_id='CWE-319',
            evidence=[evidence],
            description="Browsers are not told to insist on HTTPS, so a network attacker can downgrade the connection.",
            remediation="Send Strict-Transport-Security: max-age=31536000; includeSubDomains",
            references=("https://cheatsheetseries.owasp.org/cheatsheets/HTTP_Strict_Transport_Security_Cheat_Sheet.html",)
        )]

    def _check_disclosure_headers(self, page: PageSnapshot) -> List[Finding]:
        disclosed = []
        for header in DISCLOSURE_HEADERS:
            value = page.get_header(header)
            if value and (header != 'Server' or VERSION_PATTERN.search(value)):
                disclosed.append(f"{header}: {value}")

        if not disclosed or not self._once(RULE_TECH_DISCLOSURE, page):
            return []

        return [self.create_finding(
            title="Server Technology Disclosure",
            severity=Severity.LOW,
            confidence=Confidence.HIGH,
            url=page.url,
            rule_id=RULE_TECH_DISCLOSURE,
            cwe_id='CWE-200',
            evidence=disclosed,
            description="Response headers name the server software and its version, which narrows the search for known vulnerabilities.",
            remediation="Remove X-Powered-By and version details from the Server header."
        )]

    def _check_mixed_content(self, page: PageSnapshot) -> List[Finding]:
        if urlparse(page.url).scheme != 'https':
            return []

        soup = BeautifulSoup(page.body, 'lxml')
        active, passive = [], []
        for tag_name, attr, is_active in MIXED_CONTENT_SOURCES:
            for tag in soup.find_all(tag_name, **{attr: True}):
                if urljoin(page.url, tag[attr].strip()).startswith('http://'):
                    (active if is_active else passive).append(tag[attr].strip())
        for tag in soup.find_all('link', href=True):
            rel = [r.lower() for r in tag.get('rel') or []]
            if 'stylesheet' in rel and urljoin(page.url, tag['href'].strip()).startswith('http://'):
                active.append(tag['href'].strip())

        if not active and not passive:
            return []

        resources = active + passive
        return [self.create_finding(
            title="Mixed Content",
            severity=Severity.MEDIUM if active else Severity.LOW,
            confidence=Confidence.HIGH,
            url=page.url,
            rule_id=RULE_MIXED_CONTENT,
            owasp_category='A02:2021',
            cwe_id='CWE-319',
            evidence=[f"{len(resources)} resource(s) loaded over http: {', '.join(resources[:3])}"] + resources[:3],
            description=(
                "An HTTPS page loads resources over plain HTTP; a network attacker can "
                + ("replace scripts or styles and take over the page." if active else "swap the media it shows.")
            ),
            remediation="Load every subresource over HTTPS, or send CSP upgrade-insecure-requests."
        )]

    def _check_stack_trace(self, page: PageSnapshot) -> List[Finding]:
        for pattern, platform in STACK_TRACE_PATTERNS:
            match = pattern.search(page.body)
            if not match:
                continue
            return [self.create_finding(
                title="Stack Trace Disclosure",
                severity=Severity.MEDIUM,
                confidence=Confidence.HIGH if page.status >= 500 else Confidence.MEDIUM,
                url=page.url,
                rule_id=RULE_STACK_TRACE,
                cwe_id='CWE-209',
                evidence=[self.extract_evidence(page.body, match.group(0), radius=100),
                          f"HTTP {page.status}, {platform} exception format"],
                description=(
                    f"The response contains a {platform} stack trace, exposing file paths "
                    "and code structure."
                ),
                remediation="Disable debug output in production and return a generic error page; log details server-side.",
                references=("https://owasp.org/www-community/Improper_Error_Handling",)
            )]
        return []


def create(requester, events=None) -> SecurityHeadersModule:
    """Module factory used by the engine."""
    return SecurityHeadersModule(requester, events)
