"""
Base Module for WebSecScan Test Runners

Provides the Finding model and common functionality for all runners.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlparse, parse_qsl
import logging

from websecscan.exceptions import EmergencyAbort, NetworkError, TesterError
from websecscan.scanner.core.events import ScanPhase

logger = logging.getLogger(__name__)

MAX_EVIDENCE = 5


class Severity(Enum):
    """Finding severity levels."""
    CRITICAL = 'critical'
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'
    INFO = 'info'

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


class Confidence(Enum):
    """Detection confidence levels."""
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    def downgrade(self) -> 'Confidence':
        """One tier lower; LOW stays LOW."""
        if self is Confidence.HIGH:
            return Confidence.MEDIUM
        return Confidence.LOW


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFO: 0,
}

_CONFIDENCE_RANK = {
    Confidence.HIGH: 2,
    Confidence.MEDIUM: 1,
    Confidence.LOW: 0,
}


@dataclass(frozen=True)
class Location:
    """Where a finding was observed."""
    url: str
    method: str = 'GET'
    parameter: Optional[str] = None

    def normalized(self) -> str:
        """
        Canonical form used for fingerprinting.

        Scheme and host are lowercased, the fragment and any trailing slash
        are dropped and the query is reduced to its sorted parameter names.
        """
        parsed = urlparse(self.url)
        path = parsed.path or '/'
        if path != '/' and path.endswith('/'):
            path = path.rstrip('/')
        names = sorted({name for name, _ in parse_qsl(parsed.query, keep_blank_values=True)})
        query = f"?{'&'.join(names)}" if names else ''
        url = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{path}{query}"
        return f"{self.method.upper()} {url} {self.parameter or ''}".rstrip()

    def __str__(self) -> str:
        param = f" [{self.parameter}]" if self.parameter else ''
        return f"{self.method.upper()} {self.url}{param}"


def compute_fingerprint(rule_id: str, location: Location) -> str:
    """SHA-256 over rule id and normalized location."""
    raw = f"{rule_id}|{location.normalized()}"
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class TestPayload:
    """A single probe value and the signal that identifies success."""
    __test__ = False  # not a pytest test class

    id: str
    tester_id: str
    context: str
    payload: str
    signal: str


@dataclass(frozen=True)
class Finding:
    """
    A deduplicated security issue.

    `fingerprint` is derived from rule id and normalized location, and
    `id` from the fingerprint, so identical scans produce identical ids.
    """
    id: str
    rule_id: str
    owasp_category: str
    severity: Severity
    confidence: Confidence
    title: str
    evidence: Tuple[str, ...]
    location: Location
    remediation: str
    fingerprint: str
    description: str = ''
    cwe_id: str = ''
    payload: Optional[str] = None
    references: Tuple[str, ...] = ()

    @property
    def primary_evidence(self) -> str:
        return self.evidence[0] if self.evidence else ''

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'rule_id': self.rule_id,
            'title': self.title,
            'severity': self.severity.value,
            'confidence': self.confidence.value,
            'owasp_category': self.owasp_category,
            'cwe_id': self.cwe_id,
            'url': self.location.url,
            'method': self.location.method,
            'parameter': self.location.parameter,
            'description': self.description,
            'payload': self.payload,
            'evidence': list(self.evidence),
            'remediation': self.remediation,
            'references': list(self.references),
            'fingerprint': self.fingerprint,
        }


@dataclass(frozen=True)
class InjectionPoint:
    """One parameter of one endpoint or form that runners can probe."""
    url: str
    method: str
    parameter: str
    base_params: Tuple[Tuple[str, str], ...] = ()

    @property
    def baseline(self) -> Dict[str, str]:
        return dict(self.base_params)


def injection_points(crawl) -> List[InjectionPoint]:
    """
    Collect injection points from a crawl result.

    Query parameters of discovered GET endpoints and injectable fields of
    discovered forms, deduplicated, in discovery order.
    """
    points: List[InjectionPoint] = []
    seen = set()

    def add(point: InjectionPoint):
        key = (point.method, Location(point.url).normalized(), point.parameter)
        if key not in seen:
            seen.add(key)
            points.append(point)

    for endpoint in crawl.endpoints:
        if endpoint.method != 'GET':
            continue
        for name, _ in parse_qsl(urlparse(endpoint.url).query, keep_blank_values=True):
            add(InjectionPoint(url=endpoint.url, method='GET', parameter=name))

    for form in crawl.forms:
        baseline = tuple(sorted(form.baseline_values().items()))
        for form_field in form.injectable_fields:
            add(InjectionPoint(url=form.action, method=form.method,
                               parameter=form_field.name, base_params=baseline))

    return points


class BaseModule(ABC):
    """
    Abstract base class for test runners.

    Each runner must implement:
    - name / rule_id: Identification
    - targets(): Pick what to probe from the crawl result
    - run(): Probe one target and return findings
    """

    name: str = "base"
    description: str = "Base test runner"
    rule_id: str = ""
    owasp_category: str = ""
    cwe_id: str = ""

    # Paths whose signals are less trustworthy (vendored or minified code)
    THIRD_PARTY_MARKERS = ('.min.js', '/vendor/', '/node_modules/', '/wp-includes/',
                           '/bower_components/', 'cdn.', '/cdn/', 'jquery')

    def __init__(self, requester=None, events=None):
        """
        Initialize the module.

        Args:
            requester: Shared AsyncRequester (None for purely passive use)
            events: ScanEventChannel for warnings
        """
        self.requester = requester
        self.events = events
        self.aborted = False
        self.logger = logging.getLogger(f"websecscan.module.{self.name}")

    def targets(self, crawl, state=None) -> List[Any]:
        """Injection points by default."""
        return injection_points(crawl)

    @abstractmethod
    async def run(self, target, payloads: Optional[List[TestPayload]] = None) -> List[Finding]:
        """
        Probe a single target.

        Returns:
            List of Finding objects
        """

    async def run_all(
            self,
            targets: Iterable[Any],
            on_finding: Optional[Callable[[Finding], None]] = None
    ) -> List[Finding]:
        """
        Probe targets one after another.

        A failure on one target is logged and the next target is tried.
        EmergencyAbort stops the runner; findings gathered so far are kept.

        Args:
            targets: Items returned by targets()
            on_finding: Called with each finding as soon as it is produced
        """
        findings: List[Finding] = []

        for target in targets:
            try:
                for finding in await self.run(target):
                    findings.append(finding)
                    if on_finding:
                        on_finding(finding)
            except EmergencyAbort as e:
                self.aborted = True
                self.logger.warning(f"Stopping {self.name}: {e}")
                break
            except (TesterError, NetworkError) as e:
                self._warn(f"{self.name} probe failed: {e}", url=e.url)
            except ValueError as e:
                self._warn(f"{self.name} skipped malformed target {target!r}: {e}")

        return findings

    def _warn(self, message: str, **metadata):
        self.logger.warning(message)
        if self.events:
            self.events.warning(message, phase=ScanPhase.TESTING, module=self.name, **metadata)

    def create_finding(
            self,
            title: str,
            severity: Severity,
            confidence: Confidence,
            url: str,
            method: str = 'GET',
            parameter: Optional[str] = None,
            evidence: Iterable[str] = (),
            rule_id: Optional[str] = None,
            **kwargs
    ) -> Finding:
        """
        Helper to create a Finding with its fingerprint and id.

        Args:
            title: Short finding title
            severity: Severity level
            confidence: Confidence level
            url: Affected URL
            method: HTTP method of the probe
            parameter: Affected parameter or cookie name
            evidence: Evidence snippets, primary first
            rule_id: Override the module's rule id
            **kwargs: description, payload, remediation, references, owasp_category, cwe_id

        Returns:
            Finding object
        """
        rule = rule_id or self.rule_id
        location = Location(url=url, method=method.upper(), parameter=parameter)
        fingerprint = compute_fingerprint(rule, location)
        return Finding(
            id=f"{rule}-{fingerprint[:12]}",
            rule_id=rule,
            owasp_category=kwargs.get('owasp_category', self.owasp_category),
            severity=severity,
            confidence=confidence,
            title=title,
            evidence=tuple(self.truncate(e) for e in evidence)[:MAX_EVIDENCE],
            location=location,
            remediation=kwargs.get('remediation', '').strip(),
            fingerprint=fingerprint,
            description=kwargs.get('description', ''),
            cwe_id=kwargs.get('cwe_id', self.cwe_id),
            payload=kwargs.get('payload'),
            references=tuple(kwargs.get('references', ())),
        )

    def adjust_confidence(self, confidence: Confidence, url: str) -> Confidence:
        """Downgrade one tier when the signal comes from third-party or minified code."""
        lowered = url.lower()
        if any(marker in lowered for marker in self.THIRD_PARTY_MARKERS):
            return confidence.downgrade()
        return confidence

    @staticmethod
    def extract_evidence(body: str, needle: str, radius: int = 50) -> str:
        """Snippet of `body` around the first case-insensitive match of `needle`."""
        idx = body.lower().find(needle.lower())
        if idx == -1:
            return ''
        start = max(0, idx - radius)
        end = min(len(body), idx + len(needle) + radius)
        return f"...{body[start:end]}..."

    @staticmethod
    def truncate(text: str, max_length: int = 500) -> str:
        """Truncate text to maximum length."""
        if len(text) <= max_length:
            return text
        return text[:max_length] + '...'
