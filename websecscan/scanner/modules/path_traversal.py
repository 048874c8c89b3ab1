"""
Path Traversal Detection Module

Sends read-only traversal sequences toward well-known system files and
reports a parameter when a file sentinel shows up that the control
response did not contain.
"""

import re
from typing import List, Optional
from urllib.parse import urlparse
import logging

from websecscan.scanner.modules.base import (
    BaseModule, Finding, InjectionPoint, Severity, Confidence, TestPayload, injection_points
)
from websecscan.scanner.core.requester import RequestMethod

logger = logging.getLogger(__name__)

TESTER_ID = 'path_traversal'

CONTROL_VALUE = 'wss-control.txt'

PATH_TRAVERSAL_PAYLOADS = [
    TestPayload(id='path-etc-passwd', tester_id=TESTER_ID, context='unix',
                payload='../../../../../../etc/passwd', signal='passwd'),
    TestPayload(id='path-etc-passwd-nested', tester_id=TESTER_ID, context='unix-filter-bypass',
                payload='....//....//....//....//etc/passwd', signal='passwd'),
    # Sent through urlencode, so the server sees %2f after its own single decode
    TestPayload(id='path-etc-passwd-double-encoded', tester_id=TESTER_ID, context='unix-double-encoded',
                payload='..%2f..%2f..%2f..%2f..%2fetc%2fpasswd', signal='passwd'),
    TestPayload(id='path-etc-passwd-absolute', tester_id=TESTER_ID, context='unix-absolute',
                payload='/etc/passwd', signal='passwd'),
    TestPayload(id='path-proc-environ', tester_id=TESTER_ID, context='unix',
                payload='../../../../../../proc/self/environ', signal='environ'),
    TestPayload(id='path-win-ini', tester_id=TESTER_ID, context='windows',
                payload='..\\..\\..\\..\\windows\\win.ini', signal='win.ini'),
    TestPayload(id='path-win-ini-slash', tester_id=TESTER_ID, context='windows',
                payload='../../../../windows/win.ini', signal='win.ini'),
    TestPayload(id='path-boot-ini', tester_id=TESTER_ID, context='windows',
                payload='..\\..\\..\\..\\boot.ini', signal='boot.ini'),
]

# Content sentinels of the files above
FILE_SENTINELS = {
    'passwd': [r'root:[^:\n]*:0:0:', r'daemon:[^:\n]*:\d+:\d+:', r'nobody:[^:\n]*:\d+:'],
    'environ': [r'PATH=/[^\s\x00]*', r'DOCUMENT_ROOT=', r'HTTP_USER_AGENT='],
    'win.ini': [r'\[fonts\]', r'\[extensions\]', r'\[mci extensions\]'],
    'boot.ini': [r'\[boot loader\]', r'\[operating systems\]'],
}

# Parameter names and path words that suggest file access
FILE_PARAMETER_NAMES = ('file', 'path', 'page', 'document', 'doc', 'load', 'template',
                        'src', 'filename', 'name', 'include', 'dir', 'folder', 'download')
FILE_ENDPOINT_KEYWORDS = ('file', 'download', 'read', 'view', 'load', 'document', 'attachment',
                          'include', 'template')
FILE_PARAMETERS = ('file', 'path', 'page')


class PathTraversalModule(BaseModule):
    """
    Path Traversal Detection Module

    Targets every discovered parameter, plus a few common file parameter
    names on file-like endpoints that expose none.
    """

    name = "path_traversal"
    description = "Detects path traversal / local file inclusion"
    rule_id = "WSS-PATH-001"
    cwe_id = "CWE-22"
    owasp_category = "A01:2021"

    def __init__(self, requester=None, events=None):
        super().__init__(requester, events)
        self._sentinels = {
            signal: [re.compile(p, re.IGNORECASE) for p in patterns]
            for signal, patterns in FILE_SENTINELS.items()
        }

    def targets(self, crawl, state=None) -> List[InjectionPoint]:
        """Discovered parameters first (file-like names first), then probes."""
        points = injection_points(crawl)
        points.sort(key=lambda p: p.parameter.lower() not in FILE_PARAMETER_NAMES)

        probed = {p.url.split('?')[0] for p in points}
        for endpoint in crawl.endpoints:
            if endpoint.method != 'GET' or endpoint.parameters:
                continue
            base = endpoint.url.split('?')[0]
            path = urlparse(base).path.lower()
            if base in probed or not any(k in path for k in FILE_ENDPOINT_KEYWORDS):
                continue
            probed.add(base)
            for name in FILE_PARAMETERS:
                points.append(InjectionPoint(url=base, method='GET', parameter=name))

        return points

    async def run(self, target: InjectionPoint, payloads: Optional[List[TestPayload]] = None) -> List[Finding]:
        """
        Probe one parameter with traversal payloads.

        Returns:
            At most one finding for the injection point
        """
        method = RequestMethod.from_name(target.method)

        control = await self.requester.test_payload(
            url=target.url,
            parameter=target.parameter,
            payload=CONTROL_VALUE,
            method=method,
            base_params=target.baseline,
            component=self.name
        )
        baseline_signals = {signal for signal in self._sentinels
                            if self.find_sentinel(control.body, signal)}

        for payload in payloads or PATH_TRAVERSAL_PAYLOADS:
            if payload.signal in baseline_signals:
                continue

            response = await self.requester.test_payload(
                url=target.url,
                parameter=target.parameter,
                payload=payload.payload,
                method=method,
                base_params=target.baseline,
                component=self.name
            )

            match = self.find_sentinel(response.body, payload.signal)
            if not match:
                continue

            self.logger.info(f"Path traversal via '{target.parameter}' at {target.url} ({payload.signal})")
            return [self.create_finding(
                title="Path Traversal",
                severity=Severity.HIGH,
                confidence=self.adjust_confidence(Confidence.HIGH, target.url),
                url=target.url,
                method=target.method,
                parameter=target.parameter,
                evidence=[self.extract_evidence(response.body, match) or match,
                          f"file: {payload.signal}"],
                payload=payload.payload,
                description=f"The parameter '{target.parameter}' can be used to read files "
                            f"outside the intended directory ({payload.signal} was returned).",
                remediation=self._get_remediation(),
                references=(
                    "https://owasp.org/www-community/attacks/Path_Traversal",
                )
            )]

        return []

    def find_sentinel(self, body: str, signal: str) -> Optional[str]:
        """Matched sentinel text for `signal`, or None."""
        for pattern in self._sentinels.get(signal, []):
            match = pattern.search(body)
            if match:
                return match.group(0)
        return None

    def _get_remediation(self) -> str:
        """Get remediation guidance."""
        return """
1. **Avoid User-Controlled Paths**: Map user input to an allow-list of file
   identifiers instead of using it as a path.

2. **Canonicalize and Check**: Resolve the final path and verify it stays
   inside the intended base directory.

3. **Least Privilege**: Run the application with file-system permissions
   limited to the files it must serve.
"""


def create(requester, events=None) -> PathTraversalModule:
    """Module factory used by the engine."""
    return PathTraversalModule(requester, events)
