"""
Tests for the path traversal runner.
"""

from urllib.parse import unquote, urlencode

import pytest

from websecscan.scanner.core.crawler import CrawlResult
from websecscan.scanner.core.governor import RateGovernor
from websecscan.scanner.core.requester import AsyncRequester
from websecscan.scanner.core.state import CrawlTarget, DiscoveredEndpoint, EndpointSource
from websecscan.scanner.core.supervisor import SafetySupervisor
from websecscan.scanner.modules.base import Confidence, InjectionPoint, Severity
from websecscan.scanner.modules.path_traversal import (
    PATH_TRAVERSAL_PAYLOADS, FILE_PARAMETERS, PathTraversalModule
)


def endpoint(url, parameters=()):
    return DiscoveredEndpoint(url=url, method='GET', parameters=tuple(parameters),
                              depth=1, source=EndpointSource.LINK)


class TestPathTraversalTargets:

    def test_file_like_parameters_first(self):
        crawl = CrawlResult(
            target=CrawlTarget.from_url('http://example.test/'),
            endpoints=[
                endpoint('http://example.test/search?q=x', ['q']),
                endpoint('http://example.test/show?file=a.txt', ['file']),
            ]
        )
        targets = PathTraversalModule().targets(crawl)
        assert [t.parameter for t in targets] == ['file', 'q']

    def test_parameterless_file_endpoint_gets_file_parameters(self):
        crawl = CrawlResult(
            target=CrawlTarget.from_url('http://example.test/'),
            endpoints=[endpoint('http://example.test/download'), endpoint('http://example.test/about')]
        )
        targets = PathTraversalModule().targets(crawl)

        assert [t.parameter for t in targets] == list(FILE_PARAMETERS)
        assert all(t.url == 'http://example.test/download' for t in targets)

    def test_encoded_variant_reaches_server_double_encoded(self):
        payload = next(p for p in PATH_TRAVERSAL_PAYLOADS if '%2f' in p.payload)
        query = urlencode({'name': payload.payload})

        assert payload.context == 'unix-double-encoded'
        assert '..%252f' in query
        assert unquote(query) == f"name={payload.payload}"

    def test_sentinels(self):
        module = PathTraversalModule()
        assert module.find_sentinel("root:x:0:0:root:/root:/bin/bash", 'passwd')
        assert module.find_sentinel("[fonts]\n[extensions]", 'win.ini')
        assert module.find_sentinel("<p>no such file</p>", 'passwd') is None


class TestPathTraversalLive:

    @pytest.mark.asyncio
    async def test_traversal_reported(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            findings = await PathTraversalModule(requester).run(InjectionPoint(
                url=f"{vulnerable_server}/file?name=readme.txt", method='GET', parameter='name'))

        assert len(findings) == 1
        finding = findings[0]
        assert finding.rule_id == 'WSS-PATH-001'
        assert finding.severity == Severity.HIGH
        assert finding.confidence == Confidence.HIGH
        assert 'root:' in finding.primary_evidence
        # Control plus the first payload
        assert supervisor.governor.requests_issued == 2

    @pytest.mark.asyncio
    async def test_non_file_parameter_not_reported(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            findings = await PathTraversalModule(requester).run(InjectionPoint(
                url=f"{vulnerable_server}/search?q=test", method='GET', parameter='q'))

        assert findings == []
