"""
Tests for the reflected XSS runner.
"""

import html

import pytest

from websecscan.scanner.core.governor import RateGovernor
from websecscan.scanner.core.requester import AsyncRequester, Response
from websecscan.scanner.core.supervisor import SafetySupervisor
from websecscan.scanner.modules.base import Confidence, InjectionPoint, Severity
from websecscan.scanner.modules.xss import XSS_PAYLOADS, XSSModule


def response(body, headers=None):
    return Response(url='http://example.test/s', status=200, headers=headers or {},
                    body=body, elapsed=0.01)


def payload_for(context):
    return next(p for p in XSS_PAYLOADS if p.context == context)


class TestXSSPayloads:

    def test_one_payload_per_context(self):
        contexts = [p.context for p in XSS_PAYLOADS]
        assert len(contexts) == 12
        assert len(set(contexts)) == 12

    def test_markers_are_unique(self):
        signals = [p.signal for p in XSS_PAYLOADS]
        assert len(set(signals)) == len(signals)
        assert all(p.signal in p.payload for p in XSS_PAYLOADS)

    def test_templates_fully_substituted(self):
        assert not any('{m}' in p.payload for p in XSS_PAYLOADS)
        assert payload_for('json_in_dom').payload == '"}</script><svg onload=wssx12>'


class TestXSSAnalysis:

    def setup_method(self):
        self.module = XSSModule()

    def test_verbatim_reflection_in_body(self):
        payload = payload_for('html_body')
        result = self.module.analyze(response(f"<p>{payload.payload}</p>"), payload)
        assert result is not None
        assert result[0] == Confidence.HIGH

    def test_fully_encoded_reflection_ignored(self):
        for payload in XSS_PAYLOADS:
            body = f"<p>Results for: {html.escape(payload.payload)}</p>"
            assert self.module.analyze(response(body), payload) is None, payload.context

    def test_js_string_needs_script_context(self):
        payload = payload_for('js_string_double')
        outside = f"<p>{payload.payload}</p>"
        inside = f'<script>var q = "{payload.payload}";</script>'

        assert self.module.analyze(response(outside), payload) is None
        assert self.module.analyze(response(inside), payload)[0] == Confidence.HIGH

    def test_case_changed_reflection_is_medium(self):
        payload = payload_for('html_body')
        body = f"<p>{payload.payload.upper()}</p>"
        assert self.module.analyze(response(body), payload)[0] == Confidence.MEDIUM

    def test_partial_encoding_is_medium(self):
        payload = payload_for('attr_double_quoted')
        body = f"<p>{html.escape(payload.payload, quote=False)}</p>"
        assert self.module.analyze(response(body), payload)[0] == Confidence.MEDIUM

    def test_header_reflection_is_medium(self):
        payload = payload_for('html_body')
        result = self.module.analyze(response("<p>ok</p>", {'X-Echo': payload.payload}), payload)
        assert result[0] == Confidence.MEDIUM


class TestXSSModuleLive:

    @pytest.mark.asyncio
    async def test_reflected_parameter_reported_once(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            module = XSSModule(requester)
            findings = await module.run(InjectionPoint(
                url=f"{vulnerable_server}/search?q=test", method='GET', parameter='q'))

        assert len(findings) == 1
        finding = findings[0]
        assert finding.rule_id == 'WSS-XSS-001'
        assert finding.severity == Severity.HIGH
        assert finding.confidence == Confidence.HIGH
        assert finding.location.parameter == 'q'
        assert finding.owasp_category == 'A03:2021'
        # Stops at the first verbatim reflection
        assert supervisor.governor.requests_issued == 1

    @pytest.mark.asyncio
    async def test_reflection_after_large_body_reported(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            findings = await XSSModule(requester).run(InjectionPoint(
                url=f"{vulnerable_server}/big?q=test", method='GET', parameter='q'))

        assert len(findings) == 1
        assert findings[0].confidence == Confidence.HIGH

    @pytest.mark.asyncio
    async def test_escaped_parameter_not_reported(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            module = XSSModule(requester)
            findings = await module.run(InjectionPoint(
                url=f"{vulnerable_server}/safe-search?q=test", method='GET', parameter='q'))

        assert findings == []
        assert supervisor.governor.requests_issued == len(XSS_PAYLOADS)

    @pytest.mark.asyncio
    async def test_same_input_same_finding_id(self, vulnerable_server):
        point = InjectionPoint(url=f"{vulnerable_server}/search?q=test", method='GET', parameter='q')
        ids = []
        for _ in range(2):
            supervisor = SafetySupervisor(RateGovernor(interval=0))
            async with AsyncRequester(supervisor, timeout=5) as requester:
                findings = await XSSModule(requester).run(point)
            ids.append(findings[0].id)

        assert ids[0] == ids[1]
