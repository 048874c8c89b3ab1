"""
Tests for the passive security headers runner.
"""

from urllib.parse import urlparse

import pytest

from websecscan.scanner.core.crawler import AsyncCrawler, CrawlResult, PageSnapshot
from websecscan.scanner.core.governor import RateGovernor
from websecscan.scanner.core.requester import AsyncRequester
from websecscan.scanner.core.state import CrawlTarget
from websecscan.scanner.core.supervisor import SafetySupervisor
from websecscan.scanner.modules.base import Confidence, Severity
from websecscan.scanner.modules.headers import SecurityHeadersModule, csp_weaknesses, parse_csp

HARDENED = {
    'Content-Type': 'text/html; charset=utf-8',
    'Content-Security-Policy': "default-src 'self'; object-src 'none'; base-uri 'self'; frame-ancestors 'none'",
    'X-Content-Type-Options': 'nosniff',
    'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
}


def snapshot(url='https://example.test/', status=200, body='<p>ok</p>', **headers):
    merged = dict(HARDENED)
    for name, value in headers.items():
        name = name.replace('_', '-')
        if value is None:
            merged.pop(name, None)
        else:
            merged[name] = value
    return PageSnapshot(url=url, status=status, headers=merged, body=body)


def rules(findings):
    return [f.rule_id for f in findings]


class TestCSPParsing:

    def test_parse_directives(self):
        directives = parse_csp("default-src 'self'; Script-Src 'self' cdn.example.test;; img-src *")
        assert directives == {
            'default-src': ["'self'"],
            'script-src': ["'self'", 'cdn.example.test'],
            'img-src': ['*'],
        }

    def test_strict_policy_has_no_weaknesses(self):
        assert csp_weaknesses(parse_csp(HARDENED['Content-Security-Policy'])) == []

    def test_unsafe_inline_inherited_from_default_src(self):
        issues = dict(csp_weaknesses(parse_csp("default-src 'self' 'unsafe-inline'")))
        assert issues["script-src allows 'unsafe-inline'"] is True
        assert issues["object-src is not 'none'"] is False

    def test_nonce_neutralizes_unsafe_inline(self):
        policy = "script-src 'nonce-abc123' 'unsafe-inline'; object-src 'none'; base-uri 'none'"
        assert csp_weaknesses(parse_csp(policy)) == []


class TestHeaderChecks:

    def setup_method(self):
        self.module = SecurityHeadersModule()

    def test_hardened_page_is_clean(self):
        assert self.module.check_page(snapshot()) == []

    def test_bare_http_page(self):
        page = PageSnapshot(url='http://example.test/', status=200,
                            headers={'Content-Type': 'text/html'}, body='<p>ok</p>')
        findings = self.module.check_page(page)

        assert sorted(rules(findings)) == ['WSS-SEC-001', 'WSS-SEC-003', 'WSS-SEC-004']
        missing_csp = findings[0]
        assert missing_csp.severity == Severity.MEDIUM
        assert missing_csp.confidence == Confidence.HIGH

    def test_header_rules_reported_once_per_origin(self):
        first = self.module.check_page(snapshot(url='https://example.test/a', Content_Security_Policy=None))
        second = self.module.check_page(snapshot(url='https://example.test/b', Content_Security_Policy=None))
        other = self.module.check_page(snapshot(url='https://other.test/', Content_Security_Policy=None))

        assert 'WSS-SEC-001' in rules(first)
        assert 'WSS-SEC-001' not in rules(second)
        assert 'WSS-SEC-001' in rules(other)

    def test_report_only_policy_counts_as_missing(self):
        findings = self.module.check_page(snapshot(
            Content_Security_Policy=None, Content_Security_Policy_Report_Only="default-src 'self'"))

        finding = next(f for f in findings if f.rule_id == 'WSS-SEC-001')
        assert any('report-only' in e for e in finding.evidence)

    def test_weak_csp(self):
        findings = self.module.check_page(snapshot(
            Content_Security_Policy="script-src 'self' 'unsafe-inline' 'unsafe-eval'; frame-ancestors 'self'"))

        assert rules(findings) == ['WSS-SEC-002']
        assert findings[0].severity == Severity.MEDIUM
        assert "script-src allows 'unsafe-eval'" in findings[0].evidence

    def test_minor_csp_gaps_are_low(self):
        findings = self.module.check_page(snapshot(
            Content_Security_Policy="default-src 'self'; frame-ancestors 'none'"))

        assert rules(findings) == ['WSS-SEC-002']
        assert findings[0].severity == Severity.LOW

    def test_frame_ancestors_replaces_frame_options(self):
        assert 'WSS-SEC-003' not in rules(self.module.check_page(snapshot()))

        module = SecurityHeadersModule()
        findings = module.check_page(snapshot(
            Content_Security_Policy="default-src 'self'; object-src 'none'; base-uri 'self'",
            X_Frame_Options='ALLOW-FROM https://partner.test'))
        finding = next(f for f in findings if f.rule_id == 'WSS-SEC-003')
        assert finding.severity == Severity.LOW
        assert finding.title == "Misconfigured X-Frame-Options Header"

    def test_hsts_only_on_https(self):
        assert 'WSS-SEC-005' not in rules(self.module.check_page(
            snapshot(url='http://example.test/', Strict_Transport_Security=None)))

        missing = self.module.check_page(snapshot(Strict_Transport_Security=None))
        assert [f.severity for f in missing if f.rule_id == 'WSS-SEC-005'] == [Severity.MEDIUM]

    def test_short_hsts_max_age(self):
        findings = self.module.check_page(snapshot(Strict_Transport_Security='max-age=300'))
        assert rules(findings) == ['WSS-SEC-005']
        assert findings[0].severity == Severity.LOW

    def test_error_pages_skip_header_rules(self):
        page = PageSnapshot(url='http://example.test/missing', status=404,
                            headers={'Content-Type': 'text/html'}, body='<p>Not found</p>')
        assert self.module.check_page(page) == []

    def test_technology_disclosure(self):
        assert self.module.check_page(snapshot(Server='nginx')) == []

        findings = self.module.check_page(snapshot(Server='nginx/1.18.0', X_Powered_By='PHP/8.1.2'))
        assert rules(findings) == ['WSS-SEC-008']
        assert findings[0].evidence == ('Server: nginx/1.18.0', 'X-Powered-By: PHP/8.1.2')


class TestMixedContent:

    def setup_method(self):
        self.module = SecurityHeadersModule()

    def test_http_script_on_https_page(self):
        body = '<script src="http://cdn.example.test/app.js"></script><img src="/logo.png">'
        findings = self.module.check_page(snapshot(body=body))

        assert rules(findings) == ['WSS-SEC-007']
        assert findings[0].severity == Severity.MEDIUM
        assert 'http://cdn.example.test/app.js' in findings[0].evidence

    def test_http_image_is_low(self):
        findings = self.module.check_page(snapshot(body='<img src="http://img.example.test/a.png">'))
        assert [f.severity for f in findings] == [Severity.LOW]

    def test_http_stylesheet_is_active(self):
        body = '<link rel="stylesheet" href="http://cdn.example.test/site.css">'
        assert [f.severity for f in self.module.check_page(snapshot(body=body))] == [Severity.MEDIUM]

    def test_plain_http_page_not_checked(self):
        body = '<script src="http://cdn.example.test/app.js"></script>'
        page = snapshot(url='http://example.test/', body=body)
        assert 'WSS-SEC-007' not in rules(self.module.check_page(page))


class TestStackTraces:

    def setup_method(self):
        self.module = SecurityHeadersModule()

    def test_python_traceback_on_500(self):
        body = '<pre>Traceback (most recent call last):\n  File "/srv/app.py", line 3</pre>'
        findings = self.module.check_page(snapshot(status=500, body=body))

        assert rules(findings) == ['WSS-EXC-001']
        assert findings[0].confidence == Confidence.HIGH
        assert 'Python' in findings[0].evidence[1]

    def test_java_trace_on_200_is_medium(self):
        body = '<pre>java.lang.NullPointerException\n\tat com.shop.Cart.total(Cart.java:42)</pre>'
        findings = self.module.check_page(snapshot(body=body))

        assert rules(findings) == ['WSS-EXC-001']
        assert findings[0].confidence == Confidence.MEDIUM

    def test_plain_error_page_is_clean(self):
        page = snapshot(status=500, body='<h1>Something went wrong</h1><p>Please try again.</p>')
        assert self.module.check_page(page) == []

    def test_reported_per_page(self):
        body = "<b>Fatal error</b>: Uncaught Exception in /var/www/index.php on line 12"
        first = self.module.check_page(snapshot(url='https://example.test/a', status=500, body=body))
        second = self.module.check_page(snapshot(url='https://example.test/b', status=500, body=body))
        assert rules(first) == rules(second) == ['WSS-EXC-001']


class TestHeadersLive:

    @pytest.mark.asyncio
    async def test_crawled_pages_checked_without_requests(self, vulnerable_server):
        target = CrawlTarget.from_url(vulnerable_server + '/')
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            result = await AsyncCrawler(requester, max_depth=1).crawl(target)
            crawl_requests = supervisor.governor.requests_issued

            module = SecurityHeadersModule(requester)
            findings = await module.run_all(module.targets(result))

        assert supervisor.governor.requests_issued == crawl_requests
        assert {'WSS-SEC-001', 'WSS-SEC-003', 'WSS-SEC-004', 'WSS-SEC-008', 'WSS-EXC-001'} <= set(rules(findings))
        trace = next(f for f in findings if f.rule_id == 'WSS-EXC-001')
        assert urlparse(trace.location.url).path == '/status'
        # One finding per header rule for the whole site
        assert rules(findings).count('WSS-SEC-001') == 1

    def test_targets_are_crawl_snapshots(self):
        page = snapshot()
        crawl = CrawlResult(target=CrawlTarget.from_url('https://example.test/'), responses=[page])
        assert SecurityHeadersModule().targets(crawl) == [page]
