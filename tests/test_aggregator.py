"""
Tests for fingerprinting, merging and pass comparison.
"""

from websecscan.scanner.core.aggregator import FindingAggregator, aggregate, compare, fingerprint, merge
from websecscan.scanner.modules.base import Confidence, Location, Severity
from websecscan.scanner.modules.xss import XSSModule

MODULE = XSSModule()


def finding(url='http://example.test/search?q=1', parameter='q', severity=Severity.HIGH,
            confidence=Confidence.MEDIUM, evidence=('e1',), rule_id=None, **kwargs):
    return MODULE.create_finding(
        title='Reflected XSS', severity=severity, confidence=confidence, url=url,
        parameter=parameter, evidence=evidence, rule_id=rule_id, **kwargs
    )


class TestFingerprint:

    def test_stable_across_query_values_and_case(self):
        a = Location('http://Example.TEST/search?q=1&page=2', 'GET', 'q')
        b = Location('http://example.test/search/?page=9&q=abc#frag', 'get', 'q')
        assert fingerprint('WSS-XSS-001', a) == fingerprint('WSS-XSS-001', b)

    def test_differs_by_rule_parameter_and_method(self):
        base = Location('http://example.test/search?q=1', 'GET', 'q')
        assert fingerprint('WSS-XSS-001', base) != fingerprint('WSS-SQLI-001', base)
        assert fingerprint('WSS-XSS-001', base) != fingerprint(
            'WSS-XSS-001', Location('http://example.test/search?q=1', 'GET', 'page'))
        assert fingerprint('WSS-XSS-001', base) != fingerprint(
            'WSS-XSS-001', Location('http://example.test/search?q=1', 'POST', 'q'))

    def test_id_derived_from_fingerprint(self):
        f = finding()
        assert f.id == f"WSS-XSS-001-{f.fingerprint[:12]}"
        assert len(f.fingerprint) == 64


class TestMerge:

    def test_highest_severity_and_confidence(self):
        low = finding(severity=Severity.MEDIUM, confidence=Confidence.HIGH, evidence=('a',))
        high = finding(severity=Severity.HIGH, confidence=Confidence.LOW, evidence=('b',))
        merged = merge(low, high)

        assert merged.severity == Severity.HIGH
        assert merged.confidence == Confidence.HIGH
        assert merged.evidence == ('a', 'b')

    def test_evidence_union_is_bounded(self):
        a = finding(evidence=('1', '2', '3'))
        b = finding(evidence=('3', '4', '5', '6'))
        assert merge(a, b).evidence == ('1', '2', '3', '4', '5')


class TestAggregate:

    def test_one_finding_per_fingerprint(self):
        findings = [finding(evidence=('a',)), finding(evidence=('b',)),
                    finding(url='http://example.test/other?q=1')]
        result = aggregate(findings)
        assert len(result) == 2
        assert len({f.fingerprint for f in result}) == 2

    def test_idempotent(self):
        findings = [
            finding(),
            finding(evidence=('other',)),
            finding(url='http://example.test/a?x=1', parameter='x', severity=Severity.CRITICAL),
            finding(url='http://example.test/b?y=1', parameter='y', severity=Severity.LOW),
        ]
        once = aggregate(findings)
        assert aggregate(once) == once

    def test_order_is_deterministic(self):
        findings = [
            finding(url='http://example.test/b?y=1', parameter='y', severity=Severity.LOW),
            finding(url='http://example.test/a?x=1', parameter='x', severity=Severity.CRITICAL),
            finding(),
        ]
        result = aggregate(findings)
        assert [f.severity for f in result] == [Severity.CRITICAL, Severity.HIGH, Severity.LOW]
        assert aggregate(reversed(findings)) == result

    def test_running_aggregator(self):
        aggregator = FindingAggregator()
        aggregator.extend([finding(), finding(evidence=('x',)), finding(severity=Severity.LOW, url='http://example.test/z?q=1')])

        assert len(aggregator) == 2
        assert aggregator.severity_counts()['high'] == 1
        assert aggregator.severity_counts()['low'] == 1
        assert aggregator.results() == aggregate(aggregator.results())


class TestCompare:

    def test_exact_intersection(self):
        shared = finding()
        only_a = finding(url='http://example.test/a?x=1', parameter='x')
        only_b = finding(url='http://example.test/b?y=1', parameter='y')

        overlap = compare([shared, only_a], [shared, only_b])
        assert overlap.common == {shared.fingerprint}
        assert overlap.only_a == {only_a.fingerprint}
        assert overlap.only_b == {only_b.fingerprint}
        assert overlap.ratio == 1 / 3

    def test_empty_passes_fully_overlap(self):
        assert compare([], []).ratio == 1.0
