"""
Finding Aggregator for WebSecScan

Deduplicates findings by fingerprint (rule id + normalized location) and
produces a canonical, deterministically ordered list.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Set

from websecscan.scanner.modules.base import (
    Finding, Location, Severity, MAX_EVIDENCE, compute_fingerprint
)

logger = logging.getLogger(__name__)


def fingerprint(rule_id: str, location: Location) -> str:
    """Fingerprint of a rule at a location."""
    return compute_fingerprint(rule_id, location)


def merge(existing: Finding, incoming: Finding) -> Finding:
    """
    Merge two findings with the same fingerprint.

    Highest severity wins, confidence is the maximum observed and evidence
    is the first-seen-ordered union, bounded to MAX_EVIDENCE snippets.
    """
    primary = existing if existing.severity.rank >= incoming.severity.rank else incoming
    confidence = max(existing.confidence, incoming.confidence, key=lambda c: c.rank)

    evidence: List[str] = []
    for snippet in existing.evidence + incoming.evidence:
        if snippet and snippet not in evidence:
            evidence.append(snippet)

    references = tuple(dict.fromkeys(existing.references + incoming.references))

    return dataclasses.replace(
        primary,
        confidence=confidence,
        evidence=tuple(evidence[:MAX_EVIDENCE]),
        references=references,
        payload=primary.payload or existing.payload or incoming.payload
    )


def _sort_key(finding: Finding):
    return (-finding.severity.rank, finding.rule_id, finding.location.normalized(), finding.fingerprint)


def aggregate(findings: Iterable[Finding]) -> List[Finding]:
    """
    Deduplicate and order findings.

    The result has exactly one finding per fingerprint, sorted by severity
    (highest first), rule id and location. aggregate(aggregate(x)) equals
    aggregate(x).
    """
    merged: Dict[str, Finding] = {}
    for finding in findings:
        key = finding.fingerprint
        if key in merged:
            merged[key] = merge(merged[key], finding)
        else:
            merged[key] = finding
    return sorted(merged.values(), key=_sort_key)


class FindingAggregator:
    """Running aggregation for one scan."""

    def __init__(self):
        self._findings: Dict[str, Finding] = {}

    def add(self, finding: Finding):
        key = finding.fingerprint
        if key in self._findings:
            self._findings[key] = merge(self._findings[key], finding)
        else:
            self._findings[key] = finding
            logger.info(f"New finding {finding.rule_id} ({finding.severity.value}) at {finding.location}")

    def extend(self, findings: Iterable[Finding]):
        for finding in findings:
            self.add(finding)

    def __len__(self) -> int:
        return len(self._findings)

    def results(self) -> List[Finding]:
        return sorted(self._findings.values(), key=_sort_key)

    def severity_counts(self) -> Dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for finding in self._findings.values():
            counts[finding.severity.value] += 1
        return counts


@dataclass
class Overlap:
    """Fingerprint overlap between two independent passes."""
    common: Set[str]
    only_a: Set[str]
    only_b: Set[str]

    @property
    def ratio(self) -> float:
        """Jaccard ratio of the two fingerprint sets (1.0 when both are empty)."""
        union = len(self.common) + len(self.only_a) + len(self.only_b)
        if union == 0:
            return 1.0
        return len(self.common) / union


def compare(findings_a: Iterable[Finding], findings_b: Iterable[Finding]) -> Overlap:
    """Exact fingerprint set intersection between two passes."""
    a = {f.fingerprint for f in findings_a}
    b = {f.fingerprint for f in findings_b}
    return Overlap(common=a & b, only_a=a - b, only_b=b - a)
