"""
Tests for the rate governor and the safety supervisor.
"""

import asyncio
import time

import pytest

from websecscan.exceptions import EmergencyAbort, TesterError
from websecscan.scanner.core.events import ScanEventChannel, ScanPhase
from websecscan.scanner.core.governor import RateGovernor
from websecscan.scanner.core.supervisor import SafetySupervisor


class TestRateGovernor:

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            RateGovernor(interval=-1)

    @pytest.mark.asyncio
    async def test_first_request_is_immediate(self):
        governor = RateGovernor(interval=5)
        start = time.monotonic()
        await governor.acquire()
        assert time.monotonic() - start < 1
        assert governor.requests_issued == 1

    @pytest.mark.asyncio
    async def test_requests_are_spaced(self):
        governor = RateGovernor(interval=0.05)
        stamps = []
        for _ in range(3):
            await governor.acquire()
            stamps.append(time.monotonic())

        gaps = [b - a for a, b in zip(stamps, stamps[1:])]
        assert all(gap >= 0.045 for gap in gaps)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_interval(self):
        governor = RateGovernor(interval=0.03)
        start = time.monotonic()
        await asyncio.gather(*(governor.acquire() for _ in range(4)))

        assert governor.requests_issued == 4
        # Three gaps between four slots
        assert time.monotonic() - start >= 0.085

    def test_time_budget(self, fake_clock):
        governor = RateGovernor(interval=0, max_duration=10, clock=fake_clock)
        governor.start()
        assert not governor.budget_exceeded()

        fake_clock.advance(10)
        assert governor.budget_exceeded()

    @pytest.mark.asyncio
    async def test_request_budget(self):
        governor = RateGovernor(interval=0, max_requests=2)
        await governor.acquire()
        assert not governor.budget_exceeded()
        await governor.acquire()
        assert governor.budget_exceeded()

    def test_stats(self):
        governor = RateGovernor(interval=0.5, max_requests=10)
        stats = governor.get_stats()
        assert stats['requests_issued'] == 0
        assert stats['interval'] == 0.5
        assert stats['max_requests'] == 10


class TestSafetySupervisor:

    @pytest.mark.asyncio
    async def test_brake_engages_at_budget(self):
        events = ScanEventChannel()
        supervisor = SafetySupervisor(RateGovernor(interval=0, max_requests=2), events)

        await supervisor.clearance('test', 'http://example.test/')
        await supervisor.clearance('test', 'http://example.test/')
        assert not supervisor.engaged

        with pytest.raises(EmergencyAbort):
            await supervisor.clearance('test', 'http://example.test/')

        assert supervisor.engaged
        assert supervisor.governor.requests_issued == 2
        assert any(e.phase == ScanPhase.SAFETY for e in events.history)

    @pytest.mark.asyncio
    async def test_brake_stays_engaged(self):
        supervisor = SafetySupervisor(RateGovernor(interval=0, max_requests=1))
        await supervisor.clearance('test', 'http://example.test/')

        for _ in range(3):
            with pytest.raises(EmergencyAbort):
                await supervisor.clearance('test', 'http://example.test/')
        assert supervisor.governor.requests_issued == 1

    def test_time_budget_engages_brake(self, fake_clock):
        governor = RateGovernor(interval=0, max_duration=30, clock=fake_clock)
        governor.start()
        supervisor = SafetySupervisor(governor)

        supervisor.check('crawler')
        fake_clock.advance(31)
        with pytest.raises(EmergencyAbort) as exc_info:
            supervisor.check('crawler', 'http://example.test/a')

        assert exc_info.value.component == 'crawler'
        assert exc_info.value.url == 'http://example.test/a'

    @pytest.mark.asyncio
    async def test_non_http_scheme_refused(self, supervisor):
        with pytest.raises(TesterError):
            await supervisor.clearance('xss', 'file:///etc/passwd')
        assert supervisor.governor.requests_issued == 0
