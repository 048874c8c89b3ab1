"""
Safety Supervisor for WebSecScan

Gatekeeper consulted before every outbound request. Once the rate
governor's budget is used up it raises EmergencyAbort and keeps raising it.
"""

import logging
from typing import Optional
from urllib.parse import urlparse

from websecscan.exceptions import EmergencyAbort, TesterError
from websecscan.scanner.core.governor import RateGovernor
from websecscan.scanner.core.events import ScanEventChannel, ScanPhase

logger = logging.getLogger(__name__)


class SafetySupervisor:
    """Emergency brake around the rate governor."""

    ALLOWED_SCHEMES = ('http', 'https')

    def __init__(self, governor: RateGovernor, events: Optional[ScanEventChannel] = None):
        self.governor = governor
        self.events = events
        self._engaged = False

    @property
    def engaged(self) -> bool:
        return self._engaged

    def check(self, component: str = 'supervisor', url: Optional[str] = None):
        """Raise EmergencyAbort if the scan budget is exhausted."""
        if not self._engaged and self.governor.budget_exceeded():
            self._engaged = True
            message = (f"Emergency brake engaged after {self.governor.requests_issued} requests "
                       f"and {self.governor.elapsed:.1f}s")
            logger.warning(message)
            if self.events:
                self.events.warning(message, phase=ScanPhase.SAFETY,
                                    requests=self.governor.requests_issued)

        if self._engaged:
            raise EmergencyAbort("Scan budget exhausted", component=component, url=url)

    async def clearance(self, component: str, url: str):
        """
        Block until `url` may be requested by `component`.

        Raises:
            TesterError: URL is not HTTP(S)
            EmergencyAbort: Budget exhausted before or while waiting
        """
        scheme = urlparse(url).scheme.lower()
        if scheme not in self.ALLOWED_SCHEMES:
            raise TesterError(f"Refusing non-HTTP URL scheme '{scheme}'",
                              component=component, url=url)

        await self.governor.acquire(precheck=lambda: self.check(component, url))
