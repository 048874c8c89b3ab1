"""
WebSecScan Exceptions

Every error carries the component that raised it and, where known, the
URL and payload involved so that scan logs can pinpoint the failing probe.
"""

from typing import Optional


class WebSecScanError(Exception):
    """Base exception for all scanner errors."""

    def __init__(
            self,
            message: str = '',
            component: Optional[str] = None,
            url: Optional[str] = None,
            payload_id: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.component = component
        self.url = url
        self.payload_id = payload_id

    def __str__(self) -> str:
        context = []
        if self.component:
            context.append(f"component={self.component}")
        if self.url:
            context.append(f"url={self.url}")
        if self.payload_id:
            context.append(f"payload={self.payload_id}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ConfigurationError(WebSecScanError):
    """Invalid scan options. The scan never starts."""


class RobotsFetchError(WebSecScanError):
    """robots.txt could not be fetched or parsed."""


class NetworkError(WebSecScanError):
    """A single request failed at the transport level."""


class RequestTimeout(NetworkError):
    """A single request exceeded its deadline."""


class EmergencyAbort(WebSecScanError):
    """The request or time budget is exhausted; no further requests may be issued."""


class TesterError(WebSecScanError):
    """A probe could not be built or evaluated."""


class FatalEngineError(WebSecScanError):
    """Unexpected engine failure. The scan ends as FAILED."""


class RequestBlocked(TesterError):
    """The URL lies outside what the scan may request (robots.txt or scope)."""
