"""
Scan Event Channel for WebSecScan

Progress and diagnostics are reported through a channel object owned by
the caller and handed to the engine. Every event is also mirrored to the
standard logging tree under `websecscan.events`.
"""

import logging
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger('websecscan.events')


class EventLevel(Enum):
    """Event severity as shown to the caller."""
    INFO = 'info'
    SUCCESS = 'success'
    WARNING = 'warning'
    ERROR = 'error'


class ScanPhase(Enum):
    """Scan phases."""
    INITIALIZING = 'initializing'
    ROBOTS = 'robots'
    CRAWLING = 'crawling'
    TESTING = 'testing'
    AGGREGATING = 'aggregating'
    SAFETY = 'safety'
    COMPLETED = 'completed'


_LOG_LEVELS = {
    EventLevel.INFO: logging.INFO,
    EventLevel.SUCCESS: logging.INFO,
    EventLevel.WARNING: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}


@dataclass
class ScanEvent:
    """A single progress or diagnostic event."""
    scan_id: str
    level: EventLevel
    message: str
    phase: Optional[ScanPhase] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scan_id': self.scan_id,
            'timestamp': self.timestamp.isoformat(),
            'level': self.level.value,
            'message': self.message,
            'phase': self.phase.value if self.phase else None,
            'metadata': self.metadata,
        }


class ScanEventChannel:
    """
    Fan-out of scan events to registered listeners.

    Listeners are plain callables taking a ScanEvent. A listener that raises
    is logged and the remaining listeners still receive the event.
    """

    def __init__(
            self,
            scan_id: Optional[str] = None,
            listeners: Optional[List[Callable[[ScanEvent], None]]] = None
    ):
        self.scan_id = scan_id or uuid.uuid4().hex[:12]
        self._listeners: List[Callable[[ScanEvent], None]] = list(listeners or [])
        self._history: List[ScanEvent] = []

    def subscribe(self, listener: Callable[[ScanEvent], None]):
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[ScanEvent], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def history(self) -> List[ScanEvent]:
        return list(self._history)

    def emit(
            self,
            level: Union[EventLevel, str],
            message: str,
            phase: Optional[ScanPhase] = None,
            **metadata
    ) -> ScanEvent:
        """
        Publish an event.

        Args:
            level: EventLevel or its string value
            message: Human-readable message
            phase: Scan phase the event belongs to
            **metadata: Extra structured context

        Returns:
            The emitted ScanEvent
        """
        if not isinstance(level, EventLevel):
            level = EventLevel(level)

        event = ScanEvent(
            scan_id=self.scan_id,
            level=level,
            message=message,
            phase=phase,
            metadata=metadata
        )
        self._history.append(event)

        phase_tag = f"[{phase.value}] " if phase else ""
        logger.log(_LOG_LEVELS[level], f"[{self.scan_id}] {phase_tag}{message}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener {listener!r} failed")

        return event

    def info(self, message: str, phase: Optional[ScanPhase] = None, **metadata) -> ScanEvent:
        return self.emit(EventLevel.INFO, message, phase, **metadata)

    def success(self, message: str, phase: Optional[ScanPhase] = None, **metadata) -> ScanEvent:
        return self.emit(EventLevel.SUCCESS, message, phase, **metadata)

    def warning(self, message: str, phase: Optional[ScanPhase] = None, **metadata) -> ScanEvent:
        return self.emit(EventLevel.WARNING, message, phase, **metadata)

    def error(self, message: str, phase: Optional[ScanPhase] = None, **metadata) -> ScanEvent:
        return self.emit(EventLevel.ERROR, message, phase, **metadata)
