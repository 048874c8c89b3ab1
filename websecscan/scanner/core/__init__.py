"""
WebSecScan Scanner Core Components

Contains the engine, crawler, HTTP requester, rate governor and the
finding aggregator.
"""

from websecscan.scanner.core.engine import ScannerEngine, ScanReport
from websecscan.scanner.core.crawler import AsyncCrawler
from websecscan.scanner.core.requester import AsyncRequester
from websecscan.scanner.core.parser import HTMLParser
from websecscan.scanner.core.governor import RateGovernor
from websecscan.scanner.core.supervisor import SafetySupervisor
from websecscan.scanner.core.events import ScanEventChannel

__all__ = [
    'ScannerEngine', 'ScanReport', 'AsyncCrawler', 'AsyncRequester', 'HTMLParser',
    'RateGovernor', 'SafetySupervisor', 'ScanEventChannel'
]
