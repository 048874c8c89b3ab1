"""
WebSecScan Scanner

Async crawl-and-test pipeline behind one rate governor.
"""

from websecscan.scanner.core.engine import ScannerEngine, ScanReport
from websecscan.scanner.core.crawler import AsyncCrawler
from websecscan.scanner.core.requester import AsyncRequester

__all__ = ['ScannerEngine', 'ScanReport', 'AsyncCrawler', 'AsyncRequester']
