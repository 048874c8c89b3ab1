"""
WebSecScan Scanner Engine

The main orchestrator for a scan.
Coordinates robots.txt, crawling, the test runners and aggregation under
one rate governor and one scan deadline.
"""

import asyncio
import importlib
import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from websecscan.config import ScanConfig
from websecscan.exceptions import EmergencyAbort, FatalEngineError
from websecscan.scanner.core.aggregator import FindingAggregator
from websecscan.scanner.core.crawler import AsyncCrawler, CrawlResult
from websecscan.scanner.core.events import EventLevel, ScanEventChannel, ScanPhase
from websecscan.scanner.core.governor import RateGovernor
from websecscan.scanner.core.requester import AsyncRequester
from websecscan.scanner.core.state import CrawlTarget, ScanState, ScanStatus
from websecscan.scanner.core.supervisor import SafetySupervisor
from websecscan.scanner.modules.base import BaseModule, Finding, Severity

logger = logging.getLogger(__name__)


MODULE_MAPPING = {
    'xss': 'websecscan.scanner.modules.xss',
    'sqli': 'websecscan.scanner.modules.sqli',
    'path_traversal': 'websecscan.scanner.modules.path_traversal',
    'csrf': 'websecscan.scanner.modules.csrf',
    'auth': 'websecscan.scanner.modules.auth',
    'headers': 'websecscan.scanner.modules.headers',
}

_STATUS_LEVELS = {
    ScanStatus.COMPLETED: EventLevel.SUCCESS,
    ScanStatus.INCOMPLETE: EventLevel.WARNING,
    ScanStatus.FAILED: EventLevel.ERROR,
}


@dataclass
class ScanReport:
    """Final outcome of one scan."""
    status: ScanStatus
    target: str
    findings: List[Finding] = field(default_factory=list)
    state: Optional[ScanState] = None
    crawl: Optional[CrawlResult] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def severity_counts(self) -> Dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for finding in self.findings:
            counts[finding.severity.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        state = self.state
        return {
            'status': self.status.value,
            'target': self.target,
            'error': self.error,
            'warnings': list(self.warnings),
            'abort_reason': state.abort_reason if state else None,
            'start_time': state.started_at.isoformat() if state else None,
            'end_time': state.finished_at.isoformat() if state and state.finished_at else None,
            'statistics': {
                **(state.metadata() if state else {}),
                'vulnerabilities': self.severity_counts,
                'total_vulnerabilities': len(self.findings),
            },
            'findings': [f.to_dict() for f in self.findings],
            'endpoints': [e.to_dict() for e in self.crawl.endpoints] if self.crawl else [],
            'forms': [f.to_dict() for f in self.crawl.forms] if self.crawl else [],
            'errors': state.errors if state else [],
        }


class ScannerEngine:
    """
    Main scanner engine.

    Orchestrates:
    1. Configuration validation
    2. robots.txt and crawling
    3. Test runner execution (concurrent, sharing one governor)
    4. Finding aggregation

    A scan that runs out of budget or time ends INCOMPLETE and still
    returns everything gathered up to that point.
    """

    def __init__(
            self,
            config: Optional[ScanConfig] = None,
            events: Optional[ScanEventChannel] = None,
            governor: Optional[RateGovernor] = None,
            runners: Optional[List[BaseModule]] = None
    ):
        """
        Initialize the scanner engine.

        Args:
            config: Scan options
            events: Channel for progress events (created if omitted)
            governor: Rate governor to use instead of one built from config
            runners: Runner instances to use instead of config.scan_modules
        """
        self.config = config or ScanConfig()
        self.events = events or ScanEventChannel()
        self._governor = governor
        self._runners = runners

        # Components
        self.governor: Optional[RateGovernor] = None
        self.supervisor: Optional[SafetySupervisor] = None
        self.requester: Optional[AsyncRequester] = None
        self.crawler: Optional[AsyncCrawler] = None

        # State
        self._is_running = False
        self._is_cancelled = False
        self._runner_aborted = False
        self._phase_task: Optional[asyncio.Task] = None

        # Results
        self.state: Optional[ScanState] = None
        self.crawl_result: Optional[CrawlResult] = None
        self.aggregator = FindingAggregator()

        self._modules: Dict[str, BaseModule] = {}

    async def scan(self, target_url: str) -> ScanReport:
        """
        Execute a full scan.

        Args:
            target_url: Absolute http(s) URL to scan

        Returns:
            ScanReport with status COMPLETED, INCOMPLETE or FAILED

        Raises:
            ConfigurationError: Invalid options or target; nothing was sent
        """
        warnings = self.config.validate()
        target = CrawlTarget.from_url(target_url)

        self._is_running = True
        self._is_cancelled = False
        self._runner_aborted = False
        self.aggregator = FindingAggregator()
        self.state = ScanState(target)
        self.crawl_result = None

        status = ScanStatus.COMPLETED
        reason = None
        error = None

        self.events.info(f"Scan of {target.root_url} starting", phase=ScanPhase.INITIALIZING,
                         modules=list(self.config.scan_modules))
        for warning in warnings:
            self.events.warning(warning, phase=ScanPhase.INITIALIZING)

        try:
            await self._initialize()

            self._phase_task = asyncio.ensure_future(self._run_phases(target))
            await asyncio.wait_for(self._phase_task, timeout=self.config.scan_timeout)

            if self._is_cancelled:
                status = ScanStatus.INCOMPLETE
                reason = "Scan cancelled"
            elif self.supervisor.engaged or self._runner_aborted or (
                    self.crawl_result is not None and self.crawl_result.aborted):
                status = ScanStatus.INCOMPLETE
                reason = "Emergency brake engaged"

        except asyncio.TimeoutError:
            status = ScanStatus.INCOMPLETE
            reason = f"Scan deadline of {self.config.scan_timeout}s exceeded"
            self.events.warning(reason, phase=ScanPhase.SAFETY)

        except EmergencyAbort as e:
            status = ScanStatus.INCOMPLETE
            reason = str(e)

        except asyncio.CancelledError:
            if not self._is_cancelled:
                raise
            status = ScanStatus.INCOMPLETE
            reason = "Scan cancelled"
            self.events.warning(reason, phase=ScanPhase.SAFETY)

        except Exception as e:
            logger.error(f"Scan error: {e}\n{traceback.format_exc()}")
            fatal = e if isinstance(e, FatalEngineError) else FatalEngineError(str(e), component='engine')
            status = ScanStatus.FAILED
            error = str(fatal)
            self.events.error(f"Scan failed: {fatal}", phase=ScanPhase.COMPLETED)

        finally:
            await self._cleanup()
            self._is_running = False

        return self._build_report(target, status, reason, error, warnings)

    async def _initialize(self):
        """Create the governor, supervisor and requester."""
        config = self.config
        self.governor = self._governor or RateGovernor(
            interval=config.rate_interval,
            max_requests=config.max_requests,
            max_duration=config.scan_timeout
        )
        self.supervisor = SafetySupervisor(self.governor, self.events)

        self.requester = AsyncRequester(
            self.supervisor,
            timeout=config.request_timeout,
            verify_ssl=config.verify_ssl,
            session_headers=config.session_headers,
            session_cookies=config.session_cookies
        )
        await self.requester.start()

        self.crawler = AsyncCrawler(
            requester=self.requester,
            max_depth=config.max_depth,
            max_pages=config.max_pages,
            respect_robots=config.respect_robots_txt,
            robots_override=config.robots_override_consent,
            robots_fail_open=config.robots_fail_open,
            allow_external_links=config.allow_external_links,
            parse_sitemap=config.parse_sitemap,
            events=self.events
        )

    def _load_modules(self) -> List[BaseModule]:
        """Instantiate the configured test runners."""
        if self._runners is not None:
            for runner in self._runners:
                runner.requester = self.requester
                runner.events = self.events
                runner.aborted = False
            self._modules = {runner.name: runner for runner in self._runners}
            return list(self._runners)

        self._modules = {}
        for module_name in self.config.scan_modules:
            module_path = MODULE_MAPPING[module_name]
            try:
                module = importlib.import_module(module_path)
            except ImportError as e:
                logger.warning(f"Failed to load module {module_name}: {e}")
                continue
            self._modules[module_name] = module.create(self.requester, self.events)
            logger.info(f"Loaded module: {module_name}")

        return list(self._modules.values())

    async def _run_phases(self, target: CrawlTarget):
        await self._phase_crawl(target)

        if self.crawl_result.aborted or self._is_cancelled:
            return

        await self._phase_testing()

        self.events.info(f"Aggregated {len(self.aggregator)} unique findings",
                         phase=ScanPhase.AGGREGATING, **self.aggregator.severity_counts())

    async def _phase_crawl(self, target: CrawlTarget):
        """Phase 1: robots.txt and crawl."""
        self.crawl_result = await self.crawler.crawl(target, self.state)

    async def _phase_testing(self):
        """Phase 2: run every test runner concurrently."""
        modules = self._load_modules()
        self.events.info(f"Running {len(modules)} test runners", phase=ScanPhase.TESTING,
                         runners=[m.name for m in modules])

        results = await asyncio.gather(
            *(self._run_module(module) for module in modules),
            return_exceptions=True
        )

        for module, result in zip(modules, results):
            if isinstance(result, EmergencyAbort):
                self._runner_aborted = True
            elif isinstance(result, BaseException):
                raise FatalEngineError(f"Runner {module.name} crashed: {result}",
                                       component=module.name) from result

    async def _run_module(self, module: BaseModule):
        targets = module.targets(self.crawl_result, self.state)
        self.events.info(f"{module.name}: {len(targets)} targets", phase=ScanPhase.TESTING)

        findings = await module.run_all(targets, on_finding=self.aggregator.add)

        if module.aborted:
            self._runner_aborted = True
            self.events.warning(f"{module.name} stopped by emergency brake", phase=ScanPhase.TESTING)
        else:
            self.events.success(f"{module.name} finished with {len(findings)} findings",
                                phase=ScanPhase.TESTING)

    def _build_report(self, target: CrawlTarget, status: ScanStatus, reason: Optional[str],
                      error: Optional[str], warnings: List[str]) -> ScanReport:
        """Freeze the state and build the final report."""
        findings = self.aggregator.results()
        state = self.state

        if self.governor is not None:
            state.record_requests(self.governor.requests_issued)
        if error:
            state.record_error(error, component='engine', url=target.root_url)
        state.record_findings(findings)
        state.freeze(status, reason or error)

        self.events.emit(
            _STATUS_LEVELS[status],
            f"Scan {status.value}: {len(findings)} findings",
            phase=ScanPhase.COMPLETED,
            **state.metadata()
        )

        return ScanReport(
            status=status,
            target=target.root_url,
            findings=findings,
            state=state,
            crawl=self.crawl_result,
            error=error,
            warnings=list(warnings)
        )

    async def _cleanup(self):
        """Cleanup resources."""
        if self.requester:
            logger.info(f"Requester stats: {self.requester.get_stats()}")
            await self.requester.close()

    def cancel(self):
        """Cancel the running scan; it ends INCOMPLETE with partial results."""
        self._is_cancelled = True
        if self.crawler:
            self.crawler.cancel()
        if self._phase_task and not self._phase_task.done():
            self._phase_task.cancel()

    @property
    def is_running(self) -> bool:
        """Check if scan is running."""
        return self._is_running
