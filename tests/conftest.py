"""
WebSecScan - Test Fixtures

Shared pytest fixtures: a live vulnerable demo server on an ephemeral
port and governors with no pacing so tests run fast.
"""

import sys
import threading
from pathlib import Path

import pytest
from werkzeug.serving import make_server

# Ensure the project root is on sys.path so `websecscan.*` and `tests.*` resolve
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tests.vulnerable_app import create_vulnerable_app  # noqa: E402
from websecscan.scanner.core.governor import RateGovernor  # noqa: E402
from websecscan.scanner.core.supervisor import SafetySupervisor  # noqa: E402


# ---------------------------------------------------------------------------
# Vulnerable demo server
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def vulnerable_app():
    """The demo Flask app; app.config['HITS'] lists every path it was asked for."""
    return create_vulnerable_app()


@pytest.fixture(scope="session")
def vulnerable_server(vulnerable_app):
    """Serve the demo app in a background thread; yields its base URL."""
    server = make_server('127.0.0.1', 0, vulnerable_app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield f"http://127.0.0.1:{server.server_port}"

    server.shutdown()
    thread.join(timeout=5)


# ---------------------------------------------------------------------------
# Governor / supervisor
# ---------------------------------------------------------------------------

@pytest.fixture
def fast_governor():
    """Governor without spacing and the default budget."""
    return RateGovernor(interval=0)


@pytest.fixture
def supervisor(fast_governor):
    return SafetySupervisor(fast_governor)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()
