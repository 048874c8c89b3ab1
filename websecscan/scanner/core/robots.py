"""
robots.txt Policy Evaluator for WebSecScan

Fetched once per scan. Rules from groups addressed to `*` or to the
scanner's own token are applied in file order; the first matching path
prefix decides.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from websecscan.exceptions import EmergencyAbort, NetworkError, RobotsFetchError
from websecscan.scanner.core.events import ScanEventChannel, ScanPhase

logger = logging.getLogger(__name__)

AGENT_TOKEN = 'websecscan'
ROBOTS_TIMEOUT = 5.0


@dataclass
class RobotsPolicy:
    """Ordered (allow, prefix) rules for one origin."""
    origin: str
    rules: List[Tuple[bool, str]] = field(default_factory=list)
    deny_all: bool = False
    fetched: bool = False
    error: Optional[str] = None

    @classmethod
    def allow_all(cls, origin: str, error: Optional[str] = None) -> 'RobotsPolicy':
        return cls(origin=origin, error=error)

    @classmethod
    def parse(cls, origin: str, text: str, agent: str = AGENT_TOKEN) -> 'RobotsPolicy':
        """
        Parse robots.txt content.

        Consecutive User-agent lines open a group; the group's rules apply
        to every agent listed. Paths are case-sensitive.
        """
        rules: List[Tuple[bool, str]] = []
        group_agents: List[str] = []
        in_rules = False

        for raw_line in text.splitlines():
            line = raw_line.split('#', 1)[0].strip()
            if not line or ':' not in line:
                continue

            key, value = line.split(':', 1)
            key = key.strip().lower()
            value = value.strip()

            if key == 'user-agent':
                if in_rules:
                    group_agents = []
                    in_rules = False
                group_agents.append(value.lower())
                continue

            if key not in ('allow', 'disallow'):
                continue

            in_rules = True
            applies = any(a == '*' or a.split('/')[0] == agent for a in group_agents)
            if not applies or not value:
                # Empty Disallow means everything is allowed
                continue
            rules.append((key == 'allow', value))

        return cls(origin=origin, rules=rules, fetched=True)

    def is_allowed(self, path: str) -> bool:
        if self.deny_all:
            return False
        if not path.startswith('/'):
            parsed = urlparse(path)
            path = parsed.path or '/'
            if parsed.query:
                path = f"{path}?{parsed.query}"
        for allow, prefix in self.rules:
            if path.startswith(prefix):
                return allow
        return True

    @property
    def disallowed_prefixes(self) -> List[str]:
        return [prefix for allow, prefix in self.rules if not allow]


def is_allowed(policy: RobotsPolicy, path: str) -> bool:
    """Module-level convenience wrapper around RobotsPolicy.is_allowed."""
    return policy.is_allowed(path)


async def load(
        requester,
        origin: str,
        fail_open: bool = True,
        events: Optional[ScanEventChannel] = None
) -> RobotsPolicy:
    """
    Fetch and parse {origin}/robots.txt.

    Args:
        requester: AsyncRequester used for the single fetch
        origin: scheme://host[:port]
        fail_open: On fetch failure allow everything instead of nothing
        events: Channel for the fetch-failure warning

    Returns:
        RobotsPolicy

    Raises:
        EmergencyAbort: Scan budget exhausted before the fetch
    """
    robots_url = f"{origin.rstrip('/')}/robots.txt"

    try:
        response = await requester.get(robots_url, component='robots', timeout=ROBOTS_TIMEOUT)
    except EmergencyAbort:
        raise
    except NetworkError as e:
        return _fetch_failed(origin, RobotsFetchError(
            f"Could not fetch robots.txt: {e.message}", component='robots', url=robots_url),
            fail_open=fail_open, server_side=True, events=events)

    if response.is_success:
        policy = RobotsPolicy.parse(origin, response.body)
        logger.info(f"Loaded robots.txt for {origin}: {len(policy.rules)} applicable rules")
        return policy

    error = RobotsFetchError(f"robots.txt returned HTTP {response.status}",
                             component='robots', url=robots_url)
    return _fetch_failed(origin, error, fail_open=fail_open,
                         server_side=response.status >= 500, events=events)


def _fetch_failed(
        origin: str,
        error: RobotsFetchError,
        fail_open: bool,
        server_side: bool,
        events: Optional[ScanEventChannel]
) -> RobotsPolicy:
    # A 4xx means there is no robots.txt, which always allows everything.
    deny = not fail_open and server_side
    action = 'denying all paths' if deny else 'allowing all paths'
    logger.warning(f"{error}; {action}")
    if events:
        events.warning(f"robots.txt unavailable, {action}", phase=ScanPhase.ROBOTS,
                       error=error.message)

    policy = RobotsPolicy.allow_all(origin, error=error.message)
    policy.deny_all = deny
    return policy
