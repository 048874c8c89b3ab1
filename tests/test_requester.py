"""
Requester tests against the live demo application.
"""

from urllib.parse import urlparse

import pytest

from tests.vulnerable_app import BIG_PAGE_PADDING
from websecscan.exceptions import RequestBlocked
from websecscan.scanner.core.governor import RateGovernor
from websecscan.scanner.core.requester import AsyncRequester
from websecscan.scanner.core.supervisor import SafetySupervisor


def outside_private(url):
    return not urlparse(url).path.startswith('/private')


class TestBodyReading:

    @pytest.mark.asyncio
    async def test_large_body_read_to_the_end(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            response = await requester.get(f"{vulnerable_server}/big?q=tailmarker")

        assert len(response.body) > BIG_PAGE_PADDING
        assert 'Results for: tailmarker' in response.body
        assert response.body.rstrip().endswith('</html>')
        assert requester.get_stats()['total_bytes'] == len(response.body.encode())

    @pytest.mark.asyncio
    async def test_body_capped_at_max_size(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5, max_body_size=1000) as requester:
            response = await requester.get(f"{vulnerable_server}/big?q=tailmarker")

        assert len(response.body) == 1000
        assert 'tailmarker' not in response.body


class TestRedirects:

    @pytest.mark.asyncio
    async def test_redirect_followed_hop_by_hop(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            response = await requester.get(f"{vulnerable_server}/go")

        assert response.status == 200
        assert urlparse(response.redirect_url).path == '/private/secret'
        assert response.request_url == f"{vulnerable_server}/go"
        # Each hop takes its own rate slot
        assert supervisor.governor.requests_issued == 2

    @pytest.mark.asyncio
    async def test_rejected_hop_not_fetched(self, vulnerable_server, vulnerable_app):
        hits = vulnerable_app.config['HITS']
        before = len(hits)
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            requester.url_filter = outside_private
            response = await requester.get(f"{vulnerable_server}/go")

        assert response.status == 302
        assert response.redirect_url is None
        assert urlparse(response.get_header('Location')).path == '/private/secret'
        assert supervisor.governor.requests_issued == 1
        assert hits[before:] == ['/go']

    @pytest.mark.asyncio
    async def test_redirects_not_followed_when_disabled(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            response = await requester.get(f"{vulnerable_server}/go", allow_redirects=False)

        assert response.status == 302
        assert supervisor.governor.requests_issued == 1


class TestUrlFilter:

    @pytest.mark.asyncio
    async def test_rejected_url_raises_without_request(self, vulnerable_server):
        supervisor = SafetySupervisor(RateGovernor(interval=0))
        async with AsyncRequester(supervisor, timeout=5) as requester:
            requester.url_filter = outside_private
            with pytest.raises(RequestBlocked) as exc_info:
                await requester.get(f"{vulnerable_server}/private/secret", component='xss')

        assert exc_info.value.component == 'xss'
        assert supervisor.governor.requests_issued == 0
