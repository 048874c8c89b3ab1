"""
Tests for the passive CSRF runner.
"""

import pytest

from websecscan.scanner.core.crawler import CrawlResult
from websecscan.scanner.core.parser import Form, FormField
from websecscan.scanner.core.state import CrawlTarget, ScanState
from websecscan.scanner.modules.base import Severity
from websecscan.scanner.modules.csrf import CSRFModule

TARGET = CrawlTarget.from_url('http://example.test/')


def login_form(**kwargs):
    return Form(
        page_url='http://example.test/login',
        action='http://example.test/login',
        method='POST',
        fields=[FormField('username', 'text'), FormField('password', 'password')],
        **kwargs
    )


def scan_with(forms, cookies=()):
    state = ScanState(TARGET)
    for header in cookies:
        state.record_cookie('http://example.test/', header)
    crawl = CrawlResult(target=TARGET, forms=list(forms))
    module = CSRFModule()
    return module, module.targets(crawl, state)


class TestCSRFModule:

    @pytest.mark.asyncio
    async def test_missing_token_reported(self):
        module, targets = scan_with([login_form()], cookies=['sessionid=abcdef; Path=/'])
        findings = await module.run_all(targets)

        assert len(findings) == 1
        finding = findings[0]
        assert finding.rule_id == 'WSS-CSRF-001'
        assert finding.severity == Severity.HIGH
        assert finding.location.method == 'POST'
        assert finding.location.url == 'http://example.test/login'

    @pytest.mark.asyncio
    async def test_get_forms_ignored(self):
        search = Form(page_url='http://example.test/', action='http://example.test/search',
                      method='GET', fields=[FormField('q', 'text')])
        module, targets = scan_with([search])
        assert targets == []
        assert await module.run_all(targets) == []

    @pytest.mark.asyncio
    async def test_strong_token_accepted(self):
        form = login_form(has_csrf_token=True, csrf_token_name='csrf_token',
                          csrf_token_value='Zq4xV9mK2pLr7TbW8nYc3HsJ6dFg1AeU')
        module, targets = scan_with([form])
        assert await module.run_all(targets) == []

    @pytest.mark.asyncio
    async def test_hidden_token_field_detected(self):
        form = login_form()
        form.fields.append(FormField('authenticity_token', 'hidden', 'Zq4xV9mK2pLr7TbW8nYc3HsJ6dFg1AeU'))
        module, targets = scan_with([form])
        assert await module.run_all(targets) == []

    @pytest.mark.asyncio
    async def test_weak_token_reported(self):
        form = login_form(has_csrf_token=True, csrf_token_name='csrf_token', csrf_token_value='12345')
        module, targets = scan_with([form])
        findings = await module.run_all(targets)

        assert len(findings) == 1
        assert findings[0].rule_id == 'WSS-CSRF-002'
        assert findings[0].severity == Severity.MEDIUM

    @pytest.mark.asyncio
    async def test_samesite_cookie_mitigates(self):
        module, targets = scan_with([login_form()],
                                    cookies=['sessionid=abcdef; Path=/; SameSite=Lax; HttpOnly'])
        assert await module.run_all(targets) == []

    @pytest.mark.asyncio
    async def test_non_session_cookie_does_not_mitigate(self):
        module, targets = scan_with([login_form()], cookies=['theme=dark; SameSite=Strict'])
        assert len(await module.run_all(targets)) == 1

    @pytest.mark.asyncio
    async def test_meta_token_accepted(self):
        module, targets = scan_with([login_form(has_csrf_meta=True)])
        assert await module.run_all(targets) == []

    @pytest.mark.asyncio
    async def test_non_sensitive_form_is_medium(self):
        form = Form(page_url='http://example.test/', action='http://example.test/comment',
                    method='POST', fields=[FormField('text', 'textarea')])
        module, targets = scan_with([form])
        findings = await module.run_all(targets)
        assert findings[0].severity == Severity.MEDIUM
