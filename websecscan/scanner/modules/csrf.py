"""
Cross-Site Request Forgery checks

Passive analysis of state-changing forms and the session cookies the
site sets. No requests are sent.
"""

from typing import List, Optional, Tuple
import logging

from websecscan.scanner.modules.base import BaseModule, Finding, Severity, Confidence, TestPayload
from websecscan.scanner.core.cookies import SetCookie, session_cookies
from websecscan.scanner.core.parser import Form

logger = logging.getLogger(__name__)


# Common CSRF token names (substring match on hidden fields)
CSRF_TOKEN_NAMES = [
    'csrf', 'xsrf', '_token', 'authenticity_token', 'anticsrf',
    '__requestverificationtoken', 'nonce', 'request_token', 'form_token',
    'security_token'
]

# Keywords in action or page URL that mark a form as high impact
SENSITIVE_ACTIONS = (
    'login', 'signin', 'signup', 'register', 'password', 'account',
    'email', 'profile', 'settings', 'admin', 'delete', 'remove',
    'update', 'edit', 'create', 'transfer', 'payment', 'checkout',
)

SENSITIVE_FIELDS = ('password', 'email', 'amount', 'account', 'credit', 'ssn')

FORM_TYPES = (
    (('login', 'signin'), 'login'),
    (('register', 'signup'), 'registration'),
    (('password',), 'password change'),
    (('transfer', 'payment'), 'payment'),
    (('settings', 'profile'), 'settings'),
)

PREDICTABLE_PATTERNS = ('csrf', 'token', '1234', 'test', 'demo')

MIN_TOKEN_LENGTH = 16


class CSRFModule(BaseModule):
    """
    Reports a POST/PUT/DELETE/PATCH form when it carries no anti-CSRF
    token (field or meta tag) and no session cookie is SameSite=Strict/Lax.
    Present but short or predictable tokens are reported separately.
    """

    name = "csrf"
    description = "Detects missing or weak CSRF protection on forms"
    rule_id = "WSS-CSRF-001"
    weak_token_rule_id = "WSS-CSRF-002"
    cwe_id = "CWE-352"
    owasp_category = "A01:2021"

    def __init__(self, requester=None, events=None):
        super().__init__(requester, events)
        self.cookies: List[SetCookie] = []

    def targets(self, crawl, state=None) -> List[Form]:
        """State-changing forms; records the session cookies seen while crawling."""
        if state is not None:
            self.cookies = session_cookies(state.cookies)
        return [form for form in crawl.forms if form.is_state_changing]

    async def run(self, target: Form, payloads: Optional[List[TestPayload]] = None) -> List[Finding]:
        return self.check_form(target)

    def check_form(self, form: Form) -> List[Finding]:
        """
        Check one form for CSRF protection.

        Args:
            form: Parsed form

        Returns:
            List of Finding objects
        """
        if not form.is_state_changing:
            return []

        has_token, token_value = self._find_token(form)

        if has_token or form.has_csrf_meta:
            weak = self._check_weak_token(form, token_value)
            return [weak] if weak else []

        protecting = [c for c in self.cookies if c.samesite_protects]
        if protecting:
            self.logger.debug(f"Form {form.action} relies on SameSite cookie {protecting[0].name}")
            return []

        is_sensitive = self._is_sensitive_form(form)
        cookie_note = ("no session cookie was observed" if not self.cookies else
                       "session cookies lack SameSite=Strict/Lax: " +
                       ', '.join(c.name for c in self.cookies))

        return [self.create_finding(
            title="Missing CSRF Protection",
            severity=Severity.HIGH if is_sensitive else Severity.MEDIUM,
            confidence=Confidence.HIGH if is_sensitive else Confidence.MEDIUM,
            url=form.action,
            method=form.method,
            evidence=[self._format_form_evidence(form), cookie_note],
            description=(
                f"A {self._get_form_type(form)} form on '{form.page_url}' submits to '{form.action}' "
                f"with {form.method} but has no anti-CSRF token, and {cookie_note}."
            ),
            remediation=self._get_remediation(),
            references=(
                "https://owasp.org/www-community/attacks/csrf",
                "https://cheatsheetseries.owasp.org/cheatsheets/Cross-Site_Request_Forgery_Prevention_Cheat_Sheet.html",
            )
        )]

    def _find_token(self, form: Form) -> Tuple[bool, Optional[str]]:
        """Check if form has a CSRF token; returns (found, value)."""
        if form.has_csrf_token:
            return True, form.csrf_token_value

        for form_field in form.fields:
            if not form_field.is_hidden:
                continue
            name = form_field.name.lower()
            if any(csrf_name in name for csrf_name in CSRF_TOKEN_NAMES):
                return True, form_field.value

        return False, None

    def _check_weak_token(self, form: Form, token_value: Optional[str]) -> Optional[Finding]:
        """WSS-CSRF-002 when a present token looks guessable."""
        if not token_value:
            return None

        issues = list(weak_token_issues(token_value))
        if not issues:
            return None

        return self.create_finding(
            title="Weak CSRF Token",
            severity=Severity.MEDIUM,
            confidence=Confidence.MEDIUM,
            url=form.action,
            method=form.method,
            rule_id=self.weak_token_rule_id,
            evidence=[f"Token: {self.truncate(token_value, 50)}"] + issues,
            description=f"The anti-CSRF token of this form can likely be guessed: {'; '.join(issues)}.",
            remediation="Generate tokens with a CSPRNG (at least 128 bits) and bind them to the session."
        )

    def _is_sensitive_form(self, form: Form) -> bool:
        haystack = (form.action + ' ' + form.page_url).lower()
        if form.has_password_field or any(action in haystack for action in SENSITIVE_ACTIONS):
            return True
        return any(s in f.name.lower() for f in form.fields for s in SENSITIVE_FIELDS)

    @staticmethod
    def _get_form_type(form: Form) -> str:
        haystack = (form.action + form.page_url).lower()
        for keywords, label in FORM_TYPES:
            if any(keyword in haystack for keyword in keywords):
                return label
        return 'state-changing'

    @staticmethod
    def _format_form_evidence(form: Form) -> str:
        shown = ', '.join(f"{f.name}({f.field_type})" for f in form.fields[:5])
        hidden = len(form.fields) - 5
        more = f" (+{hidden} more)" if hidden > 0 else ''
        return f"{form.method} {form.action} fields: {shown}{more}"

    def _get_remediation(self) -> str:
        return """
Protect every state-changing request:
- Embed a per-session random token in each form (hidden field or csrf meta
  tag for script clients) and reject submissions whose token does not match.
- Mark session cookies SameSite=Lax or SameSite=Strict.
- Prefer the framework's built-in protection: Django `{% csrf_token %}`,
  Flask-WTF `csrf_token()`, Rails `authenticity_token`, Laravel `@csrf`.
- Ask for the password again before changing credentials or moving money.
"""


def weak_token_issues(token: str):
    """Yield the reasons a token looks guessable."""
    if len(token) < MIN_TOKEN_LENGTH:
        yield f"only {len(token)} characters (expected {MIN_TOKEN_LENGTH}+)"
    if token.isdigit():
        yield "digits only"
    lowered = token.lower()
    for pattern in PREDICTABLE_PATTERNS:
        if pattern in lowered:
            yield f"contains '{pattern}'"


def create(requester, events=None) -> CSRFModule:
    """Module factory used by the engine."""
    return CSRFModule(requester, events)
