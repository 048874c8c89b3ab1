"""
XSS (Cross-Site Scripting) Detection Module

Detects reflected XSS by sending inert marker payloads, one per HTML/JS
context, and checking whether they come back in a script-capable form.
"""

import html
import re
from typing import List, Optional, Tuple
import logging

from websecscan.scanner.modules.base import (
    BaseModule, Finding, InjectionPoint, Severity, Confidence, TestPayload
)
from websecscan.scanner.core.requester import RequestMethod, Response

logger = logging.getLogger(__name__)

TESTER_ID = 'xss'


def _payload(n: int, context: str, template: str) -> TestPayload:
    marker = f"wssx{n:02d}"
    return TestPayload(
        id=f"xss-{context}",
        tester_id=TESTER_ID,
        context=context,
        payload=template.replace('{m}', marker),
        signal=marker
    )


# One payload per reflection context. Markers never execute anything.
XSS_PAYLOADS = [
    _payload(1, 'html_body', '<script>{m}</script>'),
    _payload(2, 'comment_breakout', '--><script>{m}</script><!--'),
    _payload(3, 'attr_double_quoted', '"><svg onload={m}>'),
    _payload(4, 'attr_single_quoted', "'><svg onload={m}>"),
    _payload(5, 'attr_unquoted', 'x onmouseover={m} '),
    _payload(6, 'event_handler', '" onfocus="{m}" autofocus="'),
    _payload(7, 'js_string_double', '";{m}();//'),
    _payload(8, 'js_string_single', "';{m}();//"),
    _payload(9, 'script_breakout', '</script><script>{m}</script>'),
    _payload(10, 'url_scheme', 'javascript:{m}()'),
    _payload(11, 'rcdata_breakout', '</textarea></title><script>{m}</script>'),
    _payload(12, 'json_in_dom', '"}</script><svg onload={m}>'),
]

# Contexts whose payload only matters at a particular position in the page
_SCRIPT_ONLY = {'js_string_double', 'js_string_single'}
_TAG_ONLY = {'attr_unquoted', 'event_handler'}
_URL_ATTR = re.compile(r'(?:href|src|action|formaction|data)\s*=\s*["\']?\s*$', re.IGNORECASE)


class XSSModule(BaseModule):
    """
    Reflected XSS Detection Module

    Confidence:
    - HIGH: payload reflected verbatim in a script-capable context
    - MEDIUM: payload reflected after case/whitespace changes, or with
      quotes intact but angle brackets encoded
    Fully encoded reflections are not reported.
    """

    name = "xss"
    description = "Detects reflected Cross-Site Scripting"
    rule_id = "WSS-XSS-001"
    cwe_id = "CWE-79"
    owasp_category = "A03:2021"

    async def run(self, target: InjectionPoint, payloads: Optional[List[TestPayload]] = None) -> List[Finding]:
        """
        Inject each context payload into one parameter.

        Args:
            target: Injection point
            payloads: Override the default payload list

        Returns:
            At most one finding for the injection point
        """
        best: Optional[Tuple[Confidence, TestPayload, str]] = None
        method = RequestMethod.from_name(target.method)

        for payload in payloads or XSS_PAYLOADS:
            response = await self.requester.test_payload(
                url=target.url,
                parameter=target.parameter,
                payload=payload.payload,
                method=method,
                base_params=target.baseline,
                component=self.name
            )

            detected = self.analyze(response, payload)
            if detected is None:
                continue

            confidence, evidence = detected
            if best is None or confidence.rank > best[0].rank:
                best = (confidence, payload, evidence)

            # One verbatim reflection is enough per parameter
            if confidence == Confidence.HIGH:
                break

        if best is None:
            return []

        confidence, payload, evidence = best
        confidence = self.adjust_confidence(confidence, target.url)
        self.logger.info(f"Reflected XSS in '{target.parameter}' at {target.url} ({payload.context})")

        return [self.create_finding(
            title="Reflected Cross-Site Scripting (XSS)",
            severity=Severity.HIGH,
            confidence=confidence,
            url=target.url,
            method=target.method,
            parameter=target.parameter,
            evidence=[evidence, f"context: {payload.context}"],
            payload=payload.payload,
            description=f"The parameter '{target.parameter}' is reflected in the response without "
                        f"proper encoding ({payload.context.replace('_', ' ')} context).",
            remediation=self._get_remediation(),
            references=(
                "https://owasp.org/www-community/attacks/xss/",
                "https://cheatsheetseries.owasp.org/cheatsheets/Cross_Site_Scripting_Prevention_Cheat_Sheet.html",
            )
        )]

    def analyze(self, response: Response, payload: TestPayload) -> Optional[Tuple[Confidence, str]]:
        """
        Classify the reflection of `payload` in `response`.

        Returns:
            (confidence, evidence) or None when nothing exploitable came back
        """
        body = response.body
        raw = payload.payload

        idx = body.find(raw)
        while idx != -1:
            if self._in_exploitable_context(body, idx, payload):
                return Confidence.HIGH, self.extract_evidence(body, raw)
            idx = body.find(raw, idx + 1)

        if self._fully_encoded(body, raw):
            return None

        if raw not in body and payload.context not in _SCRIPT_ONLY and raw.lower() in body.lower():
            return Confidence.MEDIUM, self.extract_evidence(body, raw)

        collapsed = re.sub(r'\s+', ' ', body)
        if raw not in body and raw != raw.strip() and raw.strip() in collapsed:
            return Confidence.MEDIUM, self.extract_evidence(collapsed, raw.strip())

        partial = html.escape(raw, quote=False)
        if partial != raw and partial != html.escape(raw, quote=True) and partial in body:
            return Confidence.MEDIUM, self.extract_evidence(body, partial)

        for name, value in response.headers.items():
            if raw in value:
                return Confidence.MEDIUM, f"{name}: {self.truncate(value, 200)}"

        return None

    def _in_exploitable_context(self, body: str, idx: int, payload: TestPayload) -> bool:
        before = body[:idx]

        if payload.context in _SCRIPT_ONLY:
            opened = before.lower().rfind('<script')
            closed = before.lower().rfind('</script')
            return opened != -1 and opened > closed

        if payload.context in _TAG_ONLY:
            return before.rfind('<') > before.rfind('>')

        if payload.context == 'url_scheme':
            return bool(_URL_ATTR.search(before[-40:]))

        return True

    @staticmethod
    def _fully_encoded(body: str, raw: str) -> bool:
        encoded = html.escape(raw, quote=True)
        if encoded == raw:
            return False
        return encoded in body or encoded.replace('&#x27;', '&#39;') in body

    def _get_remediation(self) -> str:
        """Get remediation guidance."""
        return """
1. **Output Encoding**: Encode user input for the context it is rendered in:
   - HTML entity encoding for HTML body and attributes
   - JavaScript string escaping inside scripts
   - URL validation (allow only http/https) for links

2. **Content Security Policy (CSP)**: Deploy a strict CSP header:
   - `Content-Security-Policy: default-src 'self'; script-src 'self'`

3. **Templating**: Use a template engine with auto-escaping enabled and avoid
   marking user input as safe.

4. **HTTPOnly Cookies**: Set HttpOnly on session cookies to limit the impact of XSS.
"""


def create(requester, events=None) -> XSSModule:
    """Module factory used by the engine."""
    return XSSModule(requester, events)
