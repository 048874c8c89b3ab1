"""
HTML Parser for WebSecScan

Turns a fetched page into what the crawler and runners need:
- Forms, their submittable fields and anti-CSRF tokens
- Navigable links, including frames and script navigation
- External script sources and endpoint-shaped strings inside scripts
"""

import re
from typing import Dict, List, Optional, Set
from dataclasses import dataclass, field
from urllib.parse import urljoin, urlparse, parse_qsl
from bs4 import BeautifulSoup

# Field types a browser never submits as typed text
NON_TEXT_TYPES = frozenset({'submit', 'button', 'image', 'reset', 'file'})


@dataclass
class FormField:
    """One named control inside a form."""
    name: str
    field_type: str
    value: str = ''

    @property
    def is_password(self) -> bool:
        return self.field_type == 'password'

    @property
    def is_hidden(self) -> bool:
        return self.field_type == 'hidden'


@dataclass
class Form:
    """A form discovered while crawling."""
    page_url: str
    action: str
    method: str
    fields: List[FormField] = field(default_factory=list)
    has_csrf_token: bool = False
    csrf_token_name: Optional[str] = None
    csrf_token_value: Optional[str] = None
    has_csrf_meta: bool = False

    STATE_CHANGING_METHODS = ('POST', 'PUT', 'DELETE', 'PATCH')

    @property
    def is_state_changing(self) -> bool:
        return self.method in self.STATE_CHANGING_METHODS

    @property
    def has_password_field(self) -> bool:
        return any(f.is_password for f in self.fields)

    @property
    def injectable_fields(self) -> List[FormField]:
        """Visible text-like fields a runner may put a payload into."""
        skip = NON_TEXT_TYPES | {'hidden', 'checkbox', 'radio'}
        return [f for f in self.fields if f.name and f.field_type not in skip]

    def baseline_values(self) -> Dict[str, str]:
        """Default submission values for every named field."""
        values = {}
        for f in self.fields:
            if f.field_type in NON_TEXT_TYPES:
                continue
            values[f.name] = f.value or ('test' if f.field_type != 'hidden' else '')
        return values

    def to_dict(self) -> Dict:
        return {
            'page_url': self.page_url,
            'action': self.action,
            'method': self.method,
            'fields': [{'name': f.name, 'type': f.field_type} for f in self.fields],
            'has_csrf_token': self.has_csrf_token,
            'has_csrf_meta': self.has_csrf_meta,
        }


@dataclass
class Link:
    """A navigation target found on a page."""
    url: str
    parameters: Dict[str, str] = field(default_factory=dict)
    from_script: bool = False


@dataclass
class ParsedPage:
    """Everything the crawler takes from one HTML page."""
    url: str
    forms: List[Form] = field(default_factory=list)
    links: List[Link] = field(default_factory=list)
    scripts: List[str] = field(default_factory=list)
    script_endpoints: List[str] = field(default_factory=list)


# Endpoint-shaped strings inside JavaScript
SCRIPT_ENDPOINT_PATTERNS = [
    re.compile(r'''fetch\(\s*['"`]([^'"`\s]+)['"`]'''),
    re.compile(r'''axios\.(?:get|post|put|patch|delete)\(\s*['"`]([^'"`\s]+)['"`]'''),
    re.compile(r'''\$\.ajax\(\s*\{[^}]*?url\s*:\s*['"`]([^'"`\s]+)['"`]''', re.DOTALL),
    re.compile(r'''['"`](/api/[^'"`\s]*)['"`]'''),
]

# Client-side navigation targets
SCRIPT_NAVIGATION_PATTERNS = [
    re.compile(r'''window\.location(?:\.href)?\s*=\s*['"`]([^'"`\s]+)['"`]'''),
    re.compile(r'''location\.(?:assign|replace)\(\s*['"`]([^'"`\s]+)['"`]'''),
    re.compile(r'''router\.push\(\s*['"`]([^'"`\s]+)['"`]'''),
    re.compile(r'''\bhref\s*:\s*['"`](/[^'"`\s]*)['"`]'''),
]

IGNORED_HREF_PREFIXES = ('javascript:', 'mailto:', 'tel:', 'data:', '#')


def extract_script_urls(script: str, page_url: str, patterns=None) -> List[str]:
    """
    Find endpoint-shaped strings in JavaScript source.

    Template-literal fragments containing `${` are ignored.

    Args:
        script: JavaScript source text
        page_url: URL used to resolve relative paths
        patterns: Compiled patterns to apply (defaults to endpoint patterns)

    Returns:
        Absolute URLs in first-seen order
    """
    urls: List[str] = []
    seen: Set[str] = set()
    for pattern in patterns or SCRIPT_ENDPOINT_PATTERNS:
        for match in pattern.finditer(script):
            candidate = match.group(1)
            if '${' in candidate or candidate.startswith(('javascript:', 'data:', '#')):
                continue
            resolved = urljoin(page_url, candidate)
            if resolved not in seen:
                seen.add(resolved)
                urls.append(resolved)
    return urls


class HTMLParser:
    """
    Page parser used by the crawler.

    Forms carry an anti-CSRF indicator from either a known token field or a
    page-level csrf meta tag. Links come from anchors, image maps, frames
    and inline script navigation.
    """

    CSRF_NAMES = {
        'csrf', 'csrf_token', 'csrftoken', 'csrfmiddlewaretoken',
        '_token', 'authenticity_token', '_csrf', 'csrf-token',
        'anti-csrf-token', 'anticsrf', '__requestverificationtoken',
        'xsrf', 'xsrf_token', '_xsrf', 'xsrf-token'
    }

    CSRF_META_NAMES = {'csrf-token', 'csrf_token', '_csrf', 'xsrf-token', 'csrf-param'}

    LINK_TAGS = (('a', 'href'), ('area', 'href'), ('iframe', 'src'), ('frame', 'src'))

    def __init__(self, base_url: str):
        self.base_url = base_url

    def parse(self, html: str, url: Optional[str] = None) -> ParsedPage:
        """
        Parse one page.

        Args:
            html: Response body
            url: Final URL of the page, used to resolve relative references
        """
        page_url = url or self.base_url
        soup = BeautifulSoup(html, 'lxml')

        page = ParsedPage(url=page_url)
        has_csrf_meta = self._has_csrf_meta(soup)
        page.forms = [self._build_form(tag, page_url, has_csrf_meta) for tag in soup.find_all('form')]
        page.links = self._collect_links(soup, page_url)
        page.scripts = [urljoin(page_url, tag['src']) for tag in soup.find_all('script', src=True)]

        inline = '\n'.join(tag.string or '' for tag in soup.find_all('script', src=False))
        page.script_endpoints = extract_script_urls(inline, page_url)
        for nav_url in extract_script_urls(inline, page_url, SCRIPT_NAVIGATION_PATTERNS):
            page.links.append(self._link(nav_url, from_script=True))

        return page

    def _has_csrf_meta(self, soup: BeautifulSoup) -> bool:
        for meta in soup.find_all('meta', attrs={'name': True}):
            if meta['name'].lower() in self.CSRF_META_NAMES and meta.get('content'):
                return True
        return False

    def _build_form(self, form_tag, page_url: str, has_csrf_meta: bool) -> Form:
        action = (form_tag.get('action') or '').strip()
        form = Form(
            page_url=page_url,
            action=urljoin(page_url, action) if action else page_url,
            method=(form_tag.get('method') or 'GET').strip().upper(),
            fields=self._form_fields(form_tag),
            has_csrf_meta=has_csrf_meta
        )

        for form_field in form.fields:
            if form_field.name.lower() in self.CSRF_NAMES:
                form.has_csrf_token = True
                form.csrf_token_name = form_field.name
                form.csrf_token_value = form_field.value

        return form

    @staticmethod
    def _form_fields(form_tag) -> List[FormField]:
        """Named inputs, textareas and selects in document order."""
        fields = []
        for control in form_tag.find_all(['input', 'textarea', 'select']):
            name = control.get('name')
            if not name:
                continue
            if control.name == 'textarea':
                fields.append(FormField(name, 'textarea', control.string or ''))
            elif control.name == 'select':
                option = control.find('option', selected=True) or control.find('option')
                fields.append(FormField(name, 'select', option.get('value', '') if option else ''))
            else:
                fields.append(FormField(name, (control.get('type') or 'text').lower(),
                                        control.get('value', '')))
        return fields

    @staticmethod
    def _link(url: str, from_script: bool = False) -> Link:
        return Link(url=url, parameters=dict(parse_qsl(urlparse(url).query, keep_blank_values=True)),
                    from_script=from_script)

    def _collect_links(self, soup: BeautifulSoup, page_url: str) -> List[Link]:
        links = []
        seen: Set[str] = set()

        for tag_name, attr in self.LINK_TAGS:
            for tag in soup.find_all(tag_name, **{attr: True}):
                ref = tag[attr].strip()
                if not ref or ref.startswith(IGNORED_HREF_PREFIXES):
                    continue

                resolved = urljoin(page_url, ref)
                if urlparse(resolved).scheme not in ('http', 'https') or resolved in seen:
                    continue
                seen.add(resolved)
                links.append(self._link(resolved))

        return links
