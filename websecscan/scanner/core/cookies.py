"""
Set-Cookie parsing helpers shared by the CSRF and session runners.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

SESSION_COOKIE_HINTS = ('session', 'sess', 'auth', 'token', 'sid', 'jwt', 'login')
KNOWN_SESSION_COOKIES = {'phpsessid', 'jsessionid', 'asp.net_sessionid', 'connect.sid',
                         'laravel_session', 'sessionid', '_session_id'}


@dataclass(frozen=True)
class SetCookie:
    """Attributes of one Set-Cookie header."""
    name: str
    value: str
    secure: bool = False
    httponly: bool = False
    samesite: Optional[str] = None
    path: Optional[str] = None
    domain: Optional[str] = None
    raw: str = ''
    url: str = ''

    @property
    def is_session_cookie(self) -> bool:
        lowered = self.name.lower()
        return lowered in KNOWN_SESSION_COOKIES or any(h in lowered for h in SESSION_COOKIE_HINTS)

    @property
    def samesite_protects(self) -> bool:
        """SameSite=Strict or Lax."""
        return (self.samesite or '').lower() in ('strict', 'lax')


def parse_set_cookie(header: str, url: str = '') -> Optional[SetCookie]:
    """
    Parse a single Set-Cookie header value.

    Returns:
        SetCookie, or None when the header has no name=value pair
    """
    parts = [p.strip() for p in header.split(';')]
    if not parts or '=' not in parts[0]:
        return None

    name, value = parts[0].split('=', 1)
    name = name.strip()
    if not name:
        return None

    attrs = {}
    flags = set()
    for part in parts[1:]:
        if not part:
            continue
        if '=' in part:
            key, attr_value = part.split('=', 1)
            attrs[key.strip().lower()] = attr_value.strip()
        else:
            flags.add(part.lower())

    return SetCookie(
        name=name,
        value=value.strip().strip('"'),
        secure='secure' in flags,
        httponly='httponly' in flags,
        samesite=attrs.get('samesite'),
        path=attrs.get('path'),
        domain=attrs.get('domain'),
        raw=header,
        url=url
    )


def session_cookies(observations: Iterable) -> List[SetCookie]:
    """
    Session-like cookies from CookieObservation records, first occurrence
    per cookie name.
    """
    seen = set()
    cookies = []
    for observation in observations:
        cookie = parse_set_cookie(observation.header, observation.url)
        if cookie is None or not cookie.is_session_cookie:
            continue
        if cookie.name in seen:
            continue
        seen.add(cookie.name)
        cookies.append(cookie)
    return cookies
