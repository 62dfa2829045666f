"""Cookie matching engine: Set-Cookie parsing, jar updates, Cookie header resolution.

Everything here is pure: functions operate on an in-memory jar
(``dict[str, list[Cookie]]``, lowercase host -> cookies) and never touch
the network or the disk.
"""

import datetime
import email.utils
import math
import time
from dataclasses import dataclass, field
from urllib.parse import urlparse


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Cookie:
    """One stored cookie. Identity is the (name, domain, path) triple."""

    name: str
    value: str
    domain: str
    host_only: bool = True
    path: str = "/"
    expires_at: int | None = None  # epoch ms, None = session cookie
    secure: bool = False
    http_only: bool = False
    same_site: str = ""

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.name, self.domain, self.path)

    def to_dict(self) -> dict:
        """Serialize with the field names used in jar documents."""
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "hostOnly": self.host_only,
            "path": self.path,
            "expiresAt": self.expires_at,
            "secure": self.secure,
            "httpOnly": self.http_only,
            "sameSite": self.same_site,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Cookie":
        """Build a Cookie from a jar document record.

        Raises KeyError/TypeError/ValueError for records that are not
        cookie-shaped; callers loading documents skip those.
        """
        name = data["name"]
        if not isinstance(name, str) or not name:
            raise ValueError(f"invalid cookie name: {name!r}")
        expires_at = data.get("expiresAt")
        if expires_at is not None:
            if isinstance(expires_at, float) and not math.isfinite(expires_at):
                raise ValueError(f"non-finite expiresAt: {expires_at!r}")
            expires_at = int(expires_at)
        return cls(
            name=name,
            value=str(data.get("value", "")),
            domain=str(data.get("domain", "")).lower(),
            host_only=bool(data.get("hostOnly", True)),
            path=str(data.get("path") or "/"),
            expires_at=expires_at,
            secure=bool(data.get("secure", False)),
            http_only=bool(data.get("httpOnly", False)),
            same_site=str(data.get("sameSite") or ""),
        )


# Jar: lowercase request host -> cookies received from that host.
Jar = dict[str, list[Cookie]]


def extract_host(url: str) -> str | None:
    """Extract the lowercase hostname from a URL."""
    return urlparse(url).hostname


def default_cookie_path(path: str) -> str:
    """Default Path for a cookie set without one: the request path's directory."""
    if not path or not path.startswith("/") or path == "/":
        return "/"
    idx = path.rfind("/")
    if idx <= 0:
        return "/"
    return path[:idx]


def is_expired(cookie: Cookie, now: int | None = None) -> bool:
    if cookie.expires_at is None:
        return False
    if now is None:
        now = _now_ms()
    return now > cookie.expires_at


def domain_matches(cookie_domain: str, host: str) -> bool:
    """True if host equals cookie_domain or is a subdomain of it."""
    cd = (cookie_domain or "").lower()
    h = (host or "").lower()
    if not cd or not h:
        return False
    if cd == h:
        return True
    return h.endswith("." + cd)


def path_matches(cookie_path: str, request_path: str) -> bool:
    cp = cookie_path or "/"
    rp = request_path or "/"
    if rp == cp:
        return True
    if rp.startswith(cp):
        if cp.endswith("/"):
            return True
        return rp[len(cp):len(cp) + 1] in ("/", "", "?")
    return False


def _parse_max_age(value: str, now: int) -> int | None:
    try:
        secs = float(value)
    except ValueError:
        return None
    if not math.isfinite(secs):
        return None
    return int(now + secs * 1000)


def _parse_expires(value: str) -> int | None:
    try:
        dt = email.utils.parsedate_to_datetime(value)
    except (ValueError, TypeError, IndexError):
        return None
    if dt.tzinfo is None:
        # "-0000" and zone-less dates are UTC for cookie purposes
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return int(dt.timestamp() * 1000)


def parse_set_cookie(header_value: str, request_url: str) -> Cookie | None:
    """Parse one Set-Cookie header value received from request_url.

    Returns None when the value is malformed (no ``name=`` in the first
    segment) or the URL has no host. Unrecognized or unparsable attributes
    are ignored. Max-Age and Expires overwrite each other in the order they
    appear; the last parsable one wins.
    """
    u = urlparse(request_url)
    host = (u.hostname or "").lower()
    if not host:
        return None

    parts = [p.strip() for p in (header_value or "").split(";")]
    parts = [p for p in parts if p]
    if not parts:
        return None

    name_value, attrs = parts[0], parts[1:]
    eq = name_value.find("=")
    if eq <= 0:
        return None
    name = name_value[:eq].strip()
    if not name:
        return None

    now = _now_ms()
    cookie = Cookie(
        name=name,
        value=name_value[eq + 1:],
        domain=host,
        host_only=True,
        path=default_cookie_path(u.path or "/"),
    )

    for attr in attrs:
        k, _, v = attr.partition("=")
        k = k.strip().lower()
        v = v.strip()

        if k == "domain" and v:
            cookie.domain = v.removeprefix(".").lower()
            cookie.host_only = False
        elif k == "path" and v:
            cookie.path = v if v.startswith("/") else f"/{v}"
        elif k == "max-age" and v:
            expires_at = _parse_max_age(v, now)
            if expires_at is not None:
                cookie.expires_at = expires_at
        elif k == "expires" and v:
            expires_at = _parse_expires(v)
            if expires_at is not None:
                cookie.expires_at = expires_at
        elif k == "secure":
            cookie.secure = True
        elif k == "httponly":
            cookie.http_only = True
        elif k == "samesite" and v:
            cookie.same_site = v

    return cookie


def upsert_cookie(jar: Jar, host: str, cookie: Cookie) -> None:
    """Insert or replace cookie under host, or delete it if already expired.

    Any entry with the same (name, domain, path) is removed from every
    host bucket, so the triple stays unique across the whole jar. Expired
    entries in the host bucket are pruned on the way.
    """
    host = (host or "").lower()
    if not host:
        return

    now = _now_ms()
    key = cookie.key

    for other in list(jar):
        if other == host:
            continue
        kept = [c for c in jar[other] if c.key != key]
        if len(kept) != len(jar[other]):
            if kept:
                jar[other] = kept
            else:
                del jar[other]

    bucket = [
        c for c in jar.get(host, [])
        if not is_expired(c, now) and c.key != key
    ]
    if cookie.expires_at is None or cookie.expires_at > now:
        bucket.append(cookie)
    jar[host] = bucket


@dataclass
class CookieResolution:
    """Which cookies a request would carry, and why the others would not."""

    host: str
    path: str
    is_https: bool
    header: str = ""
    count: int = 0
    sent: list[dict] = field(default_factory=list)
    excluded: list[dict] = field(default_factory=list)
    site_origin: str = ""
    is_cross_site: bool = False
    manual_override: bool = False

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "path": self.path,
            "isHttps": self.is_https,
            "isCrossSite": self.is_cross_site,
            "siteOrigin": self.site_origin,
            "header": self.header,
            "count": self.count,
            "cookiesSent": self.sent,
            "cookiesExcluded": self.excluded,
            "manualOverride": self.manual_override,
        }


def _exclusion_reason(
    cookie: Cookie,
    host: str,
    path: str,
    is_https: bool,
    now: int,
    same_site_mode: bool,
    is_cross_site: bool,
) -> str | None:
    if is_expired(cookie, now):
        return "Expired"
    if cookie.secure and not is_https:
        return "Secure cookie over HTTP"

    if same_site_mode:
        ss = (cookie.same_site or "").lower() or "lax"
        if ss == "none" and not cookie.secure:
            return "SameSite=None requires Secure"
        if is_cross_site and ss == "strict":
            return "SameSite=Strict blocks cross-site requests"
        if is_cross_site and ss == "lax":
            return "SameSite=Lax blocks cross-site XHR/fetch"

    if cookie.host_only:
        if cookie.domain.lower() != host:
            return "Host-only domain mismatch"
    elif not domain_matches(cookie.domain, host):
        return "Domain mismatch"

    if not path_matches(cookie.path, path):
        return "Path mismatch"
    return None


def resolve_cookies(
    jar: Jar,
    request_url: str,
    *,
    site_origin: str | None = None,
    manual_cookie_header: str | None = None,
) -> CookieResolution:
    """Resolve the Cookie header for request_url with per-cookie explanations.

    SameSite rules only apply when ``site_origin`` (the page origin the
    request is made from) is given; otherwise SameSite is informational.
    A non-empty ``manual_cookie_header`` replaces the jar's cookies.
    """
    u = urlparse(request_url)
    host = (u.hostname or "").lower()
    path = u.path or "/"
    is_https = u.scheme.lower() == "https"

    site_host = ""
    if site_origin:
        site_host = (urlparse(site_origin).hostname or "").lower()
    is_cross_site = bool(site_host and site_host != host)

    now = _now_ms()
    candidates: list[tuple[Cookie, list[str]]] = []
    excluded: list[dict] = []

    for bucket in jar.values():
        for c in bucket:
            notes = ["HttpOnly: not accessible to scripts"] if c.http_only else []
            reason = _exclusion_reason(
                c, host, path, is_https, now, bool(site_origin), is_cross_site
            )
            if reason is not None:
                excluded.append({**c.to_dict(), "reasons": [reason], "notes": notes})
                continue
            candidates.append((c, notes))

    # Most specific path wins; sort is stable so jar order breaks ties
    candidates.sort(key=lambda item: len(item[0].path), reverse=True)

    seen: set[str] = set()
    sent: list[dict] = []
    pairs: list[str] = []
    for c, notes in candidates:
        if c.name in seen:
            excluded.append({
                **c.to_dict(),
                "reasons": ["Overridden by a more specific cookie with the same name"],
                "notes": notes,
            })
            continue
        seen.add(c.name)
        why = [
            "Host-only match" if c.host_only else "Domain match",
            f"Path match ({c.path})",
            "Secure" if c.secure else "Not secure",
            f"SameSite={c.same_site or 'default(Lax)'}",
        ]
        sent.append({**c.to_dict(), "whyParts": why, "notes": notes})
        pairs.append(f"{c.name}={c.value}")

    resolution = CookieResolution(
        host=host,
        path=path,
        is_https=is_https,
        site_origin=site_origin or "",
        is_cross_site=is_cross_site,
    )

    if manual_cookie_header:
        overridden = [
            {**item, "reasons": ["Overridden by manual Cookie header"]}
            for item in sent
        ]
        for item in overridden:
            item.pop("whyParts", None)
        for item in excluded:
            item["reasons"] = item["reasons"] + ["Manual Cookie header present"]
        resolution.header = manual_cookie_header
        resolution.count = len(
            [p for p in manual_cookie_header.split(";") if p.strip()]
        )
        resolution.excluded = overridden + excluded
        resolution.manual_override = True
        return resolution

    resolution.header = "; ".join(pairs)
    resolution.count = len(sent)
    resolution.sent = sent
    resolution.excluded = excluded
    return resolution


def build_cookie_header(jar: Jar, request_url: str) -> str:
    """Cookie header value for request_url, or "" when nothing applies."""
    return resolve_cookies(jar, request_url).header


def list_cookies(jar: Jar) -> list[dict]:
    """Non-expired cookies with the host bucket they are stored under."""
    now = _now_ms()
    out = []
    for host, bucket in jar.items():
        for c in bucket:
            if is_expired(c, now):
                continue
            out.append({
                "host": host,
                "name": c.name,
                "domain": c.domain,
                "path": c.path,
                "secure": c.secure,
                "httpOnly": c.http_only,
                "sameSite": c.same_site,
                "expiresAt": c.expires_at,
            })
    return out
