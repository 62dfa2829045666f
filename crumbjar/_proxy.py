"""CookieProxy -- relays requests upstream through rnet with a persistent cookie jar."""

import datetime
import logging
import os

import rnet.blocking
from rnet import Method

from crumbjar._cookies import (
    CookieResolution,
    extract_host,
    list_cookies,
    parse_set_cookie,
    resolve_cookies,
    upsert_cookie,
)
from crumbjar._errors import ConnectionFailed, TargetNotAllowed
from crumbjar._response import ProxyResult
from crumbjar._store import (
    DEFAULT_DATA_DIR,
    DEFAULT_FLUSH_DELAY,
    JarStore,
    sanitize_jar_id,
)

logger = logging.getLogger("crumbjar")

_METHOD_MAP: dict[str, Method] = {
    "GET": Method.GET,
    "POST": Method.POST,
    "PUT": Method.PUT,
    "DELETE": Method.DELETE,
    "HEAD": Method.HEAD,
    "OPTIONS": Method.OPTIONS,
    "PATCH": Method.PATCH,
    "TRACE": Method.TRACE,
}

DEFAULT_TIMEOUT = datetime.timedelta(seconds=30)

# Never forwarded upstream: hop-by-hop or owned by the transport.
_BLOCKED_REQUEST_HEADERS = frozenset(
    ("host", "connection", "content-length", "accept-encoding", "referer", "origin")
)
# The body is already decoded by the time the caller sees it.
_BLOCKED_RESPONSE_HEADERS = frozenset(("content-encoding", "transfer-encoding"))


def _to_method(method: str) -> Method:
    """Convert a string HTTP method to rnet Method enum."""
    try:
        return _METHOD_MAP[method.upper()]
    except KeyError:
        raise ValueError(f"Unknown HTTP method: {method}") from None


def _normalize_timeout(val) -> datetime.timedelta:
    if isinstance(val, datetime.timedelta):
        return val
    return datetime.timedelta(seconds=float(val))


def _is_text_like_content_type(content_type: str) -> bool:
    """Text-like bodies are returned decoded; everything else as bytes.

    A missing content type counts as text.
    """
    ct = content_type.lower()
    if not ct:
        return True
    if ct.startswith("text/"):
        return True
    return any(
        marker in ct
        for marker in ("json", "xml", "javascript", "x-www-form-urlencoded", "graphql")
    )


def _sanitize_request_headers(headers: dict[str, str] | None) -> dict[str, str]:
    return {
        k: v
        for k, v in (headers or {}).items()
        if k.lower() not in _BLOCKED_REQUEST_HEADERS
    }


def _decode_headers(header_map) -> dict[str, str]:
    """Decode an rnet HeaderMap to a lowercase string dict.

    Multi-value headers are joined with "; "; Set-Cookie values are
    read individually with get_all() elsewhere.
    """
    result: dict[str, str] = {}
    for raw_key in header_map.keys():
        k = raw_key.decode("ascii", errors="replace").lower()
        if k in _BLOCKED_RESPONSE_HEADERS:
            continue
        parts = [
            v.decode("utf-8", errors="replace")
            for v in header_map.get_all(k)
        ]
        result[k] = "; ".join(parts)
    return result


def _set_cookie_values(header_map) -> list[str]:
    return [
        v.decode("utf-8", errors="replace") if isinstance(v, bytes) else str(v)
        for v in header_map.get_all("set-cookie")
    ]


class CookieProxy:
    """Request relay that keeps one persistent cookie jar per jar id.

    Owns a single JarStore for the life of the process; construct one
    proxy at startup and share it between request handlers. Call close()
    (or use it as a context manager) from the shutdown path so that jars
    still waiting on a debounced write reach the disk.
    """

    def __init__(
        self,
        store: JarStore | None = None,
        *,
        data_dir: str | os.PathLike = DEFAULT_DATA_DIR,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
        allowed_hosts=None,
        timeout=DEFAULT_TIMEOUT,
        client=None,
    ):
        self.store = store or JarStore(data_dir, flush_delay=flush_delay)
        self.allowed_hosts = (
            frozenset(h.lower() for h in allowed_hosts)
            if allowed_hosts is not None
            else None
        )
        self.timeout = _normalize_timeout(timeout)
        # Cookies are handled here, so rnet's own store stays off.
        self._client = client or rnet.blocking.Client(
            timeout=self.timeout,
            cookie_store=False,
        )

    def _check_target(self, url: str) -> None:
        if self.allowed_hosts is None:
            return
        if extract_host(url) not in self.allowed_hosts:
            raise TargetNotAllowed(url, sorted(self.allowed_hosts))

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: str | bytes | None = None,
        jar_id: str = "default",
        jar_enabled: bool = True,
        timeout=None,
    ) -> ProxyResult:
        """Relay one request, sending jar cookies and storing Set-Cookie replies.

        A Cookie header supplied by the caller wins over the jar. Raises
        TargetNotAllowed for hosts outside ``allowed_hosts`` and
        ConnectionFailed when the upstream exchange fails.
        """
        if not url or not method:
            raise ValueError("Missing url or method")
        self._check_target(url)
        m = _to_method(method)

        jid = sanitize_jar_id(jar_id) if jar_enabled else None
        jar = self.store.get_jar(jid) if jid else None
        jar_lock = self.store.lock(jid) if jid else None

        out_headers = _sanitize_request_headers(headers)
        manual = next(
            (v for k, v in out_headers.items() if k.lower() == "cookie"), None
        )

        resolution: CookieResolution | None = None
        if manual is not None:
            sent_from = "manual"
            cookie_header = str(manual)
            if jar is not None:
                with jar_lock:
                    resolution = resolve_cookies(
                        jar, url, manual_cookie_header=cookie_header
                    )
        elif jar is not None:
            with jar_lock:
                resolution = resolve_cookies(jar, url)
            cookie_header = resolution.header
            sent_from = "jar" if cookie_header else "jar-empty"
            if cookie_header:
                out_headers["Cookie"] = cookie_header
        else:
            sent_from = "disabled"
            cookie_header = ""

        kwargs = {
            "headers": out_headers,
            "timeout": _normalize_timeout(timeout) if timeout is not None else self.timeout,
        }
        if m not in (Method.GET, Method.HEAD) and body not in (None, "", b""):
            kwargs["body"] = body

        logger.debug(
            "%s %s (jar=%s, cookies from %s)", method.upper(), url, jid, sent_from
        )
        try:
            resp = self._client.request(m, url, **kwargs)
            set_cookies = _set_cookie_values(resp.headers)
            resp_headers = _decode_headers(resp.headers)
            content_type = resp_headers.get("content-type", "")
            if _is_text_like_content_type(content_type):
                text = resp.text()
                content = None
            else:
                text = None
                content = resp.bytes()
        except Exception as e:
            raise ConnectionFailed(url, str(e)) from e

        if jar is not None and set_cookies:
            self._store_set_cookies(jid, jar, jar_lock, url, set_cookies)

        return ProxyResult(
            status_code=resp.status.as_int(),
            headers=resp_headers,
            url=url,
            content=content or b"",
            text=text,
            is_binary=text is None,
            set_cookie=set_cookies,
            jar_id=jid,
            cookies=resolution,
            cookie_sent_from=sent_from,
            cookie_header=cookie_header,
        )

    def _store_set_cookies(
        self, jar_id: str, jar, jar_lock, url: str, set_cookies: list[str]
    ) -> None:
        host = extract_host(url) or ""
        stored = 0
        with jar_lock:
            # Cleared while the request was in flight
            if not self.store.is_current(jar_id, jar):
                logger.debug(
                    "Jar %s was cleared, dropping %d Set-Cookie values",
                    jar_id, len(set_cookies),
                )
                return
            for raw in set_cookies:
                cookie = parse_set_cookie(raw, url)
                if cookie is None:
                    logger.debug("Ignoring malformed Set-Cookie from %s: %r", host, raw)
                    continue
                upsert_cookie(jar, host, cookie)
                stored += 1
            if stored:
                self.store.mark_dirty(jar_id)
        if stored:
            logger.debug("Stored %d cookies from %s in jar %s", stored, host, jar_id)

    def get(self, url: str, **kwargs) -> ProxyResult:
        return self.send("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> ProxyResult:
        return self.send("POST", url, **kwargs)

    # -- debug / administrative surface ------------------------------------

    def list_jar(self, jar_id: str = "default") -> dict:
        """Non-expired cookies of a jar, without their values."""
        jid = sanitize_jar_id(jar_id)
        jar = self.store.get_jar(jid)
        with self.store.lock(jid):
            cookies = list_cookies(jar)
        return {"jarId": jid, "count": len(cookies), "cookies": cookies}

    def resolve(
        self, jar_id: str, url: str, site_origin: str | None = None
    ) -> CookieResolution:
        """Explain which jar cookies a request to url would carry."""
        if not url:
            raise ValueError("Missing url")
        self._check_target(url)
        jid = sanitize_jar_id(jar_id)
        jar = self.store.get_jar(jid)
        with self.store.lock(jid):
            return resolve_cookies(jar, url, site_origin=site_origin)

    def clear(self, jar_id: str = "default") -> dict:
        jid = sanitize_jar_id(jar_id)
        self.store.clear_jar(jid)
        return {"ok": True, "jarId": jid}

    def close(self) -> None:
        self.store.drain()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
