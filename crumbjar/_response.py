"""ProxyResult -- upstream response plus the cookie bookkeeping of one exchange."""

import json
from typing import Any

from crumbjar._cookies import CookieResolution


class ProxyResult:
    """Response of one proxied exchange.

    - ``status_code``: int
    - ``headers``: dict[str, str] (lowercase keys, hop-by-hop encodings removed)
    - ``content``: bytes (always available)
    - ``text``: str (decoded from content, lazy)
    - ``set_cookie``: every raw Set-Cookie value the upstream sent
    - ``jar_id``: sanitized jar id, or None when the jar was disabled
    - ``cookies``: how the outgoing Cookie header was resolved
    - ``cookie_sent_from``: "jar", "jar-empty", "manual" or "disabled"
    - ``cookie_header``: the Cookie header sent upstream ("" when none)
    """

    __slots__ = (
        "status_code",
        "headers",
        "url",
        "_content",
        "_text",
        "is_binary",
        "set_cookie",
        "jar_id",
        "cookies",
        "cookie_sent_from",
        "cookie_header",
    )

    def __init__(
        self,
        *,
        status_code: int,
        headers: dict[str, str],
        url: str,
        content: bytes = b"",
        text: str | None = None,
        is_binary: bool = False,
        set_cookie: list[str] | None = None,
        jar_id: str | None = None,
        cookies: CookieResolution | None = None,
        cookie_sent_from: str = "disabled",
        cookie_header: str = "",
    ):
        self.status_code = status_code
        self.headers = headers
        self.url = url
        if not content and text is not None:
            content = text.encode("utf-8")
        self._content = content
        self._text = text
        self.is_binary = is_binary
        self.set_cookie = set_cookie or []
        self.jar_id = jar_id
        self.cookies = cookies
        self.cookie_sent_from = cookie_sent_from
        self.cookie_header = cookie_header

    @property
    def content(self) -> bytes:
        return self._content

    @property
    def text(self) -> str:
        if self._text is None:
            self._text = self._content.decode("utf-8", errors="replace")
        return self._text

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    def json(self, **kwargs) -> Any:
        return json.loads(self.text, **kwargs)

    def __repr__(self) -> str:
        return f"<ProxyResult [{self.status_code}]>"
