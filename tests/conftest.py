"""Shared mock rnet objects and factories for crumbjar tests."""

import json
import time

import pytest

from crumbjar import CookieProxy, JarStore

# ---------------------------------------------------------------------------
# Mock rnet types
# ---------------------------------------------------------------------------


class MockStatus:
    def __init__(self, code: int):
        self._code = code

    def as_int(self) -> int:
        return self._code

    def is_success(self) -> bool:
        return 200 <= self._code < 300


class MockHeaderMap:
    """Mock rnet HeaderMap with bytes keys and bytes values.

    Accepts a dict or a list of (name, value) pairs; the list form can
    repeat a header, which is how several Set-Cookie values arrive.

    - keys() returns unique bytes keys
    - get()/[] returns first value only
    - get_all() returns list of all values for a key
    """

    def __init__(self, data=None):
        self._raw: dict[bytes, list[bytes]] = {}
        items = data.items() if isinstance(data, dict) else (data or [])
        for k, v in items:
            bk = k.lower().encode("ascii")
            self._raw.setdefault(bk, []).append(v.encode("utf-8"))

    def keys(self):
        return list(self._raw.keys())

    def __getitem__(self, key):
        if isinstance(key, str):
            key = key.lower().encode("ascii")
        return self._raw[key][0]

    def get(self, key):
        try:
            return self[key]
        except KeyError:
            return None

    def get_all(self, key):
        if isinstance(key, str):
            key = key.lower().encode("ascii")
        return list(self._raw.get(key, []))


class MockResponse:
    def __init__(
        self,
        status_code: int = 200,
        headers=None,
        body: str | bytes = "",
    ):
        self.status = MockStatus(status_code)
        self.headers = MockHeaderMap(headers)
        self._body = body

    def text(self):
        if isinstance(self._body, bytes):
            return self._body.decode("utf-8", errors="replace")
        return self._body

    def bytes(self):
        if isinstance(self._body, bytes):
            return self._body
        return self._body.encode("utf-8")

    def json(self):
        return json.loads(self.text())


class MockClient:
    """Mock rnet blocking client that returns responses from a sequence."""

    def __init__(self, responses: list[MockResponse | Exception]):
        self._responses = responses
        self._index = 0
        self.request_count = 0
        self.last_kwargs: dict = {}
        self.request_log: list[tuple] = []

    def request(self, method, url, **kwargs):
        self.last_kwargs = kwargs
        resp = self._responses[
            min(self._index, len(self._responses) - 1)
        ]
        self._index += 1
        self.request_count += 1
        self.request_log.append((method, url, kwargs))
        if isinstance(resp, Exception):
            raise resp
        return resp


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_proxy(responses, tmp_path, **proxy_kwargs):
    """Create a CookieProxy over a mocked client and a tmp_path store."""
    flush_delay = proxy_kwargs.pop("flush_delay", 60.0)
    store = JarStore(tmp_path / "jars", flush_delay=flush_delay)
    mock = MockClient(responses)
    proxy = CookieProxy(store, client=mock, **proxy_kwargs)
    return proxy, mock


@pytest.fixture
def store(tmp_path):
    # Long debounce: tests that want the timer to fire build their own store
    return JarStore(tmp_path / "jars", flush_delay=60.0)
