"""Tests for ProxyResult wrapper and typed errors."""

import datetime

import pytest

from crumbjar._errors import ConnectionFailed, CrumbJarError, TargetNotAllowed
from crumbjar._proxy import _normalize_timeout
from crumbjar._response import ProxyResult


class TestProxyResult:
    def test_ok_true_for_2xx(self):
        resp = ProxyResult(status_code=204, headers={}, url="https://example.com")
        assert resp.ok is True

    def test_ok_false_for_301(self):
        resp = ProxyResult(status_code=301, headers={}, url="https://example.com")
        assert resp.ok is False

    def test_content_derived_from_text(self):
        resp = ProxyResult(
            status_code=200, text="héllo", headers={}, url="https://example.com"
        )
        assert resp.content == "héllo".encode("utf-8")

    def test_text_decoded_lazily(self):
        resp = ProxyResult(
            status_code=200,
            content=b"caf\xc3\xa9 \xff",
            headers={},
            url="https://example.com",
        )
        assert resp.text == "café �"

    def test_content_type(self):
        resp = ProxyResult(
            status_code=200,
            headers={"content-type": "text/plain"},
            url="https://example.com",
        )
        assert resp.content_type == "text/plain"

    def test_defaults(self):
        resp = ProxyResult(status_code=200, headers={}, url="https://example.com")
        assert resp.set_cookie == []
        assert resp.jar_id is None
        assert resp.cookies is None
        assert resp.cookie_sent_from == "disabled"
        assert resp.cookie_header == ""

    def test_json(self):
        resp = ProxyResult(
            status_code=200, text='{"a": [1, 2]}', headers={}, url="https://example.com"
        )
        assert resp.json() == {"a": [1, 2]}


class TestNormalizeTimeout:
    def test_timedelta_passthrough(self):
        td = datetime.timedelta(seconds=3)
        assert _normalize_timeout(td) is td

    def test_number(self):
        assert _normalize_timeout(2) == datetime.timedelta(seconds=2)

    def test_string_number(self):
        assert _normalize_timeout("0.5") == datetime.timedelta(seconds=0.5)


class TestErrors:
    def test_hierarchy(self):
        assert issubclass(TargetNotAllowed, CrumbJarError)
        assert issubclass(ConnectionFailed, CrumbJarError)

    def test_target_not_allowed_message(self):
        err = TargetNotAllowed("https://evil.com/", ["a.com"])
        assert str(err) == "Target host not allowed: https://evil.com/"
        assert err.allowed == ["a.com"]

    def test_connection_failed_message(self):
        err = ConnectionFailed("https://e.com/", "reset")
        assert str(err) == "Connection failed to https://e.com/: reset"

    def test_catchable_as_base(self):
        with pytest.raises(CrumbJarError):
            raise ConnectionFailed("https://e.com/", "reset")
