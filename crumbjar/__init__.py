"""crumbjar -- persistent cookie jars for an HTTP relay."""

import logging
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("crumbjar")
except PackageNotFoundError:
    __version__ = "0.0.0"

from crumbjar._cookies import (
    Cookie,
    CookieResolution,
    Jar,
    build_cookie_header,
    default_cookie_path,
    domain_matches,
    is_expired,
    list_cookies,
    parse_set_cookie,
    path_matches,
    resolve_cookies,
    upsert_cookie,
)
from crumbjar._errors import ConnectionFailed, CrumbJarError, TargetNotAllowed
from crumbjar._proxy import DEFAULT_TIMEOUT, CookieProxy
from crumbjar._response import ProxyResult
from crumbjar._store import (
    DEFAULT_DATA_DIR,
    DEFAULT_FLUSH_DELAY,
    FlushState,
    JarStore,
    sanitize_jar_id,
)

__all__ = [
    "__version__",
    "Cookie",
    "CookieResolution",
    "Jar",
    "parse_set_cookie",
    "upsert_cookie",
    "build_cookie_header",
    "resolve_cookies",
    "list_cookies",
    "default_cookie_path",
    "domain_matches",
    "path_matches",
    "is_expired",
    "JarStore",
    "FlushState",
    "sanitize_jar_id",
    "DEFAULT_DATA_DIR",
    "DEFAULT_FLUSH_DELAY",
    "CookieProxy",
    "ProxyResult",
    "DEFAULT_TIMEOUT",
    "CrumbJarError",
    "TargetNotAllowed",
    "ConnectionFailed",
]

# Silent by default; callers opt in via logging.getLogger("crumbjar").setLevel(...)
logging.getLogger("crumbjar").addHandler(logging.NullHandler())
