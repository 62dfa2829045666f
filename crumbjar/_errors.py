"""Typed exceptions for crumbjar."""


class CrumbJarError(Exception):
    """Base exception for all crumbjar errors."""


class TargetNotAllowed(CrumbJarError):
    """The proxy refused a target host outside its allow-list."""

    def __init__(self, url: str, allowed: list[str]):
        self.url = url
        self.allowed = allowed
        super().__init__(f"Target host not allowed: {url}")


class ConnectionFailed(CrumbJarError):
    """The upstream exchange failed before a response arrived."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Connection failed to {url}: {reason}")
