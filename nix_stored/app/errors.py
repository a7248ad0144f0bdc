"""Exceptions raised by the cache core.

Routes translate store errors into responses; auth errors are mapped to 401 by
the exception handlers registered in ``main.create_app``.
"""
from pathlib import Path
from typing import Optional


class NixStoredError(Exception):
    """Base class for all expected nix-stored failures."""


class ConfigError(NixStoredError):
    """Settings could not be resolved at startup."""


class InvalidObjectKey(NixStoredError):
    def __init__(self, component: str, value: str):
        super().__init__(f"Invalid {component}: {value!r}")
        self.component = component
        self.value = value


class ObjectNotFound(NixStoredError):
    def __init__(self, path: Path):
        super().__init__(f"No object at {path}")
        self.path = path


class StoreIOError(NixStoredError):
    """Any filesystem failure other than absence."""

    def __init__(self, path: Path, cause: Optional[BaseException] = None):
        super().__init__(f"I/O failure on {path}: {cause}")
        self.path = path
        self.cause = cause


class TransferCancelled(NixStoredError):
    """The client went away before its transfer could start."""


class AuthError(NixStoredError):
    pass


class AuthMalformed(AuthError):
    """The Authorization header is missing or is not valid HTTP Basic."""


class AuthRejected(AuthError):
    """Credentials were supplied but match no configured pair."""
