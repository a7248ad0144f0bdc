"""Two-tier HTTP Basic authentication for cache operations.

Uploads need the write user; everything else except the cache info document
accepts either user. A tier whose credentials are not configured does not add
a requirement of its own:

* no users configured: authentication is off
* only a write user: reads are public, uploads need the write user
* only a read user: every operation, uploads included, needs the read user
"""
import enum
import logging
import secrets
from typing import FrozenSet, Optional, Tuple

from fastapi.security import HTTPBasicCredentials

from nix_stored.app.errors import AuthMalformed, AuthRejected
from nix_stored.config import Credentials

logger = logging.getLogger(__name__)


class Tier(enum.Enum):
    PUBLIC = "public"
    READ = "read"
    WRITE = "write"


PUBLIC_OPERATIONS: FrozenSet[str] = frozenset({"GetNixCacheInfo"})
WRITE_OPERATIONS: FrozenSet[str] = frozenset({"PutNarObject", "PutNarInfoObject"})


def _matches(expected: Credentials, user: str, password: str) -> bool:
    if not expected.is_set:
        return False
    user_ok = secrets.compare_digest(user.encode("utf-8"), expected.user.encode("utf-8"))
    pass_ok = secrets.compare_digest(password.encode("utf-8"), expected.password.encode("utf-8"))
    return user_ok and pass_ok


class AuthenticationPolicy:
    def __init__(self, read: Credentials, write: Credentials):
        self._read = read
        self._write = write

    @property
    def enabled(self) -> bool:
        return self._read.is_set or self._write.is_set

    @staticmethod
    def tier_for(operation_id: str) -> Tier:
        if operation_id in PUBLIC_OPERATIONS:
            return Tier.PUBLIC
        return Tier.WRITE if operation_id in WRITE_OPERATIONS else Tier.READ

    def accepted_credentials(self, operation_id: str) -> Tuple[Credentials, ...]:
        """Credential pairs that may perform the operation; empty means open."""
        tier = self.tier_for(operation_id)
        if not self.enabled or tier is Tier.PUBLIC:
            return ()
        if tier is Tier.WRITE:
            return (self._write,) if self._write.is_set else (self._read,)
        if not self._read.is_set:
            return ()
        return (self._read, self._write)

    def requires_credentials(self, operation_id: str) -> bool:
        return bool(self.accepted_credentials(operation_id))

    def authorize(self, operation_id: str, credentials: Optional[HTTPBasicCredentials]) -> None:
        """Check the request's decoded Basic credentials for ``operation_id``.

        Raises:
            AuthMalformed: credentials are required but none were sent
            AuthRejected: the credentials match no accepted pair
        """
        accepted = self.accepted_credentials(operation_id)
        if not accepted:
            return
        if credentials is None:
            raise AuthMalformed("Missing Basic authorization header")
        user, password = credentials.username, credentials.password
        if not any(_matches(creds, user, password) for creds in accepted):
            logger.warning(f"Rejected credentials for user {user!r} on {operation_id}")
            raise AuthRejected("Wrong credentials")
