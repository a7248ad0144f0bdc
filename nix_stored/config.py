"""Configuration settings for the nix-stored binary cache."""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from nix_stored.app.errors import ConfigError

logger = logging.getLogger(__name__)

# Defaults
STORE_PATH = "/var/lib/nixStored"
LISTEN_INTERFACE = "127.0.0.1:8100"
MAX_TRANSFERS = 32
LOG_LEVEL = "INFO"

ENV_PREFIX = "NIX_STORED_"

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True)
class Credentials:
    """A Basic-Auth user/password pair. An empty user means unset."""
    user: str = ""
    password: str = field(default="", repr=False)

    @property
    def is_set(self) -> bool:
        return bool(self.user)


@dataclass(frozen=True)
class Settings:
    store_path: Path = Path(STORE_PATH)
    listen_interface: str = LISTEN_INTERFACE
    user_read: Credentials = Credentials()
    user_write: Credentials = Credentials()
    log_level: int = logging.INFO
    log_file: Optional[Path] = None
    max_transfers: int = MAX_TRANSFERS

    def __post_init__(self):
        if self.max_transfers <= 0:
            raise ConfigError(f"max_transfers must be positive, got {self.max_transfers}")
        parse_listen_interface(self.listen_interface)

    @property
    def host(self) -> str:
        return parse_listen_interface(self.listen_interface)[0]

    @property
    def port(self) -> int:
        return parse_listen_interface(self.listen_interface)[1]


def parse_listen_interface(value: str) -> Tuple[str, int]:
    """Split ``host:port`` (``[v6addr]:port`` for IPv6)."""
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"Invalid listen interface: {value!r}")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigError(f"Invalid port in listen interface: {value!r}")
    if not 0 < port_number < 65536:
        raise ConfigError(f"Port out of range in listen interface: {value!r}")
    return host.strip("[]"), port_number


def parse_log_level(value: Optional[str]) -> int:
    return _LOG_LEVELS.get((value or "").upper(), logging.INFO)


def _read_credentials(env: Mapping[str, str], tier: str) -> Credentials:
    user = env.get(f"{ENV_PREFIX}USER_{tier}", "")
    passfile = env.get(f"{ENV_PREFIX}USER_{tier}_PASSFILE", "")
    if passfile:
        logger.debug(f"Reading {tier.lower()} user password file {passfile}")
        try:
            password = Path(passfile).read_text().rstrip("\r\n")
        except OSError as e:
            raise ConfigError(f"Couldn't read {tier.lower()} passfile {passfile}: {e}") from e
    else:
        password = env.get(f"{ENV_PREFIX}USER_{tier}_PASS", "")
    return Credentials(user=user, password=password)


def settings_from_env(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Resolve settings from ``NIX_STORED_*`` environment variables.

    Environment Variables:
        - NIX_STORED_PATH (default: /var/lib/nixStored)
        - NIX_STORED_LISTEN_INTERFACE (default: 127.0.0.1:8100)
        - NIX_STORED_USER_READ, NIX_STORED_USER_READ_PASS, NIX_STORED_USER_READ_PASSFILE
        - NIX_STORED_USER_WRITE, NIX_STORED_USER_WRITE_PASS, NIX_STORED_USER_WRITE_PASSFILE
        - NIX_STORED_LOG_LEVEL (DEBUG, INFO, WARNING, ERROR; default: INFO)
        - NIX_STORED_LOG_FILE (optional)
        - NIX_STORED_MAX_TRANSFERS (default: 32)

    A passfile wins over the inline password.

    Raises:
        ConfigError: a passfile is unreadable or a value is invalid
    """
    env = os.environ if environ is None else environ

    max_transfers_raw = env.get(f"{ENV_PREFIX}MAX_TRANSFERS") or str(MAX_TRANSFERS)
    try:
        max_transfers = int(max_transfers_raw)
    except ValueError:
        raise ConfigError(f"Invalid {ENV_PREFIX}MAX_TRANSFERS: {max_transfers_raw!r}")

    log_file = env.get(f"{ENV_PREFIX}LOG_FILE")

    return Settings(
        store_path=Path(env.get(f"{ENV_PREFIX}PATH") or STORE_PATH),
        listen_interface=env.get(f"{ENV_PREFIX}LISTEN_INTERFACE") or LISTEN_INTERFACE,
        user_read=_read_credentials(env, "READ"),
        user_write=_read_credentials(env, "WRITE"),
        log_level=parse_log_level(env.get(f"{ENV_PREFIX}LOG_LEVEL", LOG_LEVEL)),
        log_file=Path(log_file) if log_file else None,
        max_transfers=max_transfers,
    )
