import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from .errors import ConfigError

BASE_DIR = Path(__file__).resolve().parent.parent

BYTES_PER_MB = 1024 * 1024
DEFAULT_PORT = 3000
DEFAULT_TIMEZONE = "Asia/Tokyo"
DEFAULT_AUTH_REALM = "Access to the staging site"
DEFAULT_FETCH_TIMEOUT = 30.0
DEFAULT_ADMIN_RATE_LIMIT = "30 per minute"

REQUIRED_KEYS = ("SITE_BASEURL", "ADMIN_USER", "ADMIN_PASS", "UPLOAD_LIMIT_MB")

logger = logging.getLogger("imagehost.config")


def _resolve_env_path(env: Mapping[str, str], env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = env.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _positive_float(env: Mapping[str, str], key: str) -> Optional[float]:
    raw_value = env.get(key)
    if raw_value is None or raw_value.strip() == "":
        return None
    try:
        value = float(raw_value)
    except ValueError as error:
        raise ConfigError(f"{key} must be a number, got {raw_value!r}") from error
    # Reject NaN and infinity along with non-positive sizes.
    if math.isnan(value) or math.isinf(value) or value <= 0:
        raise ConfigError(f"{key} must be a positive number, got {raw_value!r}")
    return value


def _parse_port(env: Mapping[str, str]) -> int:
    raw_value = env.get("PORT")
    if not raw_value:
        return DEFAULT_PORT
    try:
        port = int(raw_value)
    except ValueError as error:
        raise ConfigError(f"PORT must be an integer, got {raw_value!r}") from error
    if not 0 < port < 65536:
        raise ConfigError(f"PORT out of range: {port}")
    return port


def _parse_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw_value = env.get(key)
    if raw_value is None:
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    logger.warning("Invalid value for %s: %s. Using default: %s", key, raw_value, default)
    return default


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once at start-up and never mutated."""

    site_baseurl: str
    admin_user: str
    admin_pass: str
    upload_limit_mb: float
    storage_dir: Path
    port: int = DEFAULT_PORT
    logs_dir: Optional[Path] = None
    log_level: str = "INFO"
    timezone: str = DEFAULT_TIMEZONE
    auth_realm: str = DEFAULT_AUTH_REALM
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    fetch_limit_mb: Optional[float] = None
    rate_limit_enabled: bool = True
    admin_rate_limit: str = DEFAULT_ADMIN_RATE_LIMIT

    @property
    def upload_limit_bytes(self) -> int:
        return int(self.upload_limit_mb * BYTES_PER_MB)

    @property
    def fetch_limit_bytes(self) -> Optional[int]:
        if self.fetch_limit_mb is None:
            return None
        return int(self.fetch_limit_mb * BYTES_PER_MB)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from *env* (``os.environ`` after loading ``.env``).

        Raises ConfigError naming the first missing or malformed variable.
        """

        if env is None:
            load_dotenv()
            env = os.environ

        for key in REQUIRED_KEYS:
            if not (env.get(key) or "").strip():
                raise ConfigError(f"{key} is not set")

        logs_value = env.get("IMAGEHOST_LOGS_DIR")
        if logs_value is None:
            logs_dir: Optional[Path] = (BASE_DIR / "logs").resolve()
        elif logs_value.strip() == "":
            logs_dir = None
        else:
            logs_dir = Path(logs_value).expanduser().resolve()

        timezone = env.get("IMAGEHOST_TIMEZONE") or DEFAULT_TIMEZONE
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ConfigError(f"IMAGEHOST_TIMEZONE names an unknown time zone: {timezone!r}") from error

        return cls(
            site_baseurl=env["SITE_BASEURL"].strip().rstrip("/"),
            admin_user=env["ADMIN_USER"],
            admin_pass=env["ADMIN_PASS"],
            upload_limit_mb=_positive_float(env, "UPLOAD_LIMIT_MB"),
            storage_dir=_resolve_env_path(env, "IMAGEHOST_STORAGE_DIR", BASE_DIR / "storage"),
            port=_parse_port(env),
            logs_dir=logs_dir,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            timezone=timezone,
            auth_realm=env.get("AUTH_REALM") or DEFAULT_AUTH_REALM,
            fetch_timeout=_positive_float(env, "URL2IMAGE_TIMEOUT") or DEFAULT_FETCH_TIMEOUT,
            fetch_limit_mb=_positive_float(env, "URL2IMAGE_LIMIT_MB"),
            rate_limit_enabled=_parse_bool(env, "RATELIMIT_ENABLED", True),
            admin_rate_limit=env.get("ADMIN_RATE_LIMIT") or DEFAULT_ADMIN_RATE_LIMIT,
        )
