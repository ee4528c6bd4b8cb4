"""Configuration loading for promptsync.

Credentials live in ``~/.promptsync/credentials.json`` (or under
``$PROMPTSYNC_HOME``). Environment variables override the file:

- ``PROMPTSYNC_APP_ID`` / ``PROMPTSYNC_APP_SECRET``: Feishu app credentials
- ``PROMPTSYNC_TABLE_URL``: link to the Bitable table
- ``PROMPTSYNC_API_BASE``: API root (tests and self-hosted proxies)

Tunables for a sync run come from ``SyncSettings.from_env()``.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from promptsync.types import ConfigurationError
from promptsync.validation import TableLocation, parse_table_url, validate_base_url

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://open.feishu.cn/open-apis"
MAX_BATCH_SIZE = 500  # Bitable batch endpoints reject larger payloads
SECRET_MASK = "********"


def get_promptsync_home() -> Path:
    """Directory holding credentials and the local database."""
    env_home = os.environ.get("PROMPTSYNC_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".promptsync"


def get_credentials_path() -> Path:
    return get_promptsync_home() / "credentials.json"


def get_db_path() -> Path:
    return get_promptsync_home() / "promptsync.db"


@dataclass(frozen=True)
class SyncCredentials:
    """App id/secret pair exchanged for a tenant access token."""

    app_id: str
    app_secret: str

    def __repr__(self) -> str:
        return f"SyncCredentials(app_id={self.app_id!r}, app_secret={SECRET_MASK!r})"

    def validate(self) -> None:
        if not self.app_id or not self.app_id.strip():
            raise ConfigurationError("App ID is not configured")
        if not self.app_secret or not self.app_secret.strip():
            raise ConfigurationError("App secret is not configured")


@dataclass
class SyncConfig:
    """Everything needed to reach the remote table."""

    app_id: str = ""
    app_secret: str = ""
    table_url: str = ""
    api_base: str = DEFAULT_API_BASE

    @property
    def credentials(self) -> SyncCredentials:
        return SyncCredentials(app_id=self.app_id, app_secret=self.app_secret)

    def missing(self) -> List[str]:
        """Names of required settings that are empty."""
        return [name for name in ("app_id", "app_secret", "table_url") if not getattr(self, name)]

    @property
    def is_complete(self) -> bool:
        return not self.missing()

    def table_location(self) -> TableLocation:
        return parse_table_url(self.table_url)

    def check(self) -> TableLocation:
        """Validate the whole configuration.

        Raises:
            ConfigurationError: On the first missing or malformed setting.
        """
        missing = self.missing()
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")
        if validate_base_url(self.api_base) is None:
            raise ConfigurationError(f"Refusing unsafe api_base: {self.api_base}")
        return self.table_location()

    def to_display_dict(self) -> Dict[str, Any]:
        """Configuration with the secret masked, for printing."""
        data = asdict(self)
        if data["app_secret"]:
            data["app_secret"] = SECRET_MASK
        return data


def load_credentials(path: Optional[Path] = None) -> SyncConfig:
    """Load configuration from the credentials file, then apply env overrides.

    A missing or unreadable file yields an empty configuration; callers check
    completeness with ``SyncConfig.check()``.
    """
    creds_path = path or get_credentials_path()
    stored: Dict[str, Any] = {}
    if creds_path.exists():
        try:
            with open(creds_path) as f:
                stored = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to read {creds_path}: {e}")
            stored = {}
        if not isinstance(stored, dict):
            logger.warning(f"Ignoring {creds_path}: expected a JSON object")
            stored = {}

    config = SyncConfig(
        app_id=os.environ.get("PROMPTSYNC_APP_ID") or stored.get("app_id") or "",
        app_secret=os.environ.get("PROMPTSYNC_APP_SECRET") or stored.get("app_secret") or "",
        table_url=os.environ.get("PROMPTSYNC_TABLE_URL") or stored.get("table_url") or "",
        api_base=os.environ.get("PROMPTSYNC_API_BASE") or stored.get("api_base") or DEFAULT_API_BASE,
    )
    config.api_base = config.api_base.rstrip("/")
    return config


def save_credentials(config: SyncConfig, path: Optional[Path] = None) -> Path:
    """Write configuration to the credentials file (owner read/write only)."""
    creds_path = path or get_credentials_path()
    creds_path.parent.mkdir(parents=True, exist_ok=True)
    with open(creds_path, "w") as f:
        json.dump(asdict(config), f, indent=2)
    creds_path.chmod(0o600)
    logger.debug(f"Saved credentials to {creds_path}")
    return creds_path


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not an integer")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a number")
        return default


@dataclass
class SyncSettings:
    """Tunables for one reconciliation run."""

    batch_size: int = 100
    remote_concurrency: int = 2
    timeout: float = 30.0
    max_attempts: int = 3  # list and token calls
    backoff_base: float = 0.5

    def __post_init__(self):
        self.batch_size = max(1, min(int(self.batch_size), MAX_BATCH_SIZE))
        self.remote_concurrency = max(1, int(self.remote_concurrency))
        self.max_attempts = max(1, int(self.max_attempts))
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            batch_size=_env_int("PROMPTSYNC_BATCH_SIZE", cls.batch_size),
            remote_concurrency=_env_int("PROMPTSYNC_REMOTE_CONCURRENCY", cls.remote_concurrency),
            timeout=_env_float("PROMPTSYNC_TIMEOUT", cls.timeout),
        )
