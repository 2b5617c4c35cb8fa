"""
Configuration settings with environment variable loading.

Values come from a key-value config file (default ~/.timemachine/config)
and environment variables, with the environment taking precedence.
Never log or expose private key material in any output.
"""

import os
import logging
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".timemachine"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class DeviceConfig:
    """Device identity configuration."""
    name: str
    key_path: Path = field(default_factory=lambda: Path.home() / ".ssh" / "id_ed25519")
    email: str = "timemachine@openwrt.local"

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("TIMEMACHINE_DEVICE_NAME is required")
        object.__setattr__(self, 'key_path', Path(self.key_path))

    def __repr__(self) -> str:
        """Only the key location is shown, never its content."""
        return f"DeviceConfig(name='{self.name}', key_path='{self.key_path}')"


@dataclass(frozen=True)
class StoreConfig:
    """Snapshot store configuration."""
    backup_dir: Path = field(default_factory=lambda: Path("/root/time-machine"))
    live_root: Path = field(default_factory=lambda: Path("/"))
    branch: str = "main"

    def __post_init__(self):
        object.__setattr__(self, 'backup_dir', Path(self.backup_dir))
        object.__setattr__(self, 'live_root', Path(self.live_root))
        if not self.branch or "/" in self.branch:
            raise ConfigurationError(f"Invalid branch name: {self.branch!r}")


@dataclass(frozen=True)
class MirrorConfig:
    """Remote mirror configuration."""
    address: Optional[str] = None
    enabled: bool = False

    def __post_init__(self):
        if self.enabled and not self.address:
            raise ConfigurationError(
                "TIMEMACHINE_MIRROR_URL is required when online backup is enabled"
            )


@dataclass(frozen=True)
class SyncConfig:
    """Sync engine configuration."""
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.max_retries < 1:
            raise ConfigurationError("TIMEMACHINE_SYNC_MAX_RETRIES must be at least 1")


@dataclass(frozen=True)
class LockConfig:
    """Advisory lock configuration."""
    path: Path = field(default_factory=lambda: DEFAULT_CONFIG_DIR / "timemachine.lock")
    stale_after_seconds: float = 600.0

    def __post_init__(self):
        object.__setattr__(self, 'path', Path(self.path))
        if self.stale_after_seconds <= 0:
            raise ConfigurationError("TIMEMACHINE_LOCK_STALE_AFTER must be positive")


@dataclass(frozen=True)
class Settings:
    """
    Application settings container.

    All configuration is loaded from the config file and environment.
    Key material is never logged or exposed.
    """
    config_dir: Path
    device: DeviceConfig
    store: StoreConfig
    mirror: MirrorConfig
    sync: SyncConfig
    lock: LockConfig
    log_level: str = "INFO"

    @property
    def profile_path(self) -> Path:
        """Location of the persisted configuration profile."""
        return self.config_dir / "profile"

    @property
    def state_database_path(self) -> Path:
        """Location of the mirror state database."""
        return self.config_dir / "sync_state.db"

    def __repr__(self) -> str:
        return (
            f"Settings(\n"
            f"  config_dir={self.config_dir},\n"
            f"  device={self.device},\n"
            f"  store={self.store},\n"
            f"  mirror={self.mirror},\n"
            f"  sync={self.sync},\n"
            f"  lock={self.lock}\n"
            f")"
        )


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """
    Load settings from environment variables.

    Loads the key-value config file first: ``env_file`` when given,
    otherwise ``$TIMEMACHINE_CONFIG_DIR/config``.

    Args:
        env_file: Optional path to a config file

    Returns:
        Configured Settings instance

    Raises:
        ConfigurationError: If required configuration is missing
    """
    config_dir = Path(os.getenv("TIMEMACHINE_CONFIG_DIR", str(DEFAULT_CONFIG_DIR)))

    if env_file is not None:
        if not env_file.exists():
            raise ConfigurationError(f"Config file not found: {env_file}")
        _load_env_file(env_file)
    elif (config_dir / "config").exists():
        _load_env_file(config_dir / "config")

    try:
        device = DeviceConfig(
            name=os.getenv("TIMEMACHINE_DEVICE_NAME", "") or socket.gethostname(),
            key_path=Path(os.path.expanduser(
                os.getenv("TIMEMACHINE_KEY_PATH", "~/.ssh/id_ed25519")
            )),
            email=os.getenv("TIMEMACHINE_DEVICE_EMAIL", "timemachine@openwrt.local"),
        )

        store = StoreConfig(
            backup_dir=Path(os.getenv("TIMEMACHINE_BACKUP_DIR", "/root/time-machine")),
            live_root=Path(os.getenv("TIMEMACHINE_LIVE_ROOT", "/")),
            branch=os.getenv("TIMEMACHINE_BRANCH", "main"),
        )

        mirror_address = os.getenv("TIMEMACHINE_MIRROR_URL", "").strip() or None
        mirror = MirrorConfig(
            address=mirror_address,
            enabled=os.getenv(
                "TIMEMACHINE_ONLINE_BACKUP", "true" if mirror_address else "false"
            ).lower() == "true",
        )

        sync = SyncConfig(
            max_retries=int(os.getenv("TIMEMACHINE_SYNC_MAX_RETRIES", "3")),
            retry_delay_seconds=float(os.getenv("TIMEMACHINE_SYNC_RETRY_DELAY", "1.0")),
            timeout_seconds=float(os.getenv("TIMEMACHINE_SYNC_TIMEOUT", "30")),
        )

        lock = LockConfig(
            path=Path(os.getenv("TIMEMACHINE_LOCK_PATH", str(config_dir / "timemachine.lock"))),
            stale_after_seconds=float(os.getenv("TIMEMACHINE_LOCK_STALE_AFTER", "600")),
        )

        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        settings = Settings(
            config_dir=config_dir,
            device=device,
            store=store,
            mirror=mirror,
            sync=sync,
            lock=lock,
            log_level=log_level,
        )

        logger.debug(f"Settings: {settings}")

        return settings

    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e


def parse_key_value_file(path: Path) -> dict[str, str]:
    """
    Parse a key-value file.

    Handles:
    - KEY=value
    - KEY="quoted value"
    - # comments
    - Empty lines
    """
    values: dict[str, str] = {}

    with open(path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()

            # Skip empty lines and comments
            if not line or line.startswith("#"):
                continue

            if "=" not in line:
                logger.warning(f"Invalid line {line_num} in {path}: no '=' found")
                continue

            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()

            if value.startswith('"') and value.endswith('"'):
                value = value[1:-1]
            elif value.startswith("'") and value.endswith("'"):
                value = value[1:-1]

            values[key] = value

    return values


def _load_env_file(path: Path) -> None:
    """Load environment variables from a key-value file."""
    logger.debug(f"Loading environment from {path}")

    for key, value in parse_key_value_file(path).items():
        # Only set if not already defined (env vars take precedence)
        if key not in os.environ:
            os.environ[key] = value
