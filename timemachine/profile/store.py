"""
Profile persistence.

The profile is stored as a small key-value file so it stays readable
(and editable) with nothing more than a shell on the device.
"""

import logging
import os
import tempfile
from pathlib import Path

from config.settings import parse_key_value_file

from .models import ConfigurationProfile

logger = logging.getLogger(__name__)


def load_profile(path: Path) -> ConfigurationProfile:
    """
    Load the configuration profile.

    Args:
        path: Profile file location

    Returns:
        Stored profile, or the default selection when no file exists
    """
    if not path.exists():
        logger.debug(f"No profile at {path}, using defaults")
        return ConfigurationProfile()

    return ConfigurationProfile.from_dict(parse_key_value_file(path))


def save_profile(path: Path, profile: ConfigurationProfile) -> None:
    """
    Persist the profile atomically.

    Writes a temporary file beside the target and renames it into place.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [f'{key}="{value}"' for key, value in profile.to_dict().items()]

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write("\n".join(lines) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    logger.info(f"Saved profile: {profile.to_dict()['BACKUP_FILES']}")
