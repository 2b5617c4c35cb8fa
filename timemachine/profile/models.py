"""
Configuration profile and device identity models.

A profile is the operator's selection of configuration categories.
It is independent of any snapshot and has no history of its own.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class Category(str, Enum):
    """Selectable configuration categories."""
    NETWORK = "network"
    FIREWALL = "firewall"
    DHCP = "dhcp"
    WIRELESS = "wireless"
    SYSTEM = "system"
    DROPBEAR = "dropbear"
    UHTTPD = "uhttpd"
    PACKAGES = "packages"
    ALL = "all"

    @property
    def is_sensitive(self) -> bool:
        """Categories that can carry credentials (WiFi passphrases)."""
        return self in (Category.WIRELESS, Category.ALL)

    @property
    def is_generated(self) -> bool:
        """Categories captured from command output rather than a file."""
        return self is Category.PACKAGES


class Schedule(str, Enum):
    """Automatic backup schedule."""
    NEVER = "never"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


CONFIG_DIR = "etc/config"
PACKAGE_LIST_PATH = "package-list.txt"

DEFAULT_CATEGORIES = (
    Category.NETWORK,
    Category.FIREWALL,
    Category.PACKAGES,
    Category.DHCP,
    Category.SYSTEM,
)


def category_path(category: Category) -> Optional[str]:
    """
    Logical path captured for a single-file category.

    Returns None for ``ALL``, which expands to the whole config directory.
    """
    if category is Category.ALL:
        return None
    if category is Category.PACKAGES:
        return PACKAGE_LIST_PATH
    return f"{CONFIG_DIR}/{category.value}"


@dataclass
class ConfigurationProfile:
    """
    Selected file categories and automatic backup schedule.

    Attributes:
        categories: Selected categories, in selection order
        schedule: How often the scheduler triggers a backup
    """
    categories: list[Category] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    schedule: Schedule = Schedule.NEVER

    def __post_init__(self):
        seen: list[Category] = []
        for category in self.categories:
            category = Category(category)
            if category not in seen:
                seen.append(category)
        self.categories = seen
        self.schedule = Schedule(self.schedule)

    @property
    def has_sensitive(self) -> bool:
        """Check if any selected category may hold secrets."""
        return any(c.is_sensitive for c in self.categories)

    @property
    def sensitive_categories(self) -> list[Category]:
        return [c for c in self.categories if c.is_sensitive]

    def select(self, category: Category) -> None:
        category = Category(category)
        if category not in self.categories:
            self.categories.append(category)

    def deselect(self, category: Category) -> None:
        category = Category(category)
        if category in self.categories:
            self.categories.remove(category)

    def to_dict(self) -> dict[str, str]:
        """Convert to the key-value listing used on disk."""
        return {
            "BACKUP_FILES": " ".join(c.value for c in self.categories),
            "BACKUP_SCHEDULE": self.schedule.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "ConfigurationProfile":
        """
        Create from a key-value listing.

        Tolerates the quoted form written by older installs
        (``"network" "firewall"``) and ignores unknown categories.
        """
        raw = data.get("BACKUP_FILES")
        if raw is None:
            categories = list(DEFAULT_CATEGORIES)
        else:
            categories = []
            for token in raw.replace('"', " ").split():
                try:
                    categories.append(Category(token))
                except ValueError:
                    continue

        try:
            schedule = Schedule(data.get("BACKUP_SCHEDULE", "never"))
        except ValueError:
            schedule = Schedule.NEVER

        return cls(categories=categories, schedule=schedule)


def sanitize_device_name(name: str) -> str:
    """Normalize a device label for use in paths, URLs and commit authors."""
    name = name.replace(" ", "-").lower()
    return re.sub(r"[^a-z0-9-]", "", name)


@dataclass(frozen=True)
class DeviceIdentity:
    """
    Stable device label and the key pair used to reach the mirror.

    Only the location of the private key is held here. The key itself
    never leaves the device.
    """
    name: str
    key_path: Path
    email: str = "timemachine@openwrt.local"

    def __post_init__(self):
        if not self.name:
            raise ValueError("Device name must not be empty")
        object.__setattr__(self, 'key_path', Path(self.key_path))

    @property
    def slug(self) -> str:
        return sanitize_device_name(self.name)

    @property
    def public_key_path(self) -> Path:
        return self.key_path.with_name(self.key_path.name + ".pub")

    @property
    def has_key(self) -> bool:
        return self.key_path.exists()

    @property
    def signature(self) -> str:
        """Author line recorded on every snapshot."""
        return f"{self.name} <{self.email}>"
