"""Configuration profile and device identity module."""

from .models import Category, ConfigurationProfile, DeviceIdentity, Schedule
from .store import load_profile, save_profile

__all__ = [
    "Category",
    "ConfigurationProfile",
    "DeviceIdentity",
    "Schedule",
    "load_profile",
    "save_profile",
]
