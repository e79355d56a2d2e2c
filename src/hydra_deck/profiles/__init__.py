"""Profile management utilities."""

from .loader import CONFIG_FILE, ProfileLoadError, ProfileLoader
from .models import ProfileConfig

__all__ = ["CONFIG_FILE", "ProfileConfig", "ProfileLoadError", "ProfileLoader"]
