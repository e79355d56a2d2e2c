"""Profile discovery and configuration loading."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..config import DeckSettings
from ..errors import AlreadyExistsError, NotFoundError
from ..storage.profile_store import list_profiles
from .models import ProfileConfig

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"


class ProfileLoadError(RuntimeError):
    """Raised when a profile's config file cannot be parsed."""


def _validate_name(name: str) -> str:
    normalized = name.strip()
    if not normalized or "/" in normalized or "\\" in normalized or normalized.startswith("."):
        raise ProfileLoadError(f"Invalid profile name '{name}'")
    return normalized


class ProfileLoader:
    """Manage profile directories under a single root."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def list_profiles(self) -> list[str]:
        return list_profiles(self._root)

    def exists(self, name: str) -> bool:
        return (self._root / _validate_name(name)).is_dir()

    def create_profile(self, name: str) -> Path:
        """Create an empty profile directory."""

        path = self._root / _validate_name(name)
        if path.exists():
            raise AlreadyExistsError(f"Profile '{name}' already exists")
        path.mkdir(parents=True)
        logger.info("Created profile", extra={"profile": name, "path": str(path)})
        return path

    def load_config(self, name: str) -> ProfileConfig:
        """Read ``config.yaml`` for a profile; a missing file means no overrides."""

        path = self._root / _validate_name(name) / CONFIG_FILE
        if not path.exists():
            return ProfileConfig()

        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ProfileLoadError(f"Failed to parse YAML in {path}: {exc}") from exc

        if document is None:
            return ProfileConfig()
        if not isinstance(document, dict):
            raise ProfileLoadError(f"{path} must contain a mapping of settings")

        try:
            return ProfileConfig.model_validate(document)
        except ValidationError as exc:
            raise ProfileLoadError(f"Profile config validation error in {path}: {exc}") from exc

    def resolve_settings(self, settings: DeckSettings, name: str | None = None) -> DeckSettings:
        """Return ``settings`` with the profile's overrides applied."""

        profile = _validate_name(name or settings.profile)
        if profile != settings.profile and not self.exists(profile):
            raise NotFoundError(f"Profile '{profile}' not found under {self._root}")
        overrides = self.load_config(profile).overrides()
        if overrides:
            logger.debug("Applying profile overrides", extra={"profile": profile, "keys": sorted(overrides)})
        return settings.model_copy(update={**overrides, "profile": profile})


__all__ = ["CONFIG_FILE", "ProfileLoadError", "ProfileLoader"]
