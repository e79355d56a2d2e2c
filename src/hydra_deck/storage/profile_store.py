"""JSON persistence for one profile's sessions and groups."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from ..session.models import Group, Session

logger = logging.getLogger(__name__)

SESSIONS_FILE = "sessions.json"
GROUPS_FILE = "groups.json"


class ProfileStoreError(RuntimeError):
    """Raised when persisted profile data cannot be read or written."""


class ProfileStore:
    """Load and save ``sessions.json`` / ``groups.json`` for a profile.

    Both files hold an ordered JSON object keyed by record id. Saves write a
    temporary file next to the target and atomically replace it, so a crash
    mid-save leaves the previous contents intact.
    """

    def __init__(self, root: Path, profile: str) -> None:
        self._root = Path(root)
        self._profile = profile

    @property
    def profile(self) -> str:
        return self._profile

    @property
    def directory(self) -> Path:
        return self._root / self._profile

    def load(self) -> tuple[list[Session], list[Group]]:
        sessions = [
            self._validate(Session, record, SESSIONS_FILE)
            for record in self._read(SESSIONS_FILE)
        ]
        groups = [
            self._validate(Group, record, GROUPS_FILE) for record in self._read(GROUPS_FILE)
        ]
        logger.debug(
            "Loaded profile data",
            extra={"profile": self._profile, "sessions": len(sessions), "groups": len(groups)},
        )
        return sessions, groups

    def save(self, sessions: Iterable[Session], groups: Iterable[Group]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._write(SESSIONS_FILE, {session.id: session.model_dump(mode="json") for session in sessions})
        self._write(GROUPS_FILE, {group.id: group.model_dump(mode="json") for group in groups})

    def _read(self, filename: str) -> list[dict[str, Any]]:
        path = self.directory / filename
        if not path.exists():
            return []
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ProfileStoreError(f"Failed to read {path}: {exc}") from exc

        if document is None:
            return []
        if not isinstance(document, dict):
            raise ProfileStoreError(f"{path} must contain a JSON object keyed by id")

        records: list[dict[str, Any]] = []
        for key, record in document.items():
            if not isinstance(record, dict):
                raise ProfileStoreError(f"Entry '{key}' in {path} is not an object")
            if record.get("id", key) != key:
                raise ProfileStoreError(f"Entry '{key}' in {path} carries mismatched id '{record['id']}'")
            records.append({**record, "id": key})
        return records

    def _validate(self, model, record: dict[str, Any], filename: str):
        try:
            return model.model_validate(record)
        except ValidationError as exc:
            raise ProfileStoreError(
                f"Invalid record '{record.get('id')}' in {self.directory / filename}: {exc}"
            ) from exc

    def _write(self, filename: str, payload: dict[str, Any]) -> None:
        target = self.directory / filename
        fd, tmp_name = tempfile.mkstemp(prefix=f".{filename}.", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_name, target)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise ProfileStoreError(f"Failed to write {target}: {exc}") from exc


def list_profiles(root: Path) -> list[str]:
    """Return the names of every profile directory under ``root``."""

    base = Path(root)
    if not base.is_dir():
        return []
    return sorted(path.name for path in base.iterdir() if path.is_dir() and not path.name.startswith("."))


__all__ = ["GROUPS_FILE", "ProfileStore", "ProfileStoreError", "SESSIONS_FILE", "list_profiles"]
