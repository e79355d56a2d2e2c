"""Configuration management for Hydra Deck."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_STATE_NAMES = {"idle", "running", "waiting_permission", "waiting_question"}
_TOOL_NAMES = {"claude", "opencode"}


class DeckSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    data_dir: Path = Field(default=Path("~/.hydra-deck"), validation_alias="HYDRA_DECK_HOME")
    profile: str = Field(default="default", validation_alias="HYDRA_DECK_PROFILE")
    log_level: str = Field(default="INFO", validation_alias="HYDRA_DECK_LOG_LEVEL")

    backend: Literal["tmux", "sandbox"] = Field(default="tmux", validation_alias="HYDRA_DECK_BACKEND")
    tmux_path: str | None = Field(default=None, validation_alias="HYDRA_DECK_TMUX_PATH")
    session_prefix: str = Field(default="hd_", validation_alias="HYDRA_DECK_SESSION_PREFIX")
    worktree_path_template: str = Field(
        default="../{repo-name}-worktrees/{branch}", validation_alias="HYDRA_DECK_WORKTREE_TEMPLATE"
    )

    poll_interval: float = Field(default=2.0, validation_alias="HYDRA_DECK_POLL_INTERVAL")
    capture_lines: int = Field(default=50, validation_alias="HYDRA_DECK_CAPTURE_LINES")
    capture_timeout: float = Field(default=3.0, validation_alias="HYDRA_DECK_CAPTURE_TIMEOUT")
    debounce_polls: int = Field(default=1, validation_alias="HYDRA_DECK_DEBOUNCE_POLLS")
    backoff_interval: float = Field(default=10.0, validation_alias="HYDRA_DECK_BACKOFF_INTERVAL")
    classifier_precedence: dict[str, list[str]] = Field(
        default_factory=dict, validation_alias="HYDRA_DECK_CLASSIFIER_PRECEDENCE"
    )

    sandbox_runtime: Literal["docker", "podman"] = Field(
        default="docker", validation_alias="HYDRA_DECK_SANDBOX_RUNTIME"
    )
    sandbox_image: str = Field(default="ubuntu:24.04", validation_alias="HYDRA_DECK_SANDBOX_IMAGE")
    sandbox_network: str | None = Field(default=None, validation_alias="HYDRA_DECK_SANDBOX_NETWORK")
    sandbox_cpu_limit: str | None = Field(default=None, validation_alias="HYDRA_DECK_SANDBOX_CPU_LIMIT")
    sandbox_memory_limit: str | None = Field(
        default=None, validation_alias="HYDRA_DECK_SANDBOX_MEMORY_LIMIT"
    )
    sandbox_pull_timeout: float | None = Field(
        default=None, validation_alias="HYDRA_DECK_SANDBOX_PULL_TIMEOUT"
    )
    sandbox_environment: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="HYDRA_DECK_SANDBOX_ENV"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "HYDRA_DECK_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("profile")
    @classmethod
    def _normalize_profile(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or "/" in normalized or normalized.startswith("."):
            raise ValueError("HYDRA_DECK_PROFILE must be a plain directory name")
        return normalized

    @field_validator("poll_interval", "capture_timeout", "backoff_interval")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Poll, capture and backoff intervals must be > 0")
        return value

    @field_validator("sandbox_pull_timeout")
    @classmethod
    def _validate_pull_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("HYDRA_DECK_SANDBOX_PULL_TIMEOUT must be > 0 when set")
        return value

    @field_validator("capture_lines")
    @classmethod
    def _validate_capture_lines(cls, value: int) -> int:
        if value < 1:
            raise ValueError("HYDRA_DECK_CAPTURE_LINES must be >= 1")
        return value

    @field_validator("debounce_polls")
    @classmethod
    def _validate_debounce_polls(cls, value: int) -> int:
        if value < 0:
            raise ValueError("HYDRA_DECK_DEBOUNCE_POLLS must be >= 0")
        return value

    @field_validator("classifier_precedence", mode="before")
    @classmethod
    def _parse_precedence(cls, value):
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            value = json.loads(value)
        if not isinstance(value, dict):
            raise ValueError("HYDRA_DECK_CLASSIFIER_PRECEDENCE must map tool names to state lists")
        for tool, states in value.items():
            if tool not in _TOOL_NAMES:
                raise ValueError(
                    f"Unknown tool '{tool}' in HYDRA_DECK_CLASSIFIER_PRECEDENCE; expected one of {sorted(_TOOL_NAMES)}"
                )
            unknown = [state for state in states if state not in _STATE_NAMES]
            if unknown:
                raise ValueError(f"Unknown states {unknown} in precedence for '{tool}'")
        return value

    @field_validator("sandbox_environment", mode="before")
    @classmethod
    def _parse_sandbox_environment(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(os.pathsep) if part.strip())
        raise ValueError("HYDRA_DECK_SANDBOX_ENV must be a list of names or a path-separated string")

    @property
    def profiles_dir(self) -> Path:
        return self.data_dir / "profiles"


@lru_cache(maxsize=1)
def get_settings() -> DeckSettings:
    """Return cached settings instance."""

    settings = DeckSettings()
    settings.data_dir = settings.data_dir.expanduser().resolve()
    return settings


__all__ = ["DeckSettings", "get_settings"]
