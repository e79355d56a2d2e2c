"""Per-profile configuration overrides."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

StateName = Literal["idle", "running", "waiting_permission", "waiting_question"]
ToolName = Literal["claude", "opencode"]


class ProfileConfig(BaseModel):
    """Contents of ``<profile>/config.yaml``; every key is optional."""

    model_config = ConfigDict(extra="forbid")

    backend: Literal["tmux", "sandbox"] | None = None
    session_prefix: str | None = None
    poll_interval: float | None = Field(default=None, gt=0)
    capture_lines: int | None = Field(default=None, ge=1)
    capture_timeout: float | None = Field(default=None, gt=0)
    debounce_polls: int | None = Field(default=None, ge=0)
    backoff_interval: float | None = Field(default=None, gt=0)
    classifier_precedence: dict[ToolName, list[StateName]] | None = None

    sandbox_runtime: Literal["docker", "podman"] | None = None
    sandbox_image: str | None = None
    sandbox_network: str | None = None
    sandbox_cpu_limit: str | None = None
    sandbox_memory_limit: str | None = None
    sandbox_pull_timeout: float | None = Field(default=None, gt=0)
    worktree_path_template: str | None = None
    sandbox_environment: tuple[str, ...] | None = None

    @field_validator("sandbox_cpu_limit", "sandbox_memory_limit", mode="before")
    @classmethod
    def _stringify_limits(cls, value: Any):
        # YAML reads "cpu_limit: 2" as an int.
        if isinstance(value, (int, float)):
            return str(value)
        return value

    def overrides(self) -> dict[str, Any]:
        """Return only the keys the profile actually sets."""

        return self.model_dump(exclude_none=True)


__all__ = ["ProfileConfig", "StateName", "ToolName"]
