"""
Project configuration — loaded from converge.yml.

Everything here is optional: a directory with only an infra.yml is a
valid project running the local provider with default settings.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ProviderSettings(BaseModel):
    """Which provider to talk to, and its connection settings."""

    name: str = "local"
    settings: dict[str, Any] = Field(default_factory=dict)


class ExecutorSettings(BaseModel):
    concurrency: int = Field(default=4, ge=1, le=64)


class RetrySettings(BaseModel):
    """Bounded retry with exponential backoff, for provider calls and readiness polling."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    max_polls: int = Field(default=30, ge=1)
    timeout: float = Field(default=600.0, gt=0)


class LockSettings(BaseModel):
    stale_after: float = Field(default=3600.0, gt=0)   # seconds


class ProjectConfig(BaseModel):
    """Root project configuration."""

    version: int = 1

    name: str = "default"
    description: str = ""

    desired: str = "infra.yml"
    vars_file: str | None = None
    state_dir: str = ".converge"

    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    lock: LockSettings = Field(default_factory=LockSettings)

    # Per-kind attributes that can change without recreating the resource
    mutable: dict[str, list[str]] = Field(default_factory=dict)
