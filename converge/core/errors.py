"""
Error taxonomy for the reconciler.

The core only raises these; the CLI layer decides how to render them.

    ConvergeError
    ├── ConfigError          converge.yml missing or invalid
    ├── ValidationError      bad desired-state graph (fatal before any provider call)
    ├── ProviderError        provider call failed (transient → retried, permanent → fails the op)
    ├── CorruptStateError    persisted state unreadable (fatal, never auto-repaired)
    ├── StateLockError       another run holds the state lock
    └── PartialApplyError    one or more operations failed after retries
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from converge.core.engine.executor import RunReport


class ConvergeError(Exception):
    """Base class for all reconciler errors."""


class ConfigError(ConvergeError):
    """Raised when converge.yml is missing or invalid."""


class ValidationError(ConvergeError):
    """Raised when the desired state cannot be turned into a valid graph.

    ``resources`` names the offending declarations so the CLI can point
    at them.
    """

    def __init__(self, message: str, resources: list[str] | None = None):
        super().__init__(message)
        self.resources = sorted(set(resources or []))


class ProviderError(ConvergeError):
    """Raised by a provider when an action fails.

    Transient errors (timeouts, busy locks on the platform side) are
    retried by the retry policy.  Permanent errors fail the operation
    immediately.
    """

    def __init__(self, message: str, transient: bool = False, resource: str | None = None):
        super().__init__(message)
        self.transient = transient
        self.resource = resource


class CorruptStateError(ConvergeError):
    """Raised when the state file cannot be parsed or has an unknown schema."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class StateLockError(ConvergeError):
    """Raised when the state lock is held by another live run."""

    def __init__(self, message: str, holder: dict | None = None):
        super().__init__(message)
        self.holder = holder or {}


class PartialApplyError(ConvergeError):
    """Raised when a run finished with failed resources.

    Carries the full run report: committed, failed and skipped resources.
    """

    def __init__(self, report: RunReport):
        failed = ", ".join(report.failed) or "-"
        skipped = ", ".join(report.skipped) or "-"
        super().__init__(
            f"Apply incomplete: {len(report.committed)} committed, "
            f"failed: {failed}; skipped: {skipped}"
        )
        self.report = report
