"""
Provider base — the contract between the executor and a platform.

The executor only talks to infrastructure through this interface,
never directly to a platform API.  Reads are expected to be
idempotent; writes are best-effort and the executor layers its own
retry and readiness polling on top.

Failures are reported by raising ProviderError, flagged transient
(worth retrying) or permanent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

# Values of the ``status`` attribute that mean "usable"
READY_STATUSES = frozenset({"running", "ready", "active"})


class Provider(ABC):
    """Abstract base class for all providers.

    To add a platform:
        1. Subclass Provider
        2. Implement name, is_available, create, update, destroy, get
        3. Register it in the ProviderRegistry
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The provider identifier (e.g., 'local', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the platform can be reached. Fast, never raises."""

    @abstractmethod
    def create(
        self,
        name: str,
        kind: str,
        attributes: dict[str, Any],
        source: str | None = None,
    ) -> dict[str, Any]:
        """Create a resource; return its attributes including a provider ``id``."""

    @abstractmethod
    def update(self, resource_id: str, delta: dict[str, Any]) -> dict[str, Any]:
        """Apply an attribute delta in place (None value = unset); return attributes."""

    @abstractmethod
    def destroy(self, resource_id: str) -> None:
        """Destroy a resource. Destroying an unknown id is not an error."""

    @abstractmethod
    def get(self, resource_id: str) -> dict[str, Any] | None:
        """Current attributes of a resource, or None if it does not exist."""

    def is_ready(self, attributes: dict[str, Any]) -> bool:
        """Whether a resource is usable. Resources without a status are ready."""
        status = attributes.get("status")
        return status is None or str(status).lower() in READY_STATUSES

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
