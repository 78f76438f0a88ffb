"""
Health checker — aggregate workspace health from components.

Reports whether the state store is readable, whether the state lock is
free, held or stale, whether the configured provider answers, and how
the last recorded run ended.
Used by the CLI ``health`` command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from converge.adapters.base import Provider
from converge.core.errors import CorruptStateError
from converge.core.persistence.audit import AuditWriter
from converge.core.persistence.lock import StateLock
from converge.core.persistence.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ComponentHealth:
    """Health of a single component."""

    name: str
    status: str = "unknown"  # healthy, degraded, unhealthy, unknown
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class SystemHealth:
    """Aggregate health of the workspace."""

    status: str = "healthy"
    timestamp: str = ""
    components: list[ComponentHealth] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(UTC).isoformat()

    def add(self, component: ComponentHealth) -> None:
        self.components.append(component)
        self._recalculate()

    def _recalculate(self) -> None:
        statuses = [c.status for c in self.components]
        if any(s == "unhealthy" for s in statuses):
            self.status = "unhealthy"
        elif any(s == "degraded" for s in statuses):
            self.status = "degraded"
        elif all(s == "healthy" for s in statuses):
            self.status = "healthy"
        else:
            self.status = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "components": [c.to_dict() for c in self.components],
        }


def check_state_store(store: StateStore) -> ComponentHealth:
    """Check that the state file parses."""
    if not store.exists:
        return ComponentHealth(
            name="state_store",
            status="healthy",
            message="No state yet (nothing provisioned)",
            details={"path": str(store.path)},
        )
    try:
        records = store.load()
    except CorruptStateError as e:
        return ComponentHealth(
            name="state_store",
            status="unhealthy",
            message=str(e),
            details={"path": str(store.path)},
        )
    return ComponentHealth(
        name="state_store",
        status="healthy",
        message=f"{len(records)} resources tracked (serial {store.serial})",
        details={"path": str(store.path), "serial": store.serial, "lineage": store.lineage},
    )


def check_state_lock(lock: StateLock) -> ComponentHealth:
    """Check whether a run currently holds the state lock."""
    info = lock.holder()
    if info is None:
        return ComponentHealth(name="state_lock", status="healthy", message="Unlocked")
    if lock.is_stale(info):
        return ComponentHealth(
            name="state_lock",
            status="degraded",
            message="Stale lock (will be overridden by the next run)",
            details=info,
        )
    return ComponentHealth(
        name="state_lock",
        status="healthy",
        message=f"Held by run {info.get('run_id') or '?'} (pid {info.get('pid')})",
        details=info,
    )


def check_provider(provider: Provider) -> ComponentHealth:
    """Check that the provider answers."""
    try:
        available = provider.is_available()
    except Exception as e:
        logger.debug("Provider %s availability check raised: %s", provider.name, e)
        available = False
    if available:
        return ComponentHealth(
            name="provider",
            status="healthy",
            message=f"{provider.name} available",
            details={"provider": provider.name},
        )
    return ComponentHealth(
        name="provider",
        status="unhealthy",
        message=f"{provider.name} unavailable",
        details={"provider": provider.name},
    )


def check_last_run(audit: AuditWriter) -> ComponentHealth:
    """Check the outcome of the most recent apply or destroy."""
    recent = audit.read_recent(1)
    if not recent:
        return ComponentHealth(name="last_run", status="healthy", message="No runs recorded")
    entry = recent[-1]
    details = {
        "run_id": entry.run_id,
        "command": entry.command,
        "timestamp": entry.timestamp,
        "failed": entry.failed,
        "skipped": entry.skipped,
    }
    if entry.status == "ok":
        return ComponentHealth(
            name="last_run",
            status="healthy",
            message=f"{entry.command} {entry.run_id}: {len(entry.committed)} committed",
            details=details,
        )
    return ComponentHealth(
        name="last_run",
        status="degraded",
        message=(
            f"{entry.command} {entry.run_id} ended {entry.status}: "
            f"{len(entry.failed)} failed, {len(entry.skipped)} skipped"
        ),
        details=details,
    )


def check_system_health(
    store: StateStore | None = None,
    lock: StateLock | None = None,
    provider: Provider | None = None,
    audit: AuditWriter | None = None,
) -> SystemHealth:
    """Run all health checks and return aggregate status."""
    health = SystemHealth()

    if store is not None:
        health.add(check_state_store(store))

    if lock is not None:
        health.add(check_state_lock(lock))

    if provider is not None:
        health.add(check_provider(provider))

    if audit is not None:
        health.add(check_last_run(audit))

    return health
