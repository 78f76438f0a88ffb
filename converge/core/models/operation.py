"""
Operations and plans — the diff engine's output, the executor's input.

An Operation is computed once, consumed exactly once by the executor,
and discarded after it succeeds or terminally fails.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from converge.core.models.resource import ResourceDeclaration
from converge.core.models.state import StateRecord
from converge.core.models.value import render


class OperationKind(StrEnum):
    """What the executor must do to a resource."""

    CREATE = "create"
    UPDATE = "update"      # in place
    REPLACE = "replace"    # destroy, then create
    DESTROY = "destroy"
    NOOP = "no-op"


# Symbols used by the CLI plan renderer
OPERATION_SYMBOLS = {
    OperationKind.CREATE: "+",
    OperationKind.UPDATE: "~",
    OperationKind.REPLACE: "-/+",
    OperationKind.DESTROY: "-",
    OperationKind.NOOP: " ",
}


@dataclass
class Operation:
    """A single planned change to one resource."""

    kind: OperationKind
    name: str
    resource_kind: str
    declaration: ResourceDeclaration | None = None
    prior: StateRecord | None = None

    # Declared attributes with ignore_changes applied; references still verbatim
    attributes: dict[str, Any] = field(default_factory=dict)
    # Plan-time view of ``attributes`` (references resolved, UNKNOWN where not yet known)
    planned: dict[str, Any] = field(default_factory=dict)

    changed: list[str] = field(default_factory=list)
    wait_for: list[str] = field(default_factory=list)
    reason: str = ""

    @property
    def source(self) -> str | None:
        if self.declaration is not None:
            return self.declaration.source
        return self.prior.source if self.prior else None

    @property
    def is_change(self) -> bool:
        return self.kind != OperationKind.NOOP

    def delta(self) -> dict[str, Any]:
        """Changed attributes and their planned values (None = removed)."""
        return {key: self.planned.get(key) for key in self.changed}

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.kind.value,
            "name": self.name,
            "kind": self.resource_kind,
            "source": self.source,
            "changed": self.changed,
            "delta": render(self.delta()) if self.kind == OperationKind.UPDATE else {},
            "planned": render(self.planned),
            "wait_for": self.wait_for,
            "reason": self.reason,
        }


@dataclass
class Plan:
    """Ordered list of operations honoring dependency order."""

    plan_id: str = field(default_factory=lambda: generate_run_id("plan"))
    operations: list[Operation] = field(default_factory=list)

    def __iter__(self):
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def get(self, name: str) -> Operation | None:
        for op in self.operations:
            if op.name == name:
                return op
        return None

    def index_of(self, name: str) -> int:
        for i, op in enumerate(self.operations):
            if op.name == name:
                return i
        raise KeyError(name)

    @property
    def changes(self) -> list[Operation]:
        return [op for op in self.operations if op.is_change]

    @property
    def has_changes(self) -> bool:
        return any(op.is_change for op in self.operations)

    def summary(self) -> dict[str, int]:
        counts = {k.value: 0 for k in OperationKind}
        for op in self.operations:
            counts[op.kind.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "summary": self.summary(),
            "operations": [op.to_dict() for op in self.operations],
        }


def generate_run_id(prefix: str = "run") -> str:
    """Generate a unique, sortable run identifier."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"{prefix}-{now}-{short}"
