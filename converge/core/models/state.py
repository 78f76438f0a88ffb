"""
State records — the last-known actual state of managed resources.

Serialized by the state store as one JSON document::

    {
      "schema": "converge.state/v1",
      "serial": 7,
      "lineage": "3f0c...",
      "updated_at": "...",
      "records": {"web": {...}, "db": {...}}
    }

The schema identifier lets future loaders detect an incompatible
layout and refuse it instead of misreading it.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

STATE_SCHEMA = "converge.state/v1"


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class StateRecord(BaseModel):
    """One provisioned resource, as last committed by the executor."""

    name: str
    kind: str
    source: str | None = None

    # What the provider reported after the last successful operation,
    # including provider-assigned identifiers (id, address, node, ...)
    attributes: dict[str, Any] = Field(default_factory=dict)

    # The resolved desired attributes the resource was created/updated from
    desired: dict[str, Any] = Field(default_factory=dict)
    fingerprint: str = ""

    dependencies: list[str] = Field(default_factory=list)

    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    @property
    def resource_id(self) -> str | None:
        """Provider-assigned identifier, if the provider reported one."""
        rid = self.attributes.get("id")
        return str(rid) if rid is not None else None

    def touch(self) -> None:
        self.updated_at = _now_iso()


class StateDocument(BaseModel):
    """Root of the persisted state file."""

    model_config = ConfigDict(populate_by_name=True)

    schema_id: str = Field(default=STATE_SCHEMA, alias="schema")
    serial: int = 0
    lineage: str = Field(default_factory=lambda: uuid.uuid4().hex)
    updated_at: str = Field(default_factory=_now_iso)
    records: dict[str, StateRecord] = Field(default_factory=dict)

    def touch(self) -> None:
        """Bump serial and timestamp before a write."""
        self.serial += 1
        self.updated_at = _now_iso()
