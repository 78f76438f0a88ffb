"""
Audit ledger — append-only history of apply and destroy runs.

One NDJSON line per run: what was attempted, what committed, what
failed, and why.  Entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_FILE = "audit.ndjson"


class AuditEntry(BaseModel):
    """A single run in the ledger."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    command: str = ""               # apply, destroy

    status: str = ""                # ok, partial, failed, cancelled
    plan_summary: dict[str, int] = Field(default_factory=dict)
    committed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    errors: dict[str, str] = Field(default_factory=dict)
    state_serial: int = 0
    context: dict[str, Any] = Field(default_factory=dict)


class AuditWriter:
    """Append-only ledger writer.

    A failed append is logged, never raised: the run itself has
    already happened and its state is committed.
    """

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        """Append one entry to the ledger."""
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Audit entry written: %s/%s", entry.command, entry.run_id)
        except OSError as e:
            logger.error("Failed to write audit entry: %s", e)

    def read_all(self) -> list[AuditEntry]:
        """All entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        entries = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(AuditEntry.model_validate(json.loads(line)))
                except (json.JSONDecodeError, SchemaError) as e:
                    logger.warning("Skipping corrupt audit entry at line %d: %s", line_num, e)
        return entries

    def read_recent(self, n: int = 20) -> list[AuditEntry]:
        return self.read_all()[-n:]
