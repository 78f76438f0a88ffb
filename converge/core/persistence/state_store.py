"""
State store — durable record of what the reconciler has provisioned.

State is stored as JSON in <state_dir>/state.json.  Every mutation
rewrites the whole document (write to temp file in the same directory,
then rename over the target), so a crash between two ``put`` calls
never loses a previously committed record.

An unreadable file is never silently replaced: it raises
CorruptStateError and waits for an operator.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from pydantic import ValidationError as SchemaError

from converge.core.errors import CorruptStateError
from converge.core.models.state import STATE_SCHEMA, StateDocument, StateRecord

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "state.json"


def default_state_path(state_dir: Path) -> Path:
    """Get the state file path inside a state directory."""
    return state_dir / DEFAULT_STATE_FILE


class StateStore:
    """Owns the state records of one workspace.

    The diff engine reads a ``snapshot()``; the executor is the only
    writer (``put`` / ``delete``).  Methods are safe to call from the
    executor's worker threads.
    """

    def __init__(self, path: Path):
        self._path = path
        self._doc: StateDocument | None = None
        self._mutex = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def exists(self) -> bool:
        return self._path.is_file()

    @property
    def serial(self) -> int:
        return self._document().serial

    @property
    def lineage(self) -> str:
        return self._document().lineage

    # ── Reads ────────────────────────────────────────────────────

    def load(self) -> dict[str, StateRecord]:
        """(Re)read the state file. Empty on first run.

        Raises:
            CorruptStateError: if the file cannot be parsed or has an
                unknown schema identifier.
        """
        with self._mutex:
            self._doc = self._read()
            return dict(self._doc.records)

    def get(self, name: str) -> StateRecord | None:
        with self._mutex:
            record = self._document().records.get(name)
            return record.model_copy(deep=True) if record else None

    def names(self) -> list[str]:
        with self._mutex:
            return sorted(self._document().records)

    def snapshot(self) -> dict[str, StateRecord]:
        """Deep copy of all records, for read-only planning."""
        with self._mutex:
            return {
                name: record.model_copy(deep=True)
                for name, record in self._document().records.items()
            }

    # ── Writes ───────────────────────────────────────────────────

    def put(self, name: str, record: StateRecord) -> None:
        """Insert or overwrite a record and persist atomically."""
        with self._mutex:
            doc = self._document()
            previous = doc.records.get(name)
            doc.records[name] = record.model_copy(deep=True)
            try:
                self._write(doc)
            except OSError:
                # Keep memory consistent with disk
                if previous is None:
                    doc.records.pop(name, None)
                else:
                    doc.records[name] = previous
                raise
        logger.debug("Committed state record '%s' (serial %d)", name, doc.serial)

    def delete(self, name: str) -> bool:
        """Remove a record. Returns False if it did not exist."""
        with self._mutex:
            doc = self._document()
            previous = doc.records.pop(name, None)
            if previous is None:
                return False
            try:
                self._write(doc)
            except OSError:
                doc.records[name] = previous
                raise
        logger.debug("Removed state record '%s' (serial %d)", name, doc.serial)
        return True

    # ── Internals ────────────────────────────────────────────────

    def _document(self) -> StateDocument:
        if self._doc is None:
            self._doc = self._read()
        return self._doc

    def _read(self) -> StateDocument:
        if not self._path.is_file():
            logger.info("No state file at %s — starting empty", self._path)
            return StateDocument()

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise CorruptStateError(f"State file {self._path} is not valid JSON: {e}", str(self._path)) from e
        except OSError as e:
            raise CorruptStateError(f"Cannot read state file {self._path}: {e}", str(self._path)) from e

        if not isinstance(data, dict):
            raise CorruptStateError(f"State file {self._path} is not a JSON object", str(self._path))

        schema = data.get("schema")
        if schema != STATE_SCHEMA:
            raise CorruptStateError(
                f"State file {self._path} has schema {schema!r}, expected {STATE_SCHEMA!r}",
                str(self._path),
            )

        try:
            doc = StateDocument.model_validate(data)
        except SchemaError as e:
            raise CorruptStateError(f"Invalid state file {self._path}: {e}", str(self._path)) from e

        for name, record in doc.records.items():
            if record.name != name:
                raise CorruptStateError(
                    f"State record key '{name}' does not match record name '{record.name}'",
                    str(self._path),
                )

        logger.debug("Loaded %d state records from %s (serial %d)", len(doc.records), self._path, doc.serial)
        return doc

    def _write(self, doc: StateDocument) -> None:
        serial, updated_at = doc.serial, doc.updated_at
        doc.touch()
        try:
            self._replace(doc)
        except OSError as e:
            doc.serial, doc.updated_at = serial, updated_at
            logger.error("Failed to save state to %s: %s", self._path, e)
            raise

    def _replace(self, doc: StateDocument) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        data = doc.model_dump(mode="json", by_alias=True)
        content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".state_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
