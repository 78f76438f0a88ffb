"""
State use cases — inspect and repair the state store.

    list          every tracked resource with its id and address
    show          one full record
    rm            forget a resource without destroying it
    force-unlock  remove a lock left behind by a crashed run
    output        current outputs, resolved from committed state
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from converge.core.config.loader import Workspace, resolve_workspace
from converge.core.engine.outputs import OutputValue, publish_outputs
from converge.core.errors import ConvergeError
from converge.core.models.operation import generate_run_id
from converge.core.models.state import StateRecord
from converge.core.persistence.lock import StateLock
from converge.core.persistence.state_store import StateStore
from converge.core.use_cases.plan import load_desired

logger = logging.getLogger(__name__)


@dataclass
class StateResult:
    """Result of a state inspection or repair command."""

    records: list[StateRecord] = field(default_factory=list)
    serial: int = 0
    lineage: str = ""
    removed: list[str] = field(default_factory=list)
    lock_holder: dict[str, Any] | None = None
    workspace: Workspace | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            return result
        result["serial"] = self.serial
        result["lineage"] = self.lineage
        result["resources"] = [r.model_dump(mode="json") for r in self.records]
        if self.removed:
            result["removed"] = self.removed
        if self.lock_holder is not None:
            result["lock_holder"] = self.lock_holder
        return result


def list_state(config_path: Path | None = None) -> StateResult:
    """All tracked records, sorted by name."""
    result = StateResult()
    try:
        workspace = resolve_workspace(config_path)
        result.workspace = workspace
        store = StateStore(workspace.state_path)
        records = store.load()
        result.records = [records[name] for name in sorted(records)]
        result.serial = store.serial
        result.lineage = store.lineage
    except ConvergeError as e:
        result.error = str(e)
    return result


def show_state(name: str, config_path: Path | None = None) -> StateResult:
    """One record by logical name."""
    result = list_state(config_path)
    if result.error:
        return result
    matches = [r for r in result.records if r.name == name]
    if not matches:
        result.error = f"No resource named '{name}' in state"
        result.records = []
        return result
    result.records = matches
    return result


def remove_state(names: list[str], config_path: Path | None = None) -> StateResult:
    """Forget resources. The provider is not touched; the resources keep running."""
    result = StateResult()
    try:
        workspace = resolve_workspace(config_path)
        result.workspace = workspace
        lock = StateLock(
            workspace.lock_path,
            run_id=generate_run_id("state-rm"),
            stale_after=workspace.config.lock.stale_after,
        )
        with lock:
            store = StateStore(workspace.state_path)
            store.load()
            missing = [n for n in names if store.get(n) is None]
            if missing:
                result.error = f"Not in state: {', '.join(missing)}"
                return result
            for name in names:
                store.delete(name)
                result.removed.append(name)
                logger.warning("Removed '%s' from state; it is no longer managed", name)
            result.serial = store.serial
            result.lineage = store.lineage
    except ConvergeError as e:
        result.error = str(e)
    except OSError as e:
        result.error = f"Failed to write state: {e}"
    return result


def force_unlock(config_path: Path | None = None) -> StateResult:
    """Remove the state lock regardless of who holds it."""
    result = StateResult()
    try:
        workspace = resolve_workspace(config_path)
        result.workspace = workspace
    except ConvergeError as e:
        result.error = str(e)
        return result

    lock = StateLock(workspace.lock_path)
    holder = lock.force_unlock()
    if holder is None:
        result.error = "State is not locked"
        return result
    result.lock_holder = holder
    return result


@dataclass
class OutputResult:
    """Current outputs of a workspace."""

    outputs: list[OutputValue] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {o.name: o.to_dict() for o in self.outputs}


def get_outputs(name: str | None = None, config_path: Path | None = None) -> OutputResult:
    """Resolve output bindings against the committed state."""
    result = OutputResult()
    try:
        workspace = resolve_workspace(config_path)
        desired = load_desired(workspace)
        store = StateStore(workspace.state_path)
        store.load()
        bindings = desired.outputs
        if name is not None:
            bindings = [b for b in bindings if b.name == name]
            if not bindings:
                result.error = f"No output named '{name}'"
                return result
        result.outputs = publish_outputs(bindings, None, store)
    except ConvergeError as e:
        result.error = str(e)
    return result
