"""
Output publisher — exposes selected attributes after a run.

Each output binding names a resource and an attribute path.  A binding
resolves only if its resource committed in the run (or, outside a run,
has a record in the state store); anything else publishes as
unavailable with a reason, never as a stale or guessed value.

Published values land in <state_dir>/outputs.json for whatever
configures the machines next.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from converge.core.engine.executor import ResourceStatus, RunReport
from converge.core.models.resource import OutputBinding
from converge.core.models.value import get_path
from converge.core.persistence.state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_OUTPUTS_FILE = "outputs.json"


@dataclass
class OutputValue:
    """A resolved (or unavailable) output."""

    name: str
    value: Any = None
    available: bool = False
    reason: str = ""
    resource: str = ""
    path: str = ""
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "available": self.available,
            "reason": self.reason,
            "resource": self.resource,
            "path": self.path,
            "description": self.description,
        }


def publish_outputs(
    bindings: list[OutputBinding],
    report: RunReport | None,
    store: StateStore,
) -> list[OutputValue]:
    """Resolve output bindings against committed state.

    Args:
        bindings: Output bindings from the desired state.
        report: The run that just finished, or None to publish
            whatever the store currently holds.
        store: State store holding the committed records.

    Returns:
        One OutputValue per binding, in declaration order.
    """
    values = []
    for binding in bindings:
        out = OutputValue(
            name=binding.name,
            resource=binding.resource,
            path=binding.path,
            description=binding.description,
        )
        values.append(out)

        if report is not None:
            status = report.status_of(binding.resource)
            if status is None:
                out.reason = f"{binding.resource} was not part of this run"
                continue
            if status != ResourceStatus.COMMITTED:
                out.reason = f"{binding.resource} {status.value}"
                continue

        record = store.get(binding.resource)
        if record is None:
            out.reason = f"{binding.resource} is not provisioned"
            continue

        root = binding.path.split(".", 1)[0]
        data = record.desired if root in record.desired else record.attributes
        try:
            out.value = get_path(data, binding.path)
        except KeyError:
            out.reason = f"{binding.resource} has no attribute {binding.path}"
            continue
        out.available = True

    unavailable = [v.name for v in values if not v.available]
    if unavailable:
        logger.warning("Outputs unavailable: %s", ", ".join(unavailable))
    return values


def write_outputs(values: list[OutputValue], path: Path) -> None:
    """Write outputs as a JSON map name → value record (atomic)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {v.name: v.to_dict() for v in values}
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".outputs_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
    logger.debug("Wrote %d outputs to %s", len(values), path)


def read_outputs(path: Path) -> dict[str, dict[str, Any]]:
    """Read a previously written outputs file. Empty if absent or unreadable."""
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Cannot read outputs file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}
