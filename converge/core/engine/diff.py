"""
Diff engine — desired state vs. state snapshot → ordered operations.

For each declared resource, in dependency order:

    no record                               → create
    fingerprint matches                     → no-op
    only mutable attributes changed         → update (in place)
    anything else changed (incl. source)    → replace (destroy, then create)

Every record whose name is no longer declared becomes a destroy.
Orphan destroys come first, dependents before their dependencies.
An orphan that a declared resource still depends on (per its record)
waits for that resource and is listed after it.

Replace wins over update when a change mixes mutable and immutable
attributes.  A renamed resource is a destroy of the old name and a
create of the new one.

The engine only reads the snapshot; it never mutates it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from converge.core.engine.graph import reverse_dependency_order
from converge.core.errors import ValidationError
from converge.core.models.operation import Operation, OperationKind, Plan
from converge.core.models.resource import DesiredState, ResourceDeclaration
from converge.core.models.state import StateRecord
from converge.core.models.value import (
    UNKNOWN,
    contains_unknown,
    fingerprint,
    get_path,
    interpolate,
)

logger = logging.getLogger(__name__)

# Attributes a provider can change on a live resource, per kind.
# Anything not listed forces a replace.
DEFAULT_MUTABLE: dict[str, frozenset[str]] = {
    "virtual-machine": frozenset(
        {"cores", "sockets", "memory", "balloon", "description", "tags", "onboot", "agent"}
    ),
}


def mutable_attributes(
    overrides: Mapping[str, Iterable[str]] | None = None,
) -> dict[str, frozenset[str]]:
    """Default mutable subsets with per-kind overrides applied."""
    merged = dict(DEFAULT_MUTABLE)
    for kind, attrs in (overrides or {}).items():
        merged[kind] = frozenset(attrs)
    return merged


def compute_plan(
    desired: DesiredState,
    snapshot: Mapping[str, StateRecord],
    mutable: Mapping[str, Iterable[str]] | None = None,
) -> Plan:
    """Compute the operations that reconcile ``snapshot`` with ``desired``.

    Args:
        desired: Validated desired-state graph.
        snapshot: Current state records, keyed by logical name.
        mutable: Per-kind mutable attribute overrides.

    Returns:
        Plan with orphan destroys first, then one operation per declared
        resource in topological order, then destroys of orphans a
        declared resource still depends on.

    Raises:
        ValidationError: when a change would destroy a resource with
            ``prevent_destroy`` or a reference cannot be resolved.
    """
    subsets = mutable_attributes(mutable)
    plan = Plan()
    destroys = _orphan_destroys(desired, snapshot)

    planned: dict[str, Operation] = {}
    for decl in desired.ordered():
        planned[decl.name] = _plan_resource(decl, snapshot.get(decl.name), planned, snapshot, subsets)

    early, late = _split_held_destroys(destroys, list(planned), snapshot)
    plan.operations.extend(early)
    plan.operations.extend(planned.values())
    plan.operations.extend(late)

    summary = plan.summary()
    logger.info(
        "Plan: %d to create, %d to update, %d to replace, %d to destroy, %d unchanged",
        summary["create"],
        summary["update"],
        summary["replace"],
        summary["destroy"],
        summary["no-op"],
    )
    return plan


def compute_destroy_plan(
    desired: DesiredState | None,
    snapshot: Mapping[str, StateRecord],
) -> Plan:
    """Plan the teardown of every managed resource."""
    if desired is not None:
        protected = [
            name for name in snapshot
            if (decl := desired.get(name)) is not None and decl.lifecycle.prevent_destroy
        ]
        if protected:
            raise ValidationError(
                f"Refusing to destroy resources with prevent_destroy: {', '.join(sorted(protected))}",
                resources=protected,
            )
    plan = Plan()
    plan.operations.extend(_orphan_destroys(DesiredState(), snapshot))
    return plan


# ── Per-resource decision ───────────────────────────────────────────


def _plan_resource(
    decl: ResourceDeclaration,
    record: StateRecord | None,
    planned: Mapping[str, Operation],
    snapshot: Mapping[str, StateRecord],
    subsets: Mapping[str, frozenset[str]],
) -> Operation:
    attributes = _apply_ignore_changes(decl, record)
    lookup = _plan_lookup(decl.name, planned, snapshot)
    view = interpolate(attributes, lookup)
    source = interpolate(decl.source, lookup) if decl.source else None

    op = Operation(
        kind=OperationKind.CREATE,
        name=decl.name,
        resource_kind=decl.kind,
        declaration=decl,
        prior=record,
        attributes=attributes,
        planned=view,
        wait_for=list(decl.dependencies),
    )

    if record is None:
        op.changed = sorted(view)
        op.reason = "not in state"
        return op

    if not contains_unknown(view) and source is not UNKNOWN:
        if fingerprint(decl.kind, source, view) == record.fingerprint:
            op.kind = OperationKind.NOOP
            return op

    changed = _changed_keys(record.desired, view)
    identity_changed = []
    if decl.kind != record.kind:
        identity_changed.append("kind")
    if source is UNKNOWN or source != record.source:
        identity_changed.append("source")

    op.changed = sorted(changed)
    if not changed and not identity_changed:
        # Fingerprint differs only through stored formatting; nothing to do
        op.kind = OperationKind.NOOP
        return op

    immutable = sorted(set(changed) - subsets.get(decl.kind, frozenset()))
    if identity_changed or immutable:
        if decl.lifecycle.prevent_destroy:
            raise ValidationError(
                f"Resource '{decl.name}' has prevent_destroy but its change to "
                f"{', '.join(identity_changed + immutable)} requires replacement",
                resources=[decl.name],
            )
        op.kind = OperationKind.REPLACE
        op.changed = sorted(set(changed) | set(identity_changed))
        op.reason = f"forces replacement: {', '.join(identity_changed + immutable)}"
        return op

    op.kind = OperationKind.UPDATE
    op.reason = f"in-place: {', '.join(op.changed)}"
    return op


def _apply_ignore_changes(decl: ResourceDeclaration, record: StateRecord | None) -> dict[str, Any]:
    """Keep the recorded value of ignored attributes once a resource exists."""
    attributes = dict(decl.attributes)
    if record is None:
        return attributes
    for key in decl.lifecycle.ignore_changes:
        if key in record.desired:
            attributes[key] = record.desired[key]
        else:
            attributes.pop(key, None)
    return attributes


def _changed_keys(before: Mapping[str, Any], after: Mapping[str, Any]) -> list[str]:
    keys = set(before) | set(after)
    return [
        k for k in keys
        if k not in before or k not in after or contains_unknown(after[k]) or before[k] != after[k]
    ]


def _plan_lookup(
    owner: str,
    planned: Mapping[str, Operation],
    snapshot: Mapping[str, StateRecord],
):
    """Resolve ``${resource.path}`` as well as can be known before apply."""

    def lookup(resource: str, path: str) -> Any:
        op = planned.get(resource)
        if op is None:
            # Loader guarantees declared targets are planned first
            raise ValidationError(
                f"'{owner}' references '{resource}' which is not planned before it",
                resources=[owner],
            )

        root = path.split(".", 1)[0]
        if root in op.planned:
            try:
                return get_path(op.planned, path)
            except KeyError:
                return UNKNOWN if contains_unknown(op.planned[root]) else _missing(owner, resource, path)

        if op.kind in (OperationKind.CREATE, OperationKind.REPLACE):
            return UNKNOWN

        record = snapshot.get(resource)
        if record is None:
            return UNKNOWN
        try:
            return get_path(record.attributes, path)
        except KeyError:
            return _missing(owner, resource, path)

    return lookup


def _missing(owner: str, resource: str, path: str) -> Any:
    raise ValidationError(
        f"'{owner}' references '{resource}.{path}', which '{resource}' does not have",
        resources=[owner],
    )


# ── Orphans ─────────────────────────────────────────────────────────


def _orphan_destroys(
    desired: DesiredState,
    snapshot: Mapping[str, StateRecord],
) -> list[Operation]:
    orphans = [name for name in sorted(snapshot) if name not in desired]
    if not orphans:
        return []

    deps = {name: snapshot[name].dependencies for name in orphans}
    ordered = reverse_dependency_order(orphans, deps)
    orphan_set = set(orphans)

    ops = []
    for name in ordered:
        record = snapshot[name]
        dependents = [
            other for other in orphans
            if name in snapshot[other].dependencies and other != name
        ]
        ops.append(
            Operation(
                kind=OperationKind.DESTROY,
                name=name,
                resource_kind=record.kind,
                prior=record,
                planned=dict(record.desired),
                changed=[],
                wait_for=[d for d in dependents if d in orphan_set],
                reason="no longer declared",
            )
        )
    return ops


def _split_held_destroys(
    destroys: list[Operation],
    declared: list[str],
    snapshot: Mapping[str, StateRecord],
) -> tuple[list[Operation], list[Operation]]:
    """Order orphan destroys against declared resources that still use them.

    A declared resource whose record depends on an orphan is updated or
    replaced before the orphan goes away.  Destroys that must wait for a
    declared resource, directly or through another orphan, move behind
    the declared operations.
    """
    early: list[Operation] = []
    late: list[Operation] = []
    deferred: set[str] = set()
    for op in destroys:
        holders = [
            name for name in declared
            if (record := snapshot.get(name)) is not None and op.name in record.dependencies
        ]
        op.wait_for.extend(holders)
        if holders or deferred.intersection(op.wait_for):
            if holders:
                logger.debug("Destroy of %s waits for %s", op.name, ", ".join(holders))
            late.append(op)
            deferred.add(op.name)
        else:
            early.append(op)
    return early, late
