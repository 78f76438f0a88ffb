"""
Executor — applies a plan against a provider, committing as it goes.

Flow per operation:
    wait for dependencies to commit → provider call (with retries)
    → wait until ready → commit record to the state store

Operations on resources that share no dependency edge run concurrently
on a bounded worker pool.  A dependency's commit always happens before
any dependent starts.

Per-resource state machine for one run::

    pending → in_progress → committed | failed
    pending → skipped         (a dependency failed, or the run was cancelled)

A failure never rolls back what was committed: the state store reflects
exactly the operations that succeeded, and the next run resumes from
there.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from converge.adapters.base import Provider
from converge.core.errors import ConvergeError, PartialApplyError, ProviderError
from converge.core.models.operation import Operation, OperationKind, Plan, generate_run_id
from converge.core.models.state import StateRecord
from converge.core.models.value import fingerprint, get_path, interpolate
from converge.core.persistence.state_store import StateStore
from converge.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ResourceStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    FAILED = "failed"
    SKIPPED = "skipped"


_TERMINAL = (ResourceStatus.COMMITTED, ResourceStatus.FAILED, ResourceStatus.SKIPPED)


@dataclass
class ResourceOutcome:
    """What happened to one resource during a run."""

    name: str
    operation: OperationKind
    status: ResourceStatus = ResourceStatus.PENDING
    error: str | None = None
    reason: str = ""
    started_at: str | None = None
    ended_at: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "operation": self.operation.value,
            "status": self.status.value,
            "error": self.error,
            "reason": self.reason,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RunReport:
    """Result of executing a plan: every resource ends committed, failed or skipped."""

    run_id: str = ""
    plan_id: str = ""
    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    cancelled: bool = False
    duration_ms: int = 0

    def _with(self, status: ResourceStatus) -> list[str]:
        return [name for name, o in self.outcomes.items() if o.status == status]

    @property
    def committed(self) -> list[str]:
        return self._with(ResourceStatus.COMMITTED)

    @property
    def failed(self) -> list[str]:
        return self._with(ResourceStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with(ResourceStatus.SKIPPED)

    @property
    def changed(self) -> list[str]:
        """Committed resources that actually went through a provider action."""
        return [
            name for name, o in self.outcomes.items()
            if o.status == ResourceStatus.COMMITTED and o.operation != OperationKind.NOOP
        ]

    @property
    def all_ok(self) -> bool:
        return not self.failed and not self.skipped

    @property
    def status(self) -> str:
        if self.all_ok:
            return "ok"
        if self.cancelled and not self.failed:
            return "cancelled"
        if self.committed:
            return "partial"
        return "failed"

    def status_of(self, name: str) -> ResourceStatus | None:
        outcome = self.outcomes.get(name)
        return outcome.status if outcome else None

    def raise_for_failures(self) -> None:
        """Raise PartialApplyError unless every resource committed."""
        if not self.all_ok:
            raise PartialApplyError(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
            "committed": self.committed,
            "failed": self.failed,
            "skipped": self.skipped,
            "resources": [o.to_dict() for o in self.outcomes.values()],
        }


class Executor:
    """Applies plans. The state store's sole writer.

    Args:
        store: State store (caller holds its lock).
        provider: Provider all operations are dispatched to.
        retry: Retry/backoff policy for provider calls and readiness waits.
        concurrency: Maximum operations in flight at once.
    """

    def __init__(
        self,
        store: StateStore,
        provider: Provider,
        retry: RetryPolicy | None = None,
        concurrency: int = 1,
    ):
        self._store = store
        self._provider = provider
        self._retry = retry or RetryPolicy()
        self._concurrency = max(1, concurrency)

    def run(self, plan: Plan, cancel: threading.Event | None = None) -> RunReport:
        """Execute every operation of ``plan``; never raises for per-resource failures."""
        start = time.monotonic()
        report = RunReport(run_id=generate_run_id(), plan_id=plan.plan_id)
        for op in plan:
            report.outcomes[op.name] = ResourceOutcome(name=op.name, operation=op.kind)

        pending = list(plan.operations)
        in_flight: dict[Future[None], Operation] = {}

        with ThreadPoolExecutor(
            max_workers=self._concurrency, thread_name_prefix="converge"
        ) as pool:
            while pending or in_flight:
                if cancel is not None and cancel.is_set() and pending:
                    report.cancelled = True
                    for op in pending:
                        self._skip(report, op, "run cancelled before this operation started")
                    pending.clear()

                progressed = False
                for op in list(pending):
                    statuses = [report.status_of(dep) for dep in op.wait_for]
                    blocked = [
                        dep for dep, st in zip(op.wait_for, statuses, strict=True)
                        if st in (ResourceStatus.FAILED, ResourceStatus.SKIPPED)
                    ]
                    if blocked:
                        pending.remove(op)
                        progressed = True
                        self._skip(report, op, f"dependency {', '.join(blocked)} did not commit")
                        continue
                    if any(st is not None and st not in _TERMINAL for st in statuses):
                        continue

                    if op.kind == OperationKind.NOOP:
                        pending.remove(op)
                        progressed = True
                        self._commit_noop(report, op)
                        continue
                    if len(in_flight) >= self._concurrency:
                        continue

                    pending.remove(op)
                    progressed = True
                    outcome = report.outcomes[op.name]
                    outcome.status = ResourceStatus.IN_PROGRESS
                    outcome.started_at = _now_iso()
                    in_flight[pool.submit(self._apply, op)] = op

                if not in_flight:
                    if pending and not progressed:
                        # Circular wait: nothing can ever start
                        for op in pending:
                            self._skip(report, op, "circular wait between operations")
                        pending.clear()
                    continue

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    op = in_flight.pop(future)
                    self._finish(report, op, future)

        report.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Run %s finished: %d committed, %d failed, %d skipped",
            report.run_id,
            len(report.committed),
            len(report.failed),
            len(report.skipped),
        )
        return report

    # ── Bookkeeping ──────────────────────────────────────────────

    def _finish(self, report: RunReport, op: Operation, future: Future[None]) -> None:
        outcome = report.outcomes[op.name]
        outcome.ended_at = _now_iso()
        outcome.duration_ms = _elapsed_ms(outcome.started_at, outcome.ended_at)
        try:
            future.result()
        except ConvergeError as e:
            outcome.status = ResourceStatus.FAILED
            outcome.error = str(e)
            logger.error("✗ %s %s: %s", op.kind.value, op.name, e)
            return
        except OSError as e:
            outcome.status = ResourceStatus.FAILED
            outcome.error = f"state write failed: {e}"
            logger.error("✗ %s %s: state write failed: %s", op.kind.value, op.name, e)
            return
        outcome.status = ResourceStatus.COMMITTED
        logger.info("✓ %s %s (%dms)", op.kind.value, op.name, outcome.duration_ms)

    def _skip(self, report: RunReport, op: Operation, reason: str) -> None:
        outcome = report.outcomes[op.name]
        outcome.status = ResourceStatus.SKIPPED
        outcome.reason = reason
        logger.warning("⊘ %s %s: %s", op.kind.value, op.name, reason)

    def _commit_noop(self, report: RunReport, op: Operation) -> None:
        """No provider call; only refresh recorded dependencies if they drifted."""
        outcome = report.outcomes[op.name]
        record = self._store.get(op.name)
        if record is not None and op.declaration is not None:
            deps = op.declaration.dependencies
            if record.dependencies != deps:
                record.dependencies = deps
                try:
                    self._store.put(op.name, record)
                except OSError as e:
                    outcome.status = ResourceStatus.FAILED
                    outcome.error = f"state write failed: {e}"
                    return
        outcome.status = ResourceStatus.COMMITTED

    # ── Operations (worker threads) ──────────────────────────────

    def _apply(self, op: Operation) -> None:
        logger.debug("→ %s %s", op.kind.value, op.name)
        if op.kind == OperationKind.CREATE:
            self._create(op)
        elif op.kind == OperationKind.UPDATE:
            self._update(op)
        elif op.kind == OperationKind.REPLACE:
            self._destroy(op)
            self._create(op)
        elif op.kind == OperationKind.DESTROY:
            self._destroy(op)

    def _create(self, op: Operation) -> None:
        attributes, source = self._resolve(op)
        created = self._call(
            lambda: self._provider.create(op.name, op.resource_kind, attributes, source),
            f"create {op.name}",
            op.name,
        )
        resource_id = created.get("id")
        if resource_id is None:
            raise ProviderError(f"Provider returned no id for {op.name}", resource=op.name)

        observed = self._wait_ready(str(resource_id), op.name)
        record = StateRecord(
            name=op.name,
            kind=op.resource_kind,
            source=source,
            attributes=observed,
            desired=attributes,
            fingerprint=fingerprint(op.resource_kind, source, attributes),
            dependencies=op.declaration.dependencies if op.declaration else [],
        )
        self._store.put(op.name, record)

    def _update(self, op: Operation) -> None:
        prior = self._store.get(op.name)
        if prior is None or prior.resource_id is None:
            raise ProviderError(f"No recorded id for {op.name}; cannot update in place", resource=op.name)

        attributes, source = self._resolve(op)
        delta = {
            key: attributes.get(key)
            for key in set(prior.desired) | set(attributes)
            if prior.desired.get(key) != attributes.get(key)
        }
        resource_id = prior.resource_id
        self._call(
            lambda: self._provider.update(resource_id, delta),
            f"update {op.name}",
            op.name,
        )
        observed = self._wait_ready(resource_id, op.name)

        prior.attributes = observed
        prior.desired = attributes
        prior.source = source
        prior.fingerprint = fingerprint(op.resource_kind, source, attributes)
        if op.declaration is not None:
            prior.dependencies = op.declaration.dependencies
        prior.touch()
        self._store.put(op.name, prior)

    def _destroy(self, op: Operation) -> None:
        prior = self._store.get(op.name)
        if prior is None:
            return
        resource_id = prior.resource_id
        if resource_id is not None:
            current = self._call(
                lambda: self._provider.get(resource_id),
                f"read {op.name}",
                op.name,
            )
            if current is None:
                logger.info("%s (id %s) already gone", op.name, resource_id)
            else:
                self._call(
                    lambda: self._provider.destroy(resource_id),
                    f"destroy {op.name}",
                    op.name,
                )
                self._retry.wait_until(
                    lambda: self._call(
                        lambda: self._provider.get(resource_id), f"read {op.name}", op.name
                    ),
                    lambda attrs: attrs is None,
                    f"{op.name} to be destroyed",
                )
        self._store.delete(op.name)

    # ── Helpers ──────────────────────────────────────────────────

    def _resolve(self, op: Operation) -> tuple[dict[str, Any], str | None]:
        """Resolve resource references against committed state."""

        def lookup(resource: str, path: str) -> Any:
            record = self._store.get(resource)
            if record is None:
                raise ProviderError(
                    f"{op.name} references {resource}, which has no committed state",
                    resource=op.name,
                )
            root = path.split(".", 1)[0]
            data = record.desired if root in record.desired else record.attributes
            try:
                return get_path(data, path)
            except KeyError:
                raise ProviderError(
                    f"{op.name} references {resource}.{path}, which the provider did not report",
                    resource=op.name,
                ) from None

        attributes = interpolate(op.attributes, lookup)
        source = op.source
        if source is not None:
            source = interpolate(source, lookup)
        return attributes, source

    def _call(self, fn, description: str, name: str):
        def guarded():
            try:
                return fn()
            except ProviderError:
                raise
            except Exception as e:
                # Providers should raise ProviderError; anything else is permanent
                logger.error("Provider raised unexpectedly during %s: %s", description, e)
                raise ProviderError(f"Unexpected provider error: {e}", resource=name) from e

        return self._retry.call(guarded, description)

    def _wait_ready(self, resource_id: str, name: str) -> dict[str, Any]:
        def probe() -> dict[str, Any] | None:
            return self._call(lambda: self._provider.get(resource_id), f"read {name}", name)

        return self._retry.wait_until(
            probe,
            lambda attrs: attrs is not None and self._provider.is_ready(attrs),
            f"{name} to become ready",
        )


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _elapsed_ms(started: str | None, ended: str | None) -> int:
    if not started or not ended:
        return 0
    delta = datetime.fromisoformat(ended) - datetime.fromisoformat(started)
    return int(delta.total_seconds() * 1000)
