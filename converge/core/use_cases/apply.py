"""
Apply use case — reconcile the infrastructure with the desired state.

The full vertical slice from user intent to audited execution:

    load config + desired state → lock state → plan → (approve)
    → execute → publish outputs → write audit entry → unlock

Destroy mode plans the teardown of everything in state instead.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from converge.adapters.registry import ProviderRegistry
from converge.core.config.loader import Workspace, resolve_workspace
from converge.core.engine.diff import compute_destroy_plan, compute_plan
from converge.core.engine.executor import Executor, RunReport
from converge.core.engine.outputs import OutputValue, publish_outputs, write_outputs
from converge.core.engine.refresh import refresh_snapshot
from converge.core.errors import ConvergeError
from converge.core.models.operation import Plan, generate_run_id
from converge.core.persistence.audit import AuditEntry, AuditWriter
from converge.core.persistence.lock import StateLock
from converge.core.persistence.state_store import StateStore
from converge.core.reliability.retry import RetryPolicy
from converge.core.use_cases.plan import load_desired, resolve_provider

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Result of an apply or destroy run."""

    run_id: str = ""
    command: str = "apply"
    plan: Plan | None = None
    report: RunReport | None = None
    outputs: list[OutputValue] = field(default_factory=list)
    workspace: Workspace | None = None
    aborted: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and (self.report is None or self.report.all_ok)

    def to_dict(self) -> dict:
        result: dict = {"run_id": self.run_id, "command": self.command}
        if self.error:
            result["error"] = self.error
        if self.aborted:
            result["aborted"] = True
        if self.plan:
            result["plan"] = self.plan.to_dict()
        if self.report:
            result["report"] = self.report.to_dict()
        if self.outputs:
            result["outputs"] = {o.name: o.to_dict() for o in self.outputs}
        return result


def run_apply(
    config_path: Path | None = None,
    cli_vars: Mapping[str, Any] | None = None,
    destroy: bool = False,
    refresh: bool = False,
    concurrency: int | None = None,
    approve: Callable[[Plan], bool] | None = None,
    registry: ProviderRegistry | None = None,
    retry: RetryPolicy | None = None,
    cancel: threading.Event | None = None,
) -> ApplyResult:
    """Plan and execute under the state lock.

    Args:
        config_path: Optional explicit path to converge.yml.
        cli_vars: Variable overrides from ``--var``.
        destroy: Tear down every resource in state.
        refresh: Reconcile the snapshot with the provider before planning.
        concurrency: Override ``executor.concurrency`` from the config.
        approve: Called with the plan before executing; returning False
            aborts the run. None means auto-approve.
        registry: Optional pre-configured provider registry.
        retry: Optional retry policy (default: from config).
        cancel: Event that stops scheduling new operations once set.

    Returns:
        ApplyResult with the plan, run report and published outputs.
    """
    result = ApplyResult(run_id=generate_run_id(), command="destroy" if destroy else "apply")

    try:
        workspace = resolve_workspace(config_path)
        result.workspace = workspace
        config = workspace.config

        # Teardown works without a desired-state file; it only adds prevent_destroy
        desired = None
        if not destroy or workspace.desired_path.is_file():
            desired = load_desired(workspace, cli_vars)
        provider = resolve_provider(workspace, registry)
        policy = retry or RetryPolicy.from_settings(config.retry)

        lock = StateLock(workspace.lock_path, run_id=result.run_id, stale_after=config.lock.stale_after)
        with lock:
            store = StateStore(workspace.state_path)
            store.load()
            snapshot = store.snapshot()
            if refresh and snapshot:
                snapshot = refresh_snapshot(snapshot, provider, policy, declared=() if destroy else desired)

            if destroy:
                plan = compute_destroy_plan(desired, snapshot)
            else:
                assert desired is not None
                plan = compute_plan(desired, snapshot, config.mutable)
            result.plan = plan

            if not plan.has_changes and not destroy:
                logger.info("No changes. Infrastructure matches the desired state.")

            if plan.has_changes and approve is not None and not approve(plan):
                result.aborted = True
                return result

            executor = Executor(
                store,
                provider,
                retry=policy,
                concurrency=concurrency or config.executor.concurrency,
            )
            report = executor.run(plan, cancel=cancel)
            report.run_id = result.run_id
            result.report = report

            result.outputs = publish_outputs(desired.outputs if desired else [], report, store)
            try:
                write_outputs(result.outputs, workspace.outputs_path)
            except OSError as e:
                logger.error("Failed to write outputs to %s: %s", workspace.outputs_path, e)

            _write_audit(workspace, result, store.serial)

    except ConvergeError as e:
        logger.debug("%s failed: %s", result.command, e)
        result.error = str(e)

    return result


def _write_audit(workspace: Workspace, result: ApplyResult, serial: int) -> None:
    report = result.report
    assert report is not None and result.plan is not None
    entry = AuditEntry(
        run_id=result.run_id,
        command=result.command,
        status=report.status,
        plan_summary=result.plan.summary(),
        committed=report.committed,
        failed=report.failed,
        skipped=report.skipped,
        duration_ms=report.duration_ms,
        errors={
            name: outcome.error
            for name, outcome in report.outcomes.items()
            if outcome.error
        },
        state_serial=serial,
        context={
            "project": workspace.config.name,
            "provider": workspace.config.provider.name,
            "plan_id": result.plan.plan_id,
        },
    )
    AuditWriter(workspace.audit_path).write(entry)
