"""
Plan use case — show what apply would do, without doing it.

Loads the desired state, reads a snapshot of the state store, and runs
the diff engine.  With ``refresh`` the snapshot is first reconciled
with what the provider reports.  Nothing is written.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from converge.adapters.base import Provider
from converge.adapters.registry import ProviderRegistry, build_registry
from converge.core.config.desired import collect_variable_overrides, load_desired_state
from converge.core.config.loader import Workspace, resolve_workspace
from converge.core.engine.diff import compute_destroy_plan, compute_plan
from converge.core.engine.refresh import refresh_snapshot
from converge.core.errors import ConvergeError
from converge.core.models.operation import Plan
from converge.core.models.resource import DesiredState
from converge.core.persistence.state_store import StateStore
from converge.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class PlanResult:
    """Result of computing a plan."""

    plan: Plan | None = None
    desired: DesiredState | None = None
    workspace: Workspace | None = None
    refreshed: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            return result

        if self.workspace:
            result["project_name"] = self.workspace.config.name
            result["desired_path"] = str(self.workspace.desired_path)
        result["refreshed"] = self.refreshed
        if self.plan:
            result.update(self.plan.to_dict())
        return result


def load_desired(
    workspace: Workspace,
    cli_vars: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> DesiredState:
    """Load the workspace's desired state with all variable overrides applied."""
    overrides = collect_variable_overrides(workspace.vars_file, cli_vars, environ)
    return load_desired_state(workspace.desired_path, overrides)


def resolve_provider(workspace: Workspace, registry: ProviderRegistry | None = None) -> Provider:
    """The provider named in converge.yml."""
    if registry is None:
        registry = build_registry(workspace.config.provider, workspace.state_dir)
    return registry.resolve(workspace.config.provider.name)


def run_plan(
    config_path: Path | None = None,
    cli_vars: Mapping[str, Any] | None = None,
    refresh: bool = False,
    destroy: bool = False,
    registry: ProviderRegistry | None = None,
    retry: RetryPolicy | None = None,
) -> PlanResult:
    """Compute the plan for a workspace.

    Args:
        config_path: Optional explicit path to converge.yml.
        cli_vars: Variable overrides from ``--var``.
        refresh: Reconcile the snapshot with the provider first.
        destroy: Plan the teardown of everything in state instead.
        registry: Optional pre-configured provider registry.
        retry: Retry policy for refresh reads.

    Returns:
        PlanResult with the plan, or an error message.
    """
    result = PlanResult()

    try:
        workspace = resolve_workspace(config_path)
        result.workspace = workspace

        desired = None
        if not destroy or workspace.desired_path.is_file():
            desired = load_desired(workspace, cli_vars)
        result.desired = desired

        store = StateStore(workspace.state_path)
        store.load()
        snapshot = store.snapshot()

        if refresh and snapshot:
            provider = resolve_provider(workspace, registry)
            policy = retry or RetryPolicy.from_settings(workspace.config.retry)
            snapshot = refresh_snapshot(snapshot, provider, policy, declared=() if destroy else desired)
            result.refreshed = True

        if destroy:
            result.plan = compute_destroy_plan(desired, snapshot)
        else:
            assert desired is not None
            result.plan = compute_plan(desired, snapshot, workspace.config.mutable)

    except ConvergeError as e:
        logger.debug("Plan failed: %s", e)
        result.error = str(e)

    return result
