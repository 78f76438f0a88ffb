"""
Validate use case — check converge.yml and the desired state, report issues.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from converge.adapters.registry import build_registry
from converge.core.config.loader import Workspace, resolve_workspace
from converge.core.engine.diff import mutable_attributes
from converge.core.errors import ConfigError, ValidationError
from converge.core.models.resource import DesiredState
from converge.core.use_cases.plan import load_desired


@dataclass
class ValidateResult:
    """Result of configuration and desired-state validation."""

    valid: bool = False
    workspace: Workspace | None = None
    desired: DesiredState | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": (
                str(self.workspace.config_path)
                if self.workspace and self.workspace.config_path
                else None
            ),
            "errors": self.errors,
            "warnings": self.warnings,
            "resources": self.resources,
            "resource_count": len(self.desired) if self.desired else 0,
            "output_count": len(self.desired.outputs) if self.desired else 0,
            "order": self.desired.order if self.desired else [],
        }


def check_desired(
    config_path: Path | None = None,
    cli_vars: Mapping[str, Any] | None = None,
) -> ValidateResult:
    """Validate the project configuration and desired state.

    Args:
        config_path: Optional explicit path to converge.yml.
        cli_vars: Variable overrides from ``--var``.

    Returns:
        ValidateResult with validation status and any issues.
    """
    result = ValidateResult()

    try:
        workspace = resolve_workspace(config_path)
        result.workspace = workspace
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    config = workspace.config
    if workspace.config_path is None:
        result.warnings.append("No converge.yml found; using defaults.")

    registry = build_registry(config.provider, workspace.state_dir)
    if registry.get(config.provider.name) is None:
        result.errors.append(
            f"Unknown provider '{config.provider.name}' "
            f"(available: {', '.join(sorted(registry.list_providers()))})"
        )

    if workspace.vars_file is not None and not workspace.vars_file.is_file():
        result.errors.append(f"Vars file not found: {config.vars_file}")
        return result

    try:
        desired = load_desired(workspace, cli_vars)
        result.desired = desired
    except ValidationError as e:
        result.errors.append(str(e))
        result.resources = e.resources
        return result

    # Semantic checks
    if not desired.resources:
        result.warnings.append("No resources declared. Apply would destroy everything in state.")

    known_kinds = set(mutable_attributes(config.mutable))
    for decl in desired.ordered():
        if decl.kind not in known_kinds:
            result.warnings.append(
                f"Resource '{decl.name}' has kind '{decl.kind}' with no mutable attributes "
                "configured; every change will replace it."
            )
        missing = [k for k in decl.lifecycle.ignore_changes if k not in decl.attributes]
        if missing:
            result.warnings.append(
                f"Resource '{decl.name}' ignores changes to undeclared attributes: {', '.join(missing)}"
            )

    result.valid = len(result.errors) == 0
    return result
