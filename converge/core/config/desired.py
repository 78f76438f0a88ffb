"""
Desired-state loader — reads infra.yml into a validated resource graph.

Pure parse + validate: no provider calls, no state access.  Every
problem is reported as a ValidationError naming the offending
resources, before anything is mutated.

Document layout::

    variables:
      template: {default: ubuntu-22.04, description: "clone source"}
    resources:
      - kind: virtual-machine
        name: web
        source: "${var.template}"
        count: 2                       # optional, expands to web-0, web-1
        attributes: {cores: 2, memory: 2048}
        depends_on: [db]
        lifecycle: {prevent_destroy: false, ignore_changes: [tags]}
    outputs:
      web_address: web-0.address
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as SchemaError

from converge.core.engine.graph import topological_order
from converge.core.errors import ValidationError
from converge.core.models.resource import (
    DesiredState,
    Lifecycle,
    OutputBinding,
    ResourceDeclaration,
)
from converge.core.models.value import (
    check_value,
    interpolate,
    parse_expression,
)

logger = logging.getLogger(__name__)

VAR_ENV_PREFIX = "CONVERGE_VAR_"

_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
_TOP_LEVEL_KEYS = {"variables", "resources", "outputs"}
_RESOURCE_KEYS = {"kind", "name", "source", "count", "attributes", "depends_on", "lifecycle"}


# ── Variables ───────────────────────────────────────────────────────


def parse_cli_vars(pairs: list[str] | tuple[str, ...]) -> dict[str, Any]:
    """Parse ``name=value`` pairs; values are YAML scalars (``2`` → int)."""
    result: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValidationError(f"Invalid --var '{pair}': expected name=value")
        name, raw = pair.split("=", 1)
        result[name.strip()] = _yaml_scalar(raw)
    return result


def load_vars_file(path: Path) -> dict[str, Any]:
    """Load a vars file (flat YAML mapping of variable → value)."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ValidationError(f"Cannot read vars file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in vars file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"Vars file {path} must be a mapping")
    return data


def collect_variable_overrides(
    vars_file: Path | None = None,
    cli_vars: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Merge variable overrides: vars file < environment < CLI."""
    overrides: dict[str, Any] = {}
    if vars_file is not None:
        overrides.update(load_vars_file(vars_file))

    env = os.environ if environ is None else environ
    for key, raw in env.items():
        if key.startswith(VAR_ENV_PREFIX) and len(key) > len(VAR_ENV_PREFIX):
            overrides[key[len(VAR_ENV_PREFIX):]] = _yaml_scalar(raw)

    if cli_vars:
        overrides.update(cli_vars)
    return overrides


def _yaml_scalar(raw: str) -> Any:
    try:
        value = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    return raw if value is None else value


def _resolve_variables(declared: Any, overrides: Mapping[str, Any]) -> dict[str, Any]:
    if declared is None:
        declared = {}
    if not isinstance(declared, dict):
        raise ValidationError("'variables' must be a mapping of name → {default, description}")

    values: dict[str, Any] = {}
    missing: list[str] = []
    for name, spec in declared.items():
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ValidationError(f"Invalid variable name: {name!r}")
        if isinstance(spec, dict):
            has_default = "default" in spec and spec["default"] is not None
            default = spec.get("default")
        else:
            has_default = spec is not None
            default = spec

        if name in overrides:
            values[name] = overrides[name]
        elif has_default:
            values[name] = default
        else:
            missing.append(name)
            continue
        check_value(values[name], f"variable '{name}'")

    if missing:
        raise ValidationError(f"No value for variable(s): {', '.join(missing)}")

    for name in overrides:
        if name not in declared:
            logger.warning("Ignoring value for undeclared variable '%s'", name)

    return values


# ── Loading ─────────────────────────────────────────────────────────


def load_desired_state(
    path: Path,
    overrides: Mapping[str, Any] | None = None,
) -> DesiredState:
    """Load and validate a desired-state file.

    Raises:
        ValidationError: if the file is unreadable, malformed, or the
            resource graph is invalid.
    """
    if not path.is_file():
        raise ValidationError(f"Desired-state file not found: {path}")

    logger.debug("Loading desired state from %s", path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}") from e

    desired = build_desired_state(data or {}, overrides)
    logger.info(
        "Loaded %d resources and %d outputs from %s",
        len(desired),
        len(desired.outputs),
        path.name,
    )
    return desired


def build_desired_state(
    data: Any,
    overrides: Mapping[str, Any] | None = None,
) -> DesiredState:
    """Validate a parsed desired-state document and build the graph."""
    if not isinstance(data, dict):
        raise ValidationError(f"Expected a mapping at top level, got {type(data).__name__}")

    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise ValidationError(f"Unknown top-level keys: {', '.join(sorted(map(str, unknown)))}")

    variables = _resolve_variables(data.get("variables"), overrides or {})

    declarations: dict[str, ResourceDeclaration] = {}
    for index, raw in enumerate(_resource_entries(data.get("resources"))):
        for decl in _expand(raw, index, variables):
            if decl.name in declarations:
                raise ValidationError(
                    f"Duplicate resource name '{decl.name}'", resources=[decl.name]
                )
            declarations[decl.name] = decl

    _check_references(declarations)
    order = topological_order(
        declarations.keys(),
        {name: decl.dependencies for name, decl in declarations.items()},
    )
    outputs = _parse_outputs(data.get("outputs"), declarations)

    return DesiredState(
        resources=declarations,
        order=order,
        outputs=outputs,
        variables=variables,
    )


def _resource_entries(raw: Any) -> list[dict[str, Any]]:
    """Accept either a list of resources or a mapping name → body."""
    if raw is None:
        return []
    if isinstance(raw, list):
        entries = raw
    elif isinstance(raw, dict):
        entries = []
        for name, body in raw.items():
            if not isinstance(body, dict):
                raise ValidationError(f"Resource '{name}' must be a mapping", resources=[str(name)])
            entries.append({"name": name, **body})
    else:
        raise ValidationError("'resources' must be a list or a mapping")

    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValidationError(f"Resource #{i + 1} must be a mapping")
    return entries


def _expand(raw: dict[str, Any], index: int, variables: dict[str, Any]) -> list[ResourceDeclaration]:
    """Turn one raw entry into one or more declarations (``count`` expansion)."""
    label = str(raw.get("name") or f"#{index + 1}")

    unknown = set(raw) - _RESOURCE_KEYS
    if unknown:
        raise ValidationError(
            f"Resource '{label}': unknown keys {', '.join(sorted(map(str, unknown)))}",
            resources=[label],
        )

    kind = raw.get("kind")
    name = raw.get("name")
    if not isinstance(kind, str) or not kind:
        raise ValidationError(f"Resource '{label}': 'kind' is required", resources=[label])
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ValidationError(f"Resource '{label}': invalid or missing 'name'", resources=[label])

    def var_lookup(head: str, rest: str) -> Any:
        if head == "var":
            if rest not in variables:
                raise ValidationError(
                    f"Resource '{name}' references undeclared variable '{rest}'",
                    resources=[name],
                )
            return variables[rest]
        raise ValidationError(
            f"Resource '{name}': '${{count.{rest}}}' used without 'count'", resources=[name]
        )

    count = raw.get("count")
    if count is not None:
        count = interpolate(count, var_lookup, roots=("var",))
        if isinstance(count, str) and count.isdigit():
            count = int(count)
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValidationError(
                f"Resource '{name}': count must be a non-negative integer, got {count!r}",
                resources=[name],
            )

    attributes = raw.get("attributes") or {}
    if not isinstance(attributes, dict):
        raise ValidationError(f"Resource '{name}': 'attributes' must be a mapping", resources=[name])
    check_value(attributes, f"{name}.attributes")

    source = raw.get("source")
    if source is not None and not isinstance(source, str):
        raise ValidationError(f"Resource '{name}': 'source' must be a string", resources=[name])

    depends_on = raw.get("depends_on") or []
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise ValidationError(f"Resource '{name}': 'depends_on' must be a list of names", resources=[name])

    lifecycle_raw = raw.get("lifecycle") or {}
    try:
        lifecycle = Lifecycle.model_validate(lifecycle_raw)
    except SchemaError as e:
        raise ValidationError(f"Resource '{name}': invalid lifecycle: {e}", resources=[name]) from e

    if count is None:
        instances: list[tuple[str, int | None]] = [(name, None)]
    else:
        instances = [(f"{name}-{i}", i) for i in range(count)]

    declarations = []
    for instance_name, idx in instances:

        def lookup(head: str, rest: str, _idx: int | None = idx) -> Any:
            if head == "count" and _idx is not None:
                if rest != "index":
                    raise ValidationError(
                        f"Resource '{name}': unknown count attribute '{rest}'", resources=[name]
                    )
                return _idx
            return var_lookup(head, rest)

        resolved_attrs = interpolate(attributes, lookup, roots=("var", "count"))
        resolved_source = interpolate(source, lookup, roots=("var", "count")) if source else None
        if resolved_source is not None and not isinstance(resolved_source, str):
            raise ValidationError(
                f"Resource '{name}': 'source' must resolve to a string", resources=[name]
            )
        check_value(resolved_attrs, f"{instance_name}.attributes")

        declarations.append(
            ResourceDeclaration(
                kind=kind,
                name=instance_name,
                source=resolved_source,
                attributes=resolved_attrs,
                depends_on=list(depends_on),
                lifecycle=lifecycle,
            )
        )
    return declarations


def _check_references(declarations: dict[str, ResourceDeclaration]) -> None:
    problems: list[str] = []
    offenders: list[str] = []
    for name, decl in declarations.items():
        targets = {ref.resource for ref in decl.references()} | set(decl.depends_on)
        for target in sorted(targets):
            if target == name:
                problems.append(f"'{name}' references itself")
                offenders.append(name)
            elif target not in declarations:
                problems.append(f"'{name}' references undeclared resource '{target}'")
                offenders.append(name)
    if problems:
        raise ValidationError("; ".join(problems), resources=offenders)


def _parse_outputs(raw: Any, declarations: dict[str, ResourceDeclaration]) -> list[OutputBinding]:
    if raw is None:
        return []
    if not isinstance(raw, dict):
        raise ValidationError("'outputs' must be a mapping of name → resource.attribute")

    outputs: list[OutputBinding] = []
    for name, spec in raw.items():
        description = ""
        if isinstance(spec, dict):
            description = str(spec.get("description", ""))
            spec = spec.get("value")
        if not isinstance(spec, str) or not spec:
            raise ValidationError(f"Output '{name}': value must be 'resource.attribute'")

        expr = spec.strip()
        if expr.startswith("${") and expr.endswith("}"):
            expr = expr[2:-1]
        resource, path = parse_expression(expr)
        if resource not in declarations:
            raise ValidationError(
                f"Output '{name}' references undeclared resource '{resource}'",
                resources=[resource],
            )
        outputs.append(
            OutputBinding(name=str(name), resource=resource, path=path, description=description)
        )
    return outputs
