"""
Attribute values — the typed payload of a resource declaration.

An attribute value is one of::

    str | int | float | bool | list[value] | dict[str, value]

Anything else coming out of YAML (null, dates, binary) is rejected at
the loader boundary by ``check_value``.

Strings may embed interpolations of the form ``${...}``:

    ${var.template}      variable, resolved at load time
    ${count.index}       index of a counted resource, resolved at load time
    ${db.address}        attribute of another resource, resolved at plan/apply time

A string that is exactly one interpolation evaluates to the referenced
value with its own type; an embedded one is rendered with ``str()``.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Union

from converge.core.errors import ValidationError

AttributeValue = Union[
    str, int, float, bool, list["AttributeValue"], dict[str, "AttributeValue"]
]

_INTERPOLATION = re.compile(r"\$\{([^}]+)\}")

# Namespaces resolved by the loader, never treated as resource references
_RESERVED_ROOTS = ("var", "count")


class _Unknown:
    """Placeholder for a value only the provider can tell us (e.g. a new VM's IP)."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __deepcopy__(self, memo: dict) -> _Unknown:
        return self


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """A ``${resource.path}`` reference to another resource's attribute."""

    resource: str
    path: str

    @property
    def root(self) -> str:
        """First segment of the attribute path (the top-level attribute name)."""
        return self.path.split(".", 1)[0]

    def __str__(self) -> str:
        return f"{self.resource}.{self.path}"


def parse_expression(expr: str) -> tuple[str, str]:
    """Split ``a.b.c`` into ``("a", "b.c")``."""
    expr = expr.strip()
    if "." not in expr:
        raise ValidationError(f"Invalid interpolation '${{{expr}}}': expected <name>.<attribute>")
    head, rest = expr.split(".", 1)
    if not head or not rest:
        raise ValidationError(f"Invalid interpolation '${{{expr}}}'")
    return head, rest


# ── Validation ──────────────────────────────────────────────────────


def check_value(value: Any, where: str) -> None:
    """Raise ValidationError unless ``value`` is a supported attribute value."""
    if isinstance(value, bool | int | float | str):
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            check_value(item, f"{where}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(f"{where}: map keys must be strings, got {key!r}")
            check_value(item, f"{where}.{key}")
        return
    if value is None:
        raise ValidationError(f"{where}: null is not a valid attribute value")
    raise ValidationError(f"{where}: unsupported value type {type(value).__name__}")


# ── Traversal ───────────────────────────────────────────────────────


def find_references(value: Any) -> list[Reference]:
    """Collect every resource reference embedded in a value, in order."""
    found: list[Reference] = []
    if isinstance(value, str):
        for match in _INTERPOLATION.finditer(value):
            head, rest = parse_expression(match.group(1))
            if head not in _RESERVED_ROOTS:
                found.append(Reference(head, rest))
    elif isinstance(value, list):
        for item in value:
            found.extend(find_references(item))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(find_references(item))
    return found


def interpolate(
    value: Any,
    lookup: Callable[[str, str], Any],
    roots: tuple[str, ...] | None = None,
) -> Any:
    """Replace interpolations in ``value`` using ``lookup(head, rest)``.

    Only expressions whose head is in ``roots`` are replaced (all of
    them when ``roots`` is None); the others are left verbatim so a
    later stage can resolve them.
    """
    if isinstance(value, str):
        return _interpolate_str(value, lookup, roots)
    if isinstance(value, list):
        return [interpolate(item, lookup, roots) for item in value]
    if isinstance(value, dict):
        return {k: interpolate(v, lookup, roots) for k, v in value.items()}
    return value


def _interpolate_str(
    text: str,
    lookup: Callable[[str, str], Any],
    roots: tuple[str, ...] | None,
) -> Any:
    def wanted(expr: str) -> bool:
        return roots is None or parse_expression(expr)[0] in roots

    whole = _INTERPOLATION.fullmatch(text)
    if whole and wanted(whole.group(1)):
        return lookup(*parse_expression(whole.group(1)))

    unknown = False

    def render(match: re.Match[str]) -> str:
        nonlocal unknown
        expr = match.group(1)
        if not wanted(expr):
            return match.group(0)
        resolved = lookup(*parse_expression(expr))
        if resolved is UNKNOWN:
            unknown = True
            return match.group(0)
        if isinstance(resolved, bool):
            return "true" if resolved else "false"
        if isinstance(resolved, list | dict):
            return json.dumps(resolved, sort_keys=True)
        return str(resolved)

    rendered = _INTERPOLATION.sub(render, text)
    return UNKNOWN if unknown else rendered


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    return False


def get_path(data: Any, path: str) -> Any:
    """Walk a dotted path through maps and lists (``disk.0.size``).

    Raises KeyError when a segment is missing.
    """
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                raise KeyError(path)
            current = current[segment]
        elif isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                raise KeyError(path) from None
        else:
            raise KeyError(path)
    return current


# ── Fingerprints ────────────────────────────────────────────────────


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(kind: str, source: str | None, attributes: dict[str, Any]) -> str:
    """Content hash of everything that defines a resource's desired shape."""
    payload = canonical_json({"kind": kind, "source": source, "attributes": attributes})
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


def render(value: Any) -> Any:
    """JSON-safe rendering of a value that may contain UNKNOWN."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, list):
        return [render(item) for item in value]
    if isinstance(value, dict):
        return {k: render(v) for k, v in value.items()}
    return value
