"""
Resource declarations — the desired state.

A ``DesiredState`` is what the loader produces from infra.yml: every
declared resource keyed by logical name, a topological processing
order, and the output bindings to publish after apply.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from converge.core.models.value import Reference, find_references


class Lifecycle(BaseModel):
    """Per-resource lifecycle rules."""

    prevent_destroy: bool = False
    ignore_changes: list[str] = Field(default_factory=list)


class ResourceDeclaration(BaseModel):
    """One managed entity, as declared.

    ``attributes`` has variables and ``count.index`` already
    interpolated; resource references (``${db.address}``) are kept
    verbatim and resolved by the diff engine and the executor.
    """

    kind: str
    name: str
    source: str | None = None        # clone template / image identifier
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    def references(self) -> list[Reference]:
        """All resource references in attributes and source."""
        refs = find_references(self.attributes)
        if self.source:
            refs.extend(find_references(self.source))
        return refs

    @property
    def dependencies(self) -> list[str]:
        """Logical names this resource must be processed after."""
        names = {ref.resource for ref in self.references()} | set(self.depends_on)
        return sorted(names)


class OutputBinding(BaseModel):
    """A published value: name → (resource, attribute path)."""

    name: str
    resource: str
    path: str
    description: str = ""

    @property
    def expression(self) -> str:
        return f"{self.resource}.{self.path}"


@dataclass
class DesiredState:
    """Validated desired-state graph."""

    resources: dict[str, ResourceDeclaration] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    outputs: list[OutputBinding] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)

    def __contains__(self, name: str) -> bool:
        return name in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    def get(self, name: str) -> ResourceDeclaration | None:
        return self.resources.get(name)

    def ordered(self) -> list[ResourceDeclaration]:
        """Declarations in dependency order (dependencies first)."""
        return [self.resources[name] for name in self.order]

    def dependents(self, name: str) -> list[str]:
        """Resources that directly depend on ``name``."""
        return [n for n in self.order if name in self.resources[n].dependencies]
