"""
Mock provider — in-memory test double for the provider contract.

Simulates a virtualization platform without touching anything:
assigns ids and addresses, can be scripted to fail specific calls
(transiently or permanently), and can make new resources take a few
polls before they report ready.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from typing import Any

from converge.adapters.base import Provider
from converge.core.errors import ProviderError


@dataclass
class _ScriptedFailure:
    error: str
    transient: bool
    remaining: int | None     # None = fail forever


class MockProvider(Provider):
    """Universal mock provider.

    By default every call succeeds and resources are ready at once.

    Args:
        provider_name: Name reported to the registry.
        available: What ``is_available`` returns.
        boot_polls: ``get`` calls a new resource reports ``provisioning``
            before turning ``running``.
    """

    def __init__(self, provider_name: str = "mock", available: bool = True, boot_polls: int = 0):
        self._name = provider_name
        self._available = available
        self._boot_polls = boot_polls
        self._resources: dict[str, dict[str, Any]] = {}
        self._booting: dict[str, int] = {}
        self._names: dict[str, str] = {}
        self._failures: dict[tuple[str, str], _ScriptedFailure] = {}
        self._ids = itertools.count(100)
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def resources(self) -> dict[str, dict[str, Any]]:
        """Live resources keyed by provider id."""
        return self._resources

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def calls_for(self, action: str) -> list[str]:
        """Logical names an action was invoked for, in call order."""
        return [name for act, name in self.calls if act == action]

    def is_available(self) -> bool:
        return self._available

    def set_failure(
        self,
        action: str,
        name: str,
        error: str = "Mock failure",
        transient: bool = False,
        times: int | None = None,
    ) -> None:
        """Make ``action`` (create/update/destroy/get) fail for resource ``name``.

        ``times`` limits how many calls fail before succeeding again.
        """
        self._failures[(action, name)] = _ScriptedFailure(error, transient, times)

    def find(self, name: str) -> dict[str, Any] | None:
        """Live resource by logical name."""
        for attrs in self._resources.values():
            if attrs.get("name") == name:
                return attrs
        return None

    def vanish(self, name: str) -> None:
        """Delete a resource behind the reconciler's back (drift)."""
        with self._lock:
            for rid, attrs in list(self._resources.items()):
                if attrs.get("name") == name:
                    del self._resources[rid]

    # ── Provider contract ────────────────────────────────────────

    def create(
        self,
        name: str,
        kind: str,
        attributes: dict[str, Any],
        source: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            self._record("create", name)
            rid = str(next(self._ids))
            attrs = {
                **attributes,
                "id": rid,
                "name": name,
                "kind": kind,
                "source": source,
                "address": f"10.0.0.{int(rid) - 90}",
                "status": "provisioning" if self._boot_polls else "running",
            }
            self._resources[rid] = attrs
            self._names[rid] = name
            if self._boot_polls:
                self._booting[rid] = self._boot_polls
            return dict(attrs)

    def update(self, resource_id: str, delta: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._record("update", self._names.get(resource_id, resource_id))
            attrs = self._resources.get(resource_id)
            if attrs is None:
                raise ProviderError(f"No resource with id {resource_id}")
            for key, value in delta.items():
                if value is None:
                    attrs.pop(key, None)
                else:
                    attrs[key] = value
            return dict(attrs)

    def destroy(self, resource_id: str) -> None:
        with self._lock:
            self._record("destroy", self._names.get(resource_id, resource_id))
            self._resources.pop(resource_id, None)
            self._booting.pop(resource_id, None)

    def get(self, resource_id: str) -> dict[str, Any] | None:
        with self._lock:
            self._record("get", self._names.get(resource_id, resource_id))
            attrs = self._resources.get(resource_id)
            if attrs is None:
                return None
            if resource_id in self._booting:
                self._booting[resource_id] -= 1
                if self._booting[resource_id] <= 0:
                    del self._booting[resource_id]
                    attrs["status"] = "running"
            return dict(attrs)

    def _record(self, action: str, name: str) -> None:
        self.calls.append((action, name))
        failure = self._failures.get((action, name))
        if failure is None:
            return
        if failure.remaining is not None:
            if failure.remaining <= 0:
                return
            failure.remaining -= 1
        raise ProviderError(failure.error, transient=failure.transient, resource=name)
