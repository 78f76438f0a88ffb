"""
Local provider — a simulated virtualization platform on disk.

Keeps its "inventory" in a JSON file so the whole plan/apply cycle can
be exercised end to end without a hypervisor.  Mimics a cluster's
behaviour closely enough to be useful:

    - VM ids are allocated from 100 upwards, never reused within a file
    - addresses are leased from a CIDR (default 10.10.0.0/24)
    - clone sources are checked against ``templates`` when configured
    - resource sizes are checked against ``max_cores`` / ``max_memory``

Settings (converge.yml → provider.settings):
    path, cidr, templates, max_cores, max_memory, node
"""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from converge.adapters.base import Provider
from converge.core.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_CIDR = "10.10.0.0/24"
FIRST_VMID = 100


class LocalProvider(Provider):
    """File-backed platform simulator."""

    def __init__(
        self,
        path: Path,
        cidr: str = DEFAULT_CIDR,
        templates: list[str] | None = None,
        max_cores: int | None = None,
        max_memory: int | None = None,
        node: str = "local",
    ):
        self._path = path
        try:
            self._network = ipaddress.ip_network(cidr, strict=False)
        except ValueError as e:
            raise ProviderError(f"Invalid cidr '{cidr}': {e}") from e
        self._templates = set(templates) if templates else None
        self._max_cores = max_cores
        self._max_memory = max_memory
        self._node = node
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: dict[str, Any], state_dir: Path) -> LocalProvider:
        path = Path(settings.get("path") or state_dir / "local-platform.json")
        return cls(
            path=path,
            cidr=settings.get("cidr", DEFAULT_CIDR),
            templates=settings.get("templates"),
            max_cores=settings.get("max_cores"),
            max_memory=settings.get("max_memory"),
            node=settings.get("node", "local"),
        )

    @property
    def name(self) -> str:
        return "local"

    @property
    def path(self) -> Path:
        return self._path

    def is_available(self) -> bool:
        parent = self._path.parent
        return parent.is_dir() and os.access(parent, os.W_OK) or not parent.exists()

    # ── Provider contract ────────────────────────────────────────

    def create(
        self,
        name: str,
        kind: str,
        attributes: dict[str, Any],
        source: str | None = None,
    ) -> dict[str, Any]:
        if self._templates is not None and source is not None and source not in self._templates:
            raise ProviderError(f"Clone source '{source}' does not exist", resource=name)
        self._check_limits(name, attributes)

        with self._lock:
            inventory = self._read()
            vmid = max([FIRST_VMID - 1, *(int(i) for i in inventory["resources"])]) + 1
            vmid = max(vmid, inventory.get("next_id", FIRST_VMID))
            address = self._lease(inventory)
            attrs = {
                **attributes,
                "id": str(vmid),
                "name": name,
                "kind": kind,
                "source": source,
                "node": self._node,
                "address": address,
                "status": "running",
            }
            inventory["resources"][str(vmid)] = attrs
            inventory["next_id"] = vmid + 1
            self._write(inventory)

        logger.info("Local platform: created %s %s (id %s, %s)", kind, name, vmid, address)
        return dict(attrs)

    def update(self, resource_id: str, delta: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            inventory = self._read()
            attrs = inventory["resources"].get(resource_id)
            if attrs is None:
                raise ProviderError(f"No resource with id {resource_id}")
            merged = {**attrs, **{k: v for k, v in delta.items() if v is not None}}
            for key, value in delta.items():
                if value is None:
                    merged.pop(key, None)
            self._check_limits(attrs.get("name", resource_id), merged)
            inventory["resources"][resource_id] = merged
            self._write(inventory)
        return dict(merged)

    def destroy(self, resource_id: str) -> None:
        with self._lock:
            inventory = self._read()
            if inventory["resources"].pop(resource_id, None) is not None:
                self._write(inventory)
                logger.info("Local platform: destroyed id %s", resource_id)

    def get(self, resource_id: str) -> dict[str, Any] | None:
        with self._lock:
            attrs = self._read()["resources"].get(resource_id)
        return dict(attrs) if attrs is not None else None

    def list_resources(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(a) for a in self._read()["resources"].values()]

    # ── Internals ────────────────────────────────────────────────

    def _check_limits(self, name: str, attributes: dict[str, Any]) -> None:
        cores = attributes.get("cores")
        if self._max_cores is not None and isinstance(cores, int) and cores > self._max_cores:
            raise ProviderError(f"{name}: {cores} cores exceeds node limit {self._max_cores}", resource=name)
        memory = attributes.get("memory")
        if self._max_memory is not None and isinstance(memory, int) and memory > self._max_memory:
            raise ProviderError(
                f"{name}: {memory} MiB memory exceeds node limit {self._max_memory}", resource=name
            )

    def _lease(self, inventory: dict[str, Any]) -> str:
        used = {a.get("address") for a in inventory["resources"].values()}
        hosts = iter(self._network.hosts())
        next(hosts, None)  # first host is the gateway
        for host in hosts:
            if str(host) not in used:
                return str(host)
        raise ProviderError(f"Address pool {self._network} exhausted")

    def _read(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {"next_id": FIRST_VMID, "resources": {}}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ProviderError(f"Local platform inventory unreadable: {e}", transient=True) from e
        data.setdefault("resources", {})
        return data

    def _write(self, inventory: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".platform_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(inventory, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except OSError as e:
            Path(tmp_path).unlink(missing_ok=True)
            raise ProviderError(f"Local platform inventory not writable: {e}", transient=True) from e
