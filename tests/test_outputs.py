"""
Tests for output publishing and state refresh.
"""

import json

import pytest

from converge.adapters.mock import MockProvider
from converge.core.engine.diff import compute_plan
from converge.core.engine.executor import Executor, ResourceOutcome, ResourceStatus, RunReport
from converge.core.engine.outputs import publish_outputs, read_outputs, write_outputs
from converge.core.engine.refresh import refresh_snapshot
from converge.core.errors import ProviderError
from converge.core.models.operation import OperationKind
from converge.core.models.resource import OutputBinding
from converge.core.models.state import StateRecord
from converge.core.models.value import fingerprint
from converge.core.reliability.retry import immediate_policy


def _bind(name, resource, path="address", description=""):
    return OutputBinding(name=name, resource=resource, path=path, description=description)


def _report(**statuses):
    report = RunReport(run_id="run-test")
    for name, status in statuses.items():
        report.outcomes[name] = ResourceOutcome(name=name, operation=OperationKind.CREATE, status=status)
    return report


def _put(store, name, desired=None, **observed):
    desired = desired or {}
    store.put(name, StateRecord(
        name=name,
        kind="virtual-machine",
        desired=desired,
        attributes={**desired, **observed},
        fingerprint=fingerprint("virtual-machine", None, desired),
    ))


class TestPublishOutputs:
    def test_committed_resource_resolves(self, store):
        _put(store, "web", id="101", address="10.0.0.5")
        values = publish_outputs(
            [_bind("web_address", "web", description="entry point")],
            _report(web=ResourceStatus.COMMITTED),
            store,
        )
        out = values[0]
        assert out.available
        assert out.value == "10.0.0.5"
        assert out.to_dict()["description"] == "entry point"

    def test_failed_resource_unavailable(self, store):
        values = publish_outputs(
            [_bind("db_address", "db")],
            _report(db=ResourceStatus.FAILED),
            store,
        )
        assert not values[0].available
        assert values[0].value is None
        assert values[0].reason == "db failed"

    def test_skipped_resource_never_stale(self, store):
        # An old record exists, but the resource did not commit this run
        _put(store, "web", id="101", address="10.0.0.5")
        values = publish_outputs([_bind("a", "web")], _report(web=ResourceStatus.SKIPPED), store)
        assert not values[0].available
        assert values[0].reason == "web skipped"

    def test_resource_outside_run(self, store):
        values = publish_outputs([_bind("a", "web")], _report(), store)
        assert "not part of this run" in values[0].reason

    def test_missing_attribute(self, store):
        _put(store, "web", id="101")
        values = publish_outputs([_bind("a", "web", "disk.0.size")], None, store)
        assert values[0].reason == "web has no attribute disk.0.size"

    def test_desired_value_preferred(self, store):
        _put(store, "web", desired={"memory": 2048}, memory=1024)
        values = publish_outputs([_bind("mem", "web", "memory")], None, store)
        assert values[0].value == 2048

    def test_without_report_uses_store(self, store):
        _put(store, "web", address="10.0.0.5")
        values = publish_outputs([_bind("a", "web"), _bind("b", "db")], None, store)
        assert values[0].value == "10.0.0.5"
        assert values[1].reason == "db is not provisioned"

    def test_after_partial_run(self, make_desired, web_and_db, store, mock_provider):
        mock_provider.set_failure("create", "web")
        desired = make_desired(web_and_db)
        report = Executor(store, mock_provider, retry=immediate_policy()).run(
            compute_plan(desired, store.snapshot())
        )
        values = {v.name: v for v in publish_outputs(desired.outputs, report, store)}
        assert values["db_address"].value == "10.0.0.10"
        assert not values["web_address"].available


class TestOutputsFile:
    def test_write_and_read(self, tmp_path, store):
        _put(store, "web", address="10.0.0.5")
        path = tmp_path / "out" / "outputs.json"
        write_outputs(publish_outputs([_bind("a", "web"), _bind("b", "db")], None, store), path)

        data = read_outputs(path)
        assert data["a"]["value"] == "10.0.0.5"
        assert data["b"]["available"] is False
        assert json.loads(path.read_text()) == data

    def test_read_missing_or_garbage(self, tmp_path):
        assert read_outputs(tmp_path / "missing.json") == {}
        bad = tmp_path / "bad.json"
        bad.write_text("[1, 2")
        assert read_outputs(bad) == {}


class TestRefresh:
    def _provisioned(self, make_desired, store, provider):
        desired = make_desired("""\
            resources:
              - {kind: virtual-machine, name: web, source: ubuntu-22.04, attributes: {cores: 2, memory: 2048}}
        """)
        Executor(store, provider, retry=immediate_policy()).run(compute_plan(desired, store.snapshot()))
        return desired

    def test_no_drift_keeps_fingerprint(self, make_desired, store, mock_provider):
        self._provisioned(make_desired, store, mock_provider)
        snapshot = store.snapshot()
        refreshed = refresh_snapshot(snapshot, mock_provider, immediate_policy())
        assert refreshed["web"].fingerprint == snapshot["web"].fingerprint

    def test_drift_plans_update(self, make_desired, store, mock_provider):
        desired = self._provisioned(make_desired, store, mock_provider)
        mock_provider.find("web")["memory"] = 1024

        refreshed = refresh_snapshot(store.snapshot(), mock_provider, immediate_policy())

        assert refreshed["web"].desired["memory"] == 1024
        op = compute_plan(desired, refreshed).get("web")
        assert op.kind == OperationKind.UPDATE
        assert op.changed == ["memory"]
        # The store itself is untouched
        assert store.get("web").desired["memory"] == 2048

    def test_vanished_resource_recreated(self, make_desired, store, mock_provider):
        desired = self._provisioned(make_desired, store, mock_provider)
        mock_provider.vanish("web")

        refreshed = refresh_snapshot(store.snapshot(), mock_provider, immediate_policy())

        assert "web" not in refreshed
        assert compute_plan(desired, refreshed).get("web").kind == OperationKind.CREATE

    def test_vanished_orphan_kept_for_destroy(self, make_desired, store, mock_provider):
        self._provisioned(make_desired, store, mock_provider)
        mock_provider.vanish("web")
        desired = make_desired("resources: []\n")

        refreshed = refresh_snapshot(store.snapshot(), mock_provider, immediate_policy(), declared=desired)

        assert "web" in refreshed
        plan = compute_plan(desired, refreshed)
        assert [(op.name, op.kind) for op in plan] == [("web", OperationKind.DESTROY)]
        Executor(store, mock_provider, retry=immediate_policy()).run(plan)
        assert store.names() == []

    def test_record_without_id_kept(self, store, mock_provider):
        _put(store, "orphan")
        refreshed = refresh_snapshot(store.snapshot(), mock_provider)
        assert "orphan" in refreshed
        assert mock_provider.call_count == 0

    def test_read_failure_raises(self, make_desired, store, mock_provider):
        self._provisioned(make_desired, store, mock_provider)
        mock_provider.set_failure("get", "web", "api down", transient=True)
        with pytest.raises(ProviderError, match="refresh web failed after 3 attempts"):
            refresh_snapshot(store.snapshot(), mock_provider, immediate_policy())

    def test_unexpected_error_wrapped(self, store):
        class Broken(MockProvider):
            def get(self, resource_id):
                raise RuntimeError("boom")

        _put(store, "web", id="100")
        with pytest.raises(ProviderError, match="Unexpected provider error: boom"):
            refresh_snapshot(store.snapshot(), Broken(), immediate_policy())
