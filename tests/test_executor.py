"""
Tests for the executor — applying plans, committing state, isolating failures.
"""

import threading

import pytest

from converge.adapters.mock import MockProvider
from converge.core.engine.diff import compute_destroy_plan, compute_plan
from converge.core.engine.executor import Executor, ResourceStatus
from converge.core.errors import PartialApplyError
from converge.core.models.operation import OperationKind
from converge.core.reliability.retry import immediate_policy


def _apply(desired, store, provider, retry=None, concurrency=1, cancel=None):
    plan = compute_plan(desired, store.snapshot())
    executor = Executor(store, provider, retry=retry or immediate_policy(), concurrency=concurrency)
    return executor.run(plan, cancel=cancel)


class TestCreate:
    def test_creates_in_dependency_order(self, make_desired, web_and_db, store, mock_provider):
        report = _apply(make_desired(web_and_db), store, mock_provider)

        assert report.all_ok
        assert report.status == "ok"
        assert report.committed == ["db", "web"]
        assert mock_provider.calls_for("create") == ["db", "web"]

    def test_reference_resolved_from_provider_attributes(
        self, make_desired, web_and_db, store, mock_provider
    ):
        _apply(make_desired(web_and_db), store, mock_provider)

        db = store.get("db")
        web = store.get("web")
        assert db.resource_id == "100"
        assert db.attributes["address"] == "10.0.0.10"
        assert web.desired["env"]["DB_HOST"] == "10.0.0.10"
        assert mock_provider.find("web")["env"]["DB_HOST"] == "10.0.0.10"
        assert web.dependencies == ["db"]
        assert web.fingerprint.startswith("sha256:")

    def test_second_run_is_noop(self, make_desired, web_and_db, store, mock_provider):
        desired = make_desired(web_and_db)
        _apply(desired, store, mock_provider)
        serial = store.serial

        plan = compute_plan(desired, store.snapshot())
        assert not plan.has_changes

        report = Executor(store, mock_provider, retry=immediate_policy()).run(plan)
        assert report.changed == []
        assert report.all_ok
        assert mock_provider.calls_for("create") == ["db", "web"]
        assert store.serial == serial

    def test_waits_for_readiness(self, make_desired, web_and_db, store):
        provider = MockProvider(boot_polls=2)
        report = _apply(make_desired(web_and_db), store, provider, retry=immediate_policy(max_polls=5))
        assert report.all_ok
        assert store.get("db").attributes["status"] == "running"

    def test_readiness_timeout_fails(self, make_desired, web_and_db, store):
        provider = MockProvider(boot_polls=10)
        report = _apply(make_desired(web_and_db), store, provider, retry=immediate_policy(max_polls=3))
        assert report.failed == ["db"]
        assert "Gave up waiting" in report.outcomes["db"].error
        assert report.skipped == ["web"]
        assert store.names() == []


class TestFailures:
    def test_failed_dependency_skips_dependent(self, make_desired, web_and_db, store, mock_provider):
        mock_provider.set_failure("create", "db", "quota exceeded")
        report = _apply(make_desired(web_and_db), store, mock_provider)

        assert report.failed == ["db"]
        assert report.skipped == ["web"]
        assert report.committed == []
        assert report.status == "failed"
        assert "quota exceeded" in report.outcomes["db"].error
        assert "db" in report.outcomes["web"].reason
        # Nothing committed, nothing written
        assert store.names() == []
        assert not store.exists
        assert mock_provider.calls_for("create") == ["db"]

    def test_independent_resources_still_commit(self, make_desired, store, mock_provider):
        desired = make_desired("""\
            resources:
              - {kind: virtual-machine, name: db}
              - {kind: virtual-machine, name: cache}
              - {kind: virtual-machine, name: web, depends_on: [db]}
        """)
        mock_provider.set_failure("create", "db")
        report = _apply(desired, store, mock_provider, concurrency=2)

        assert report.status == "partial"
        assert report.committed == ["cache"]
        assert report.failed == ["db"]
        assert report.skipped == ["web"]
        assert store.names() == ["cache"]

    def test_raise_for_failures(self, make_desired, web_and_db, store, mock_provider):
        mock_provider.set_failure("create", "db")
        report = _apply(make_desired(web_and_db), store, mock_provider)
        with pytest.raises(PartialApplyError) as exc:
            report.raise_for_failures()
        assert exc.value.report is report
        assert "failed: db" in str(exc.value)

    def test_resume_after_failure(self, make_desired, web_and_db, store, mock_provider):
        desired = make_desired(web_and_db)
        mock_provider.set_failure("create", "web", times=1)
        first = _apply(desired, store, mock_provider)
        assert first.committed == ["db"]
        assert first.failed == ["web"]

        second = _apply(desired, store, mock_provider)
        assert second.all_ok
        assert second.changed == ["web"]
        assert mock_provider.calls_for("create") == ["db", "web", "web"]

    def test_transient_error_retried(self, make_desired, web_and_db, store, mock_provider):
        mock_provider.set_failure("create", "db", "busy", transient=True, times=2)
        report = _apply(make_desired(web_and_db), store, mock_provider)
        assert report.all_ok
        assert mock_provider.calls_for("create") == ["db", "db", "db", "web"]

    def test_transient_error_exhausts_attempts(self, make_desired, web_and_db, store, mock_provider):
        mock_provider.set_failure("create", "db", "busy", transient=True)
        report = _apply(make_desired(web_and_db), store, mock_provider)
        assert report.failed == ["db"]
        assert "failed after 3 attempts" in report.outcomes["db"].error

    def test_unexpected_exception_is_permanent(self, make_desired, store):
        class Broken(MockProvider):
            def create(self, name, kind, attributes, source=None):
                raise RuntimeError("socket closed")

        report = _apply(make_desired("resources: [{kind: vm, name: a}]"), store, Broken())
        assert report.failed == ["a"]
        assert "Unexpected provider error" in report.outcomes["a"].error

    def test_missing_id_fails(self, make_desired, store):
        class NoId(MockProvider):
            def create(self, name, kind, attributes, source=None):
                attrs = super().create(name, kind, attributes, source)
                attrs.pop("id")
                return attrs

        report = _apply(make_desired("resources: [{kind: vm, name: a}]"), store, NoId())
        assert report.failed == ["a"]
        assert "no id" in report.outcomes["a"].error

    def test_unreported_reference_fails_dependent(self, make_desired, web_and_db, store):
        class NoAddress(MockProvider):
            def create(self, name, kind, attributes, source=None):
                attrs = super().create(name, kind, attributes, source)
                self.resources[attrs["id"]].pop("address")
                return attrs

        report = _apply(make_desired(web_and_db), store, NoAddress())
        assert report.committed == ["db"]
        assert report.failed == ["web"]
        assert "did not report" in report.outcomes["web"].error


class TestUpdateReplaceDestroy:
    def _desired(self, make_desired, source="ubuntu-22.04", memory=2048):
        return make_desired(f"""\
            resources:
              - kind: virtual-machine
                name: web
                source: {source}
                attributes: {{cores: 2, memory: {memory}}}
        """)

    def test_update_in_place(self, make_desired, store, mock_provider):
        _apply(self._desired(make_desired), store, mock_provider)
        old_id = store.get("web").resource_id

        report = _apply(self._desired(make_desired, memory=4096), store, mock_provider)

        assert report.outcomes["web"].operation == OperationKind.UPDATE
        assert report.changed == ["web"]
        web = store.get("web")
        assert web.resource_id == old_id
        assert web.desired["memory"] == 4096
        assert web.attributes["memory"] == 4096
        assert mock_provider.calls_for("update") == ["web"]
        assert mock_provider.calls_for("destroy") == []

    def test_replace_destroys_then_creates(self, make_desired, store, mock_provider):
        _apply(self._desired(make_desired), store, mock_provider)
        old_id = store.get("web").resource_id

        report = _apply(self._desired(make_desired, source="debian-12"), store, mock_provider)

        assert report.outcomes["web"].operation == OperationKind.REPLACE
        assert report.all_ok
        web = store.get("web")
        assert web.resource_id != old_id
        assert web.source == "debian-12"
        assert old_id not in mock_provider.resources
        assert mock_provider.calls_for("destroy") == ["web"]
        assert len(mock_provider.resources) == 1

    def test_orphan_destroyed(self, make_desired, web_and_db, store, mock_provider):
        _apply(make_desired(web_and_db), store, mock_provider)
        only_db = make_desired("""\
            resources:
              - {kind: virtual-machine, name: db, source: ubuntu-22.04, attributes: {cores: 2, memory: 2048}}
        """)

        report = _apply(only_db, store, mock_provider)

        assert report.changed == ["web"]
        assert mock_provider.calls_for("destroy") == ["web"]
        assert mock_provider.find("web") is None
        assert store.names() == ["db"]

    def test_orphan_outlives_dependent_that_drops_it(self, make_desired, web_and_db, store, mock_provider):
        _apply(make_desired(web_and_db), store, mock_provider)
        web_only = make_desired("""\
            resources:
              - kind: virtual-machine
                name: web
                source: ubuntu-22.04
                attributes: {cores: 2, memory: 2048, env: {DB_HOST: 10.0.0.99}}
        """)

        report = _apply(web_only, store, mock_provider, concurrency=4)

        assert report.all_ok
        changes = [c for c in mock_provider.calls if c[0] in ("create", "destroy")][2:]
        assert changes == [("destroy", "web"), ("create", "web"), ("destroy", "db")]
        assert store.names() == ["web"]
        assert store.get("web").dependencies == []

    def test_teardown_in_reverse_order(self, make_desired, web_and_db, store, mock_provider):
        _apply(make_desired(web_and_db), store, mock_provider)

        plan = compute_destroy_plan(None, store.snapshot())
        report = Executor(store, mock_provider, retry=immediate_policy(), concurrency=4).run(plan)

        assert report.all_ok
        assert mock_provider.calls_for("destroy") == ["web", "db"]
        assert store.names() == []
        assert mock_provider.resources == {}

    def test_destroy_already_gone(self, make_desired, web_and_db, store, mock_provider):
        _apply(make_desired(web_and_db), store, mock_provider)
        mock_provider.vanish("web")

        plan = compute_destroy_plan(None, store.snapshot())
        report = Executor(store, mock_provider, retry=immediate_policy()).run(plan)

        assert report.all_ok
        assert mock_provider.calls_for("destroy") == ["db"]
        assert store.names() == []


class TestScheduling:
    def test_siblings_run_concurrently(self, make_desired, store):
        barrier = threading.Barrier(2, timeout=5)

        class Rendezvous(MockProvider):
            def create(self, name, kind, attributes, source=None):
                barrier.wait()  # both creates must be in flight at once
                return super().create(name, kind, attributes, source)

        desired = make_desired("""\
            resources:
              - {kind: vm, name: a}
              - {kind: vm, name: b}
        """)
        report = _apply(desired, store, Rendezvous(), concurrency=2)
        assert report.all_ok
        assert sorted(report.committed) == ["a", "b"]

    def test_dependency_commits_before_dependent_starts(self, make_desired, web_and_db, store):
        seen = {}

        class Recording(MockProvider):
            def create(self, name, kind, attributes, source=None):
                if name == "web":
                    seen["db_committed"] = store.get("db") is not None
                return super().create(name, kind, attributes, source)

        report = _apply(make_desired(web_and_db), store, Recording(), concurrency=4)
        assert report.all_ok
        assert seen["db_committed"] is True

    def test_cancel_stops_new_operations(self, make_desired, web_and_db, store):
        cancel = threading.Event()

        class CancelAfterDb(MockProvider):
            def create(self, name, kind, attributes, source=None):
                result = super().create(name, kind, attributes, source)
                if name == "db":
                    cancel.set()
                return result

        report = _apply(make_desired(web_and_db), store, CancelAfterDb(), cancel=cancel)

        assert report.cancelled
        assert report.status == "cancelled"
        assert report.committed == ["db"]
        assert report.status_of("web") == ResourceStatus.SKIPPED
        assert store.names() == ["db"]

    def test_cancel_before_start(self, make_desired, web_and_db, store, mock_provider):
        cancel = threading.Event()
        cancel.set()
        report = _apply(make_desired(web_and_db), store, mock_provider, cancel=cancel)
        assert report.skipped == ["db", "web"]
        assert mock_provider.call_count == 0

    def test_report_to_dict(self, make_desired, web_and_db, store, mock_provider):
        report = _apply(make_desired(web_and_db), store, mock_provider)
        data = report.to_dict()
        assert data["status"] == "ok"
        assert data["committed"] == ["db", "web"]
        assert {r["name"] for r in data["resources"]} == {"db", "web"}
        assert data["run_id"].startswith("run-")
