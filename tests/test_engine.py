"""
Tests for the diff engine — desired state vs. snapshot → ordered operations.
"""

import pytest

from converge.core.engine.diff import compute_destroy_plan, compute_plan, mutable_attributes
from converge.core.errors import ValidationError
from converge.core.models.operation import OperationKind
from converge.core.models.state import StateRecord
from converge.core.models.value import UNKNOWN, fingerprint


def _record(name, attrs, source="ubuntu-22.04", kind="virtual-machine", observed=None, deps=None):
    """A state record as the executor would have committed it."""
    return StateRecord(
        name=name,
        kind=kind,
        source=source,
        desired=dict(attrs),
        attributes={**attrs, "id": f"id-{name}", "address": f"10.0.0.{len(name)}", **(observed or {})},
        fingerprint=fingerprint(kind, source, attrs),
        dependencies=deps or [],
    )


def _kinds(plan):
    return {op.name: op.kind for op in plan}


WEB = """\
    resources:
      - kind: virtual-machine
        name: web
        source: {source}
        attributes: {{cores: 2, memory: {memory}}}
"""


class TestScenarios:
    def test_create_when_not_in_state(self, make_desired):
        plan = compute_plan(make_desired(WEB.format(source="ubuntu-22.04", memory=2048)), {})
        assert len(plan) == 1
        op = plan.get("web")
        assert op.kind == OperationKind.CREATE
        assert op.planned == {"cores": 2, "memory": 2048}
        assert op.reason == "not in state"

    def test_noop_when_fingerprint_matches(self, make_desired):
        desired = make_desired(WEB.format(source="ubuntu-22.04", memory=2048))
        snapshot = {"web": _record("web", {"cores": 2, "memory": 2048})}
        plan = compute_plan(desired, snapshot)
        assert _kinds(plan) == {"web": OperationKind.NOOP}
        assert not plan.has_changes

    def test_memory_change_is_update(self, make_desired):
        desired = make_desired(WEB.format(source="ubuntu-22.04", memory=4096))
        snapshot = {"web": _record("web", {"cores": 2, "memory": 2048})}
        op = compute_plan(desired, snapshot).get("web")
        assert op.kind == OperationKind.UPDATE
        assert op.changed == ["memory"]
        assert op.delta() == {"memory": 4096}

    def test_source_change_is_replace(self, make_desired):
        desired = make_desired(WEB.format(source="debian-12", memory=2048))
        snapshot = {"web": _record("web", {"cores": 2, "memory": 2048})}
        op = compute_plan(desired, snapshot).get("web")
        assert op.kind == OperationKind.REPLACE
        assert "source" in op.changed
        assert "source" in op.reason

    def test_replace_wins_over_update(self, make_desired):
        desired = make_desired("""\
            resources:
              - kind: virtual-machine
                name: web
                source: ubuntu-22.04
                attributes: {cores: 2, memory: 4096, disk: 40}
        """)
        snapshot = {"web": _record("web", {"cores": 2, "memory": 2048, "disk": 20})}
        op = compute_plan(desired, snapshot).get("web")
        assert op.kind == OperationKind.REPLACE
        assert op.changed == ["disk", "memory"]

    def test_removed_attribute_is_a_change(self, make_desired):
        desired = make_desired(WEB.format(source="ubuntu-22.04", memory=2048))
        snapshot = {"web": _record("web", {"cores": 2, "memory": 2048, "disk": 20})}
        op = compute_plan(desired, snapshot).get("web")
        assert op.kind == OperationKind.REPLACE
        assert op.changed == ["disk"]

    def test_mutable_override(self, make_desired):
        desired = make_desired("""\
            resources:
              - {kind: container, name: app, attributes: {image: "nginx:2"}}
        """)
        snapshot = {"app": _record("app", {"image": "nginx:1"}, source=None, kind="container")}
        assert compute_plan(desired, snapshot).get("app").kind == OperationKind.REPLACE
        plan = compute_plan(desired, snapshot, mutable={"container": ["image"]})
        assert plan.get("app").kind == OperationKind.UPDATE

    def test_kind_change_is_replace(self, make_desired):
        desired = make_desired("resources:\n  - {kind: container, name: web, source: ubuntu-22.04}\n")
        snapshot = {"web": _record("web", {})}
        op = compute_plan(desired, snapshot).get("web")
        assert op.kind == OperationKind.REPLACE
        assert "kind" in op.changed

    def test_mutable_attributes_defaults(self):
        subsets = mutable_attributes({"container": ["image"]})
        assert "memory" in subsets["virtual-machine"]
        assert subsets["container"] == frozenset({"image"})


class TestOrphans:
    def test_removed_leaf_is_single_destroy(self, make_desired, web_and_db):
        desired = make_desired(web_and_db)
        snapshot = {
            "db": _record("db", {"cores": 2, "memory": 2048}),
            "web": _record("web", {"cores": 2, "memory": 2048}, deps=["db"]),
            "old": _record("old", {"cores": 1}),
        }
        plan = compute_plan(desired, snapshot)
        destroys = [op for op in plan if op.kind == OperationKind.DESTROY]
        assert [op.name for op in destroys] == ["old"]
        assert plan.operations[0].name == "old"

    def test_orphans_destroyed_dependents_first(self, make_desired):
        snapshot = {
            "net": _record("net", {}),
            "db": _record("db", {}, deps=["net"]),
            "web": _record("web", {}, deps=["db"]),
        }
        plan = compute_plan(make_desired(""), snapshot)
        assert [op.name for op in plan] == ["web", "db", "net"]
        assert plan.get("db").wait_for == ["web"]
        assert plan.get("net").wait_for == ["db"]
        assert plan.get("web").wait_for == []

    def test_orphan_waits_for_declared_dependent(self, make_desired):
        desired = make_desired("""\
            resources:
              - {kind: virtual-machine, name: web, source: ubuntu-22.04, attributes: {cores: 2, env: {DB_HOST: 10.0.0.99}}}
        """)
        snapshot = {
            "db": _record("db", {"cores": 2}),
            "web": _record("web", {"cores": 2, "env": {"DB_HOST": "10.0.0.2"}}, deps=["db"]),
        }
        plan = compute_plan(desired, snapshot)
        assert [(op.name, op.kind) for op in plan] == [
            ("web", OperationKind.REPLACE),
            ("db", OperationKind.DESTROY),
        ]
        assert plan.get("db").wait_for == ["web"]

    def test_orphan_chain_behind_declared_dependent(self, make_desired):
        desired = make_desired("""\
            resources:
              - {kind: virtual-machine, name: web, source: ubuntu-22.04, attributes: {cores: 2}}
        """)
        snapshot = {
            "net": _record("net", {}),
            "db": _record("db", {}, deps=["net"]),
            "web": _record("web", {"cores": 2}, deps=["db"]),
            "old": _record("old", {}),
        }
        plan = compute_plan(desired, snapshot)
        assert [op.name for op in plan] == ["old", "web", "db", "net"]
        assert plan.get("web").kind == OperationKind.NOOP
        assert plan.get("db").wait_for == ["web"]
        assert plan.get("net").wait_for == ["db"]

    def test_rename_is_destroy_plus_create(self, make_desired):
        desired = make_desired("""\
            resources:
              - {kind: virtual-machine, name: frontend, source: ubuntu-22.04, attributes: {cores: 2}}
        """)
        snapshot = {"web": _record("web", {"cores": 2})}
        assert _kinds(compute_plan(desired, snapshot)) == {
            "web": OperationKind.DESTROY,
            "frontend": OperationKind.CREATE,
        }

    def test_destroy_plan_covers_everything(self):
        snapshot = {
            "db": _record("db", {}),
            "web": _record("web", {}, deps=["db"]),
        }
        plan = compute_destroy_plan(None, snapshot)
        assert [op.name for op in plan] == ["web", "db"]
        assert all(op.kind == OperationKind.DESTROY for op in plan)


class TestReferences:
    def test_create_dependency_makes_reference_unknown(self, make_desired, web_and_db):
        plan = compute_plan(make_desired(web_and_db), {})
        assert [op.name for op in plan] == ["db", "web"]
        web = plan.get("web")
        assert web.planned["env"]["DB_HOST"] is UNKNOWN
        assert web.wait_for == ["db"]
        assert web.to_dict()["planned"]["env"]["DB_HOST"] == "(known after apply)"

    def test_noop_dependency_resolves_from_state(self, make_desired, web_and_db):
        desired = make_desired(web_and_db)
        db = _record("db", {"cores": 2, "memory": 2048})
        web_attrs = {"cores": 2, "memory": 2048, "env": {"DB_HOST": db.attributes["address"]}}
        snapshot = {"db": db, "web": _record("web", web_attrs, deps=["db"])}
        plan = compute_plan(desired, snapshot)
        assert _kinds(plan) == {"db": OperationKind.NOOP, "web": OperationKind.NOOP}

    def test_replaced_dependency_cascades(self, make_desired, web_and_db):
        desired = make_desired(web_and_db.replace("name: db\n        source: ubuntu-22.04", "name: db\n        source: debian-12"))
        db = _record("db", {"cores": 2, "memory": 2048})
        web_attrs = {"cores": 2, "memory": 2048, "env": {"DB_HOST": db.attributes["address"]}}
        snapshot = {"db": db, "web": _record("web", web_attrs, deps=["db"])}
        plan = compute_plan(desired, snapshot)
        assert plan.get("db").kind == OperationKind.REPLACE
        # env is not mutable, and the new address is unknown until db exists
        assert plan.get("web").kind == OperationKind.REPLACE
        assert plan.get("web").changed == ["env"]

    def test_reference_to_declared_attribute(self, make_desired):
        desired = make_desired("""\
            resources:
              - {kind: virtual-machine, name: db, attributes: {memory: 2048}}
              - {kind: virtual-machine, name: web, attributes: {memory: "${db.memory}"}}
        """)
        plan = compute_plan(desired, {})
        assert plan.get("web").planned == {"memory": 2048}

    def test_missing_attribute_of_existing_resource(self, make_desired):
        desired = make_desired("""\
            resources:
              - {kind: virtual-machine, name: db, attributes: {memory: 2048}}
              - {kind: virtual-machine, name: web, attributes: {x: "${db.nonexistent}"}}
        """)
        snapshot = {"db": _record("db", {"memory": 2048}, source=None)}
        with pytest.raises(ValidationError, match="nonexistent"):
            compute_plan(desired, snapshot)


class TestLifecycle:
    def test_ignore_changes_keeps_recorded_value(self, make_desired):
        desired = make_desired("""\
            resources:
              - kind: virtual-machine
                name: web
                source: ubuntu-22.04
                attributes: {cores: 2, tags: [new]}
                lifecycle: {ignore_changes: [tags]}
        """)
        snapshot = {"web": _record("web", {"cores": 2, "tags": ["old"]})}
        op = compute_plan(desired, snapshot).get("web")
        assert op.kind == OperationKind.NOOP
        assert op.attributes["tags"] == ["old"]

    def test_ignore_changes_has_no_effect_on_create(self, make_desired):
        desired = make_desired("""\
            resources:
              - kind: virtual-machine
                name: web
                attributes: {tags: [new]}
                lifecycle: {ignore_changes: [tags]}
        """)
        op = compute_plan(desired, {}).get("web")
        assert op.kind == OperationKind.CREATE
        assert op.planned["tags"] == ["new"]

    def test_prevent_destroy_blocks_replace(self, make_desired):
        desired = make_desired("""\
            resources:
              - kind: virtual-machine
                name: web
                source: debian-12
                lifecycle: {prevent_destroy: true}
        """)
        snapshot = {"web": _record("web", {})}
        with pytest.raises(ValidationError, match="prevent_destroy") as exc:
            compute_plan(desired, snapshot)
        assert exc.value.resources == ["web"]

    def test_prevent_destroy_allows_update(self, make_desired):
        desired = make_desired("""\
            resources:
              - kind: virtual-machine
                name: web
                source: ubuntu-22.04
                attributes: {memory: 4096}
                lifecycle: {prevent_destroy: true}
        """)
        snapshot = {"web": _record("web", {"memory": 2048})}
        assert compute_plan(desired, snapshot).get("web").kind == OperationKind.UPDATE

    def test_prevent_destroy_blocks_teardown(self, make_desired):
        desired = make_desired("""\
            resources:
              - {kind: virtual-machine, name: db, lifecycle: {prevent_destroy: true}}
        """)
        with pytest.raises(ValidationError, match="db"):
            compute_destroy_plan(desired, {"db": _record("db", {})})


class TestPlanIsPure:
    def test_snapshot_not_mutated(self, make_desired):
        desired = make_desired(WEB.format(source="debian-12", memory=4096))
        record = _record("web", {"cores": 2, "memory": 2048})
        before = record.model_dump()
        compute_plan(desired, {"web": record})
        assert record.model_dump() == before
