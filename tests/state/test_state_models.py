"""Tests for state models."""

import pytest

from converge.state.models import ResourceState, Snapshot


def entry(resource_id, physical_id="p-1", **fields):
    type_, name = resource_id.split(".")
    return ResourceState(
        id=resource_id, type=type_, name=name, provider="local", physical_id=physical_id, **fields
    )


class TestResourceState:
    """Test reference lookups on applied resources."""

    def test_id_is_physical_id(self):
        assert entry("queue.a", physical_id="q-123").get_value("id") == "q-123"

    def test_outputs_take_precedence(self):
        resource = entry("queue.a", attributes={"arn": "declared", "size": 1}, outputs={"arn": "assigned"})

        assert resource.get_value("arn") == "assigned"
        assert resource.get_value("size") == 1

    def test_missing_value(self):
        resource = entry("queue.a")

        assert not resource.has_value("arn")
        with pytest.raises(KeyError):
            resource.get_value("arn")


class TestSnapshot:
    """Test snapshot bookkeeping."""

    def test_add_and_remove(self):
        snapshot = Snapshot(project_name="test")
        snapshot.add_resource(entry("queue.a"))

        assert snapshot.has_resource("queue.a")
        assert snapshot.remove_resource("queue.a").id == "queue.a"
        assert snapshot.remove_resource("queue.a") is None
        assert snapshot.is_empty()

    def test_dependents_from_recorded_dependencies(self):
        snapshot = Snapshot(project_name="test")
        snapshot.add_resource(entry("network.a"))
        snapshot.add_resource(entry("subnet.c", dependencies=["network.a"]))
        snapshot.add_resource(entry("subnet.b", dependencies=["network.a"]))

        assert snapshot.get_dependents("network.a") == ["subnet.b", "subnet.c"]
        assert snapshot.get_dependents("subnet.b") == []

    def test_deposed_objects(self):
        snapshot = Snapshot(project_name="test")
        snapshot.add_deposed(entry("network.a", physical_id="old-1"))
        snapshot.add_deposed(entry("network.a", physical_id="old-2"))

        assert not snapshot.is_empty()
        assert snapshot.remove_deposed("network.a", "old-1").physical_id == "old-1"
        assert snapshot.remove_deposed("network.a", "old-1") is None
        assert [d.physical_id for d in snapshot.deposed] == ["old-2"]

    def test_list_resources_sorted(self):
        snapshot = Snapshot(project_name="test")
        for rid in ("queue.b", "network.a", "queue.a"):
            snapshot.add_resource(entry(rid))

        assert [r.id for r in snapshot.list_resources()] == ["network.a", "queue.a", "queue.b"]

    def test_json_round_trip_keeps_lineage(self):
        snapshot = Snapshot(project_name="test")
        snapshot.add_resource(entry("queue.a", attributes={"size": 2}))

        restored = Snapshot.model_validate(snapshot.model_dump(mode="json"))

        assert restored.lineage == snapshot.lineage
        assert restored.get_resource("queue.a").attributes == {"size": 2}
