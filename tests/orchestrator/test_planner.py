"""Tests for the deployment planner."""

import pytest

from converge.orchestrator.dependency_graph import DependencyGraph
from converge.orchestrator.planner import ChangeType, DeploymentPlanner, SENSITIVE_MASK
from converge.orchestrator.references import UNKNOWN
from converge.state.models import ResourceState, Snapshot
from converge.utils.errors import UnresolvedReferenceError, ValidationError


def resource(type_, name, **fields):
    return {"type": type_, "name": name, **fields}


def state_entry(resource_id, physical_id, attributes, dependencies=(), **fields):
    type_, name = resource_id.split(".")
    return ResourceState(
        id=resource_id,
        type=type_,
        name=name,
        provider=fields.pop("provider", "local"),
        physical_id=physical_id,
        attributes=attributes,
        dependencies=list(dependencies),
        **fields
    )


def network(cidr="10.0.0.0/16", **lifecycle):
    return resource(
        "network", "a",
        attributes={"cidr_block": cidr, "tags": {"env": "dev"}},
        lifecycle={"immutable": ["cidr_block"], **lifecycle},
    )


def subnet(**fields):
    fields.setdefault("attributes", {"network_id": "${network.a.id}", "zone": "z1"})
    return resource("subnet", "b", **fields)


@pytest.fixture
def applied_snapshot():
    """Snapshot after network.a and subnet.b were applied."""
    snapshot = Snapshot(project_name="test")
    snapshot.add_resource(state_entry(
        "network.a", "net-1", {"cidr_block": "10.0.0.0/16", "tags": {"env": "dev"}},
        outputs={"arn": "local:network:net-1"},
    ))
    snapshot.add_resource(state_entry(
        "subnet.b", "sub-1", {"network_id": "net-1", "zone": "z1"}, dependencies=["network.a"],
    ))
    return snapshot


@pytest.fixture
def plan_for(make_config):
    def _plan(resources, snapshot):
        graph = DependencyGraph.build(make_config(resources).resources)
        return DeploymentPlanner().create_plan(graph, snapshot)
    return _plan


class TestCreatePlan:
    """Test classification and ordering of apply plans."""

    def test_empty_state_creates_in_dependency_order(self, plan_for):
        plan = plan_for([network(), subnet()], Snapshot(project_name="test"))

        assert plan.action_ids() == ["create:network.a", "create:subnet.b"]
        assert plan.get_action("create:subnet.b").depends_on == {"create:network.a"}
        assert plan.changes["subnet.b"].attributes["network_id"] is UNKNOWN
        assert plan.get_summary()["create"] == 2

    def test_unchanged_declaration_yields_empty_plan(self, plan_for, applied_snapshot):
        plan = plan_for([network(), subnet()], applied_snapshot)

        assert not plan.has_changes()
        assert plan.actions == []
        assert plan.get_summary()["no_change"] == 2

    def test_mutable_change_is_an_update(self, plan_for, applied_snapshot):
        changed = subnet(attributes={"network_id": "${network.a.id}", "zone": "z2"})

        plan = plan_for([network(), changed], applied_snapshot)

        assert plan.action_ids() == ["update:subnet.b"]
        change = plan.changes["subnet.b"]
        assert change.change_type == ChangeType.UPDATE
        assert [(a.name, a.before, a.after) for a in change.attribute_changes] == [("zone", "z1", "z2")]

    def test_updated_value_flows_into_dependents(self, plan_for, applied_snapshot):
        retagged = resource(
            "network", "a",
            attributes={"cidr_block": "10.0.0.0/16", "tags": {"env": "prod"}},
            lifecycle={"immutable": ["cidr_block"]},
        )
        tagged_subnet = subnet(attributes={"network_id": "${network.a.id}", "zone": "z1", "tags": "${network.a.tags}"})

        plan = plan_for([retagged, tagged_subnet], applied_snapshot)

        assert plan.action_ids() == ["update:network.a", "update:subnet.b"]
        assert plan.changes["subnet.b"].attributes["tags"] == {"env": "prod"}

    def test_outputs_of_an_updated_resource_are_unknown(self, plan_for, applied_snapshot):
        retagged = dict(
            network(),
            attributes={"cidr_block": "10.0.0.0/16", "tags": {"env": "prod"}},
            outputs=["arn"],
        )
        arn_user = subnet(attributes={"network_id": "${network.a.id}", "zone": "z1", "arn": "${network.a.arn}"})
        applied_snapshot.get_resource("subnet.b").attributes["arn"] = "local:network:net-1"

        plan = plan_for([retagged, arn_user], applied_snapshot)

        assert plan.action_ids() == ["update:network.a", "update:subnet.b"]
        attributes = plan.changes["subnet.b"].attributes
        assert attributes["arn"] is UNKNOWN
        assert attributes["network_id"] == "net-1"

    def test_destroy_before_create_replacement(self, plan_for, applied_snapshot):
        plan = plan_for([network(cidr="10.1.0.0/16"), subnet()], applied_snapshot)

        assert plan.action_ids() == ["delete:network.a", "create:network.a", "update:subnet.b"]
        assert plan.changes["network.a"].change_type == ChangeType.REPLACE
        assert plan.changes["subnet.b"].change_type == ChangeType.UPDATE
        assert plan.changes["subnet.b"].attributes["network_id"] is UNKNOWN
        assert plan.get_action("create:network.a").depends_on == {"delete:network.a"}

    def test_create_before_destroy_replacement(self, plan_for, applied_snapshot):
        plan = plan_for([network(cidr="10.1.0.0/16", create_before_destroy=True), subnet()], applied_snapshot)

        assert plan.action_ids() == ["create:network.a", "update:subnet.b", "delete:network.a"]
        assert plan.get_action("delete:network.a").depends_on == {"create:network.a", "update:subnet.b"}

    def test_create_before_destroy_propagates_to_replaced_dependencies(self, plan_for, applied_snapshot):
        pinned = subnet(lifecycle={"immutable": ["network_id"], "create_before_destroy": True})

        plan = plan_for([network(cidr="10.1.0.0/16"), pinned], applied_snapshot)

        assert plan.changes["network.a"].create_before_destroy is True
        assert plan.action_ids() == [
            "create:network.a",
            "create:subnet.b",
            "delete:subnet.b",
            "delete:network.a",
        ]

    def test_immutable_change_reports_forcing_attribute(self, plan_for, applied_snapshot):
        plan = plan_for([network(cidr="10.1.0.0/16"), subnet()], applied_snapshot)

        forcing = [a.name for a in plan.changes["network.a"].attribute_changes if a.forces_replacement]
        assert forcing == ["cidr_block"]

    def test_provider_change_forces_replacement(self, plan_for, applied_snapshot):
        moved = dict(network(), provider="other")

        plan = plan_for([moved, subnet()], applied_snapshot)

        assert plan.changes["network.a"].change_type == ChangeType.REPLACE
        assert plan.get_action("create:network.a").provider == "other"
        assert plan.get_action("delete:network.a").provider == "local"

    def test_removed_resource_is_deleted(self, plan_for, applied_snapshot):
        plan = plan_for([network()], applied_snapshot)

        assert plan.action_ids() == ["delete:subnet.b"]
        assert plan.changes["subnet.b"].reason == "Resource no longer in declaration"

    def test_removed_resources_deleted_dependents_first(self, plan_for, applied_snapshot):
        plan = plan_for([], applied_snapshot)

        assert plan.action_ids() == ["delete:subnet.b", "delete:network.a"]

    def test_ignore_changes_keeps_applied_value(self, plan_for, applied_snapshot):
        ignored = subnet(
            attributes={"network_id": "${network.a.id}", "zone": "z9"},
            lifecycle={"ignore_changes": ["zone"]},
        )

        plan = plan_for([network(), ignored], applied_snapshot)

        assert not plan.has_changes()

    def test_prevent_destroy_blocks_replacement(self, plan_for, applied_snapshot):
        guarded = network(cidr="10.1.0.0/16", prevent_destroy=True)

        with pytest.raises(ValidationError, match="prevent_destroy"):
            plan_for([guarded, subnet()], applied_snapshot)

    def test_deposed_objects_are_deleted(self, plan_for, applied_snapshot):
        applied_snapshot.add_deposed(state_entry("network.a", "net-0", {"cidr_block": "10.9.0.0/16"}))

        plan = plan_for([network(), subnet()], applied_snapshot)

        assert plan.action_ids() == ["delete:network.a#net-0"]
        assert plan.actions[0].change.deposed is True

    def test_missing_output_is_unresolved(self, plan_for, applied_snapshot):
        acl_user = subnet(attributes={"network_id": "${network.a.id}", "zone": "z1", "acl": "${network.a.acl_id}"})
        with_output = dict(network(), outputs=["acl_id"])

        with pytest.raises(UnresolvedReferenceError):
            plan_for([with_output, acl_user], applied_snapshot)

    def test_plans_are_deterministic(self, plan_for, applied_snapshot):
        resources = [
            resource("queue", "z"),
            resource("queue", "y"),
            network(cidr="10.1.0.0/16", create_before_destroy=True),
            subnet(),
        ]

        first = plan_for(resources, applied_snapshot)
        second = plan_for(resources, applied_snapshot)

        assert first.action_ids() == second.action_ids()
        assert first.to_dict()["actions"] == second.to_dict()["actions"]

    def test_sensitive_values_are_masked(self, plan_for):
        secret = resource(
            "database", "main",
            attributes={"password": "hunter2", "size": 10},
            lifecycle={"sensitive": ["password"]},
        )

        plan = plan_for([secret], Snapshot(project_name="test"))
        attributes = {a["name"]: a for a in plan.to_dict()["changes"]["database.main"]["attributes"]}

        assert attributes["password"]["after"] == SENSITIVE_MASK
        assert attributes["size"]["after"] == 10
        assert "hunter2" not in str(plan.to_dict())

    def test_values_built_from_sensitive_references_are_masked(self, plan_for):
        snapshot = Snapshot(project_name="test")
        snapshot.add_resource(state_entry(
            "database.main", "db-1", {"password": "hunter2"}, sensitive=["password"],
        ))
        resources = [
            resource("database", "main", attributes={"password": "hunter2"}, lifecycle={"sensitive": ["password"]}),
            resource("app", "web", attributes={"dsn": "postgres://u:${database.main.password}@db", "port": 80}),
            resource("worker", "w", attributes={"dsn": "${app.web.dsn}"}),
        ]

        plan = plan_for(resources, snapshot)

        assert plan.changes["app.web"].sensitive == ["dsn"]
        assert plan.changes["worker.w"].sensitive == ["dsn"]
        assert plan.changes["app.web"].attributes["dsn"] == "postgres://u:hunter2@db"
        web = {a["name"]: a for a in plan.to_dict()["changes"]["app.web"]["attributes"]}
        assert web["dsn"]["after"] == SENSITIVE_MASK
        assert web["port"]["after"] == 80
        assert "hunter2" not in str(plan.to_dict())


class TestDestructionPlan:
    """Test destroy plans."""

    def test_deletes_dependents_first(self, applied_snapshot):
        plan = DeploymentPlanner().create_destruction_plan(applied_snapshot)

        assert plan.destroy is True
        assert plan.action_ids() == ["delete:subnet.b", "delete:network.a"]
        assert plan.get_summary()["delete"] == 2

    def test_prevent_destroy_blocks_destroy(self, make_config, applied_snapshot):
        graph = DependencyGraph.build(make_config([network(prevent_destroy=True), subnet()]).resources)

        with pytest.raises(ValidationError):
            DeploymentPlanner().create_destruction_plan(applied_snapshot, graph)

    def test_empty_state_has_nothing_to_destroy(self):
        plan = DeploymentPlanner().create_destruction_plan(Snapshot(project_name="test"))

        assert not plan.has_changes()
