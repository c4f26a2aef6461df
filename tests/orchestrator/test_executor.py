"""Tests for plan execution."""

import threading
import time

import pytest

from converge.orchestrator.dependency_graph import DependencyGraph
from converge.orchestrator.executor import DeploymentExecutor, ExecutionStatus
from converge.orchestrator.orchestrator import DeploymentOrchestrator
from converge.orchestrator.planner import DeploymentPlanner
from converge.provisioners.base import BaseProvider, ProviderRegistry
from converge.state.manager import StateManager
from converge.state.models import Snapshot
from converge.utils.errors import StateError


def resource(type_, name, **fields):
    return {"type": type_, "name": name, **fields}


def two_branches():
    """network.a <- subnet.b and queue.c <- consumer.d."""
    return [
        resource("network", "a", attributes={"cidr_block": "10.0.0.0/16"}),
        resource("subnet", "b", attributes={"network_id": "${network.a.id}"}),
        resource("queue", "c", attributes={"fifo": False}),
        resource("consumer", "d", attributes={"queue_arn": "${queue.c.arn}"}),
    ]


def two_branches_with_outputs():
    resources = two_branches()
    resources[2]["outputs"] = ["arn"]
    return resources


class BarrierProvider(BaseProvider):
    """Creates block until two calls are in flight at once."""

    name = "barrier"

    def __init__(self):
        self.barrier = threading.Barrier(2, timeout=5)

    def create(self, resource_type, attributes):
        self.barrier.wait()
        return f"{resource_type}-1", {}

    def read(self, resource_type, physical_id):
        return {}

    def update(self, resource_type, physical_id, attributes, previous=None):
        return {}

    def delete(self, resource_type, physical_id):
        pass


class OddOutputsProvider(BaseProvider):
    """Returns outputs that are not plain JSON data for type "odd"; "slow" takes a while."""

    name = "odd"

    def __init__(self):
        self.created = []

    def create(self, resource_type, attributes):
        if resource_type == "slow":
            time.sleep(0.3)
        self.created.append(resource_type)
        if resource_type == "odd":
            return "odd-1", {"zones": ("a", "b"), "handle": object()}
        return f"{resource_type}-1", {"zones": ("a", "b")}

    def read(self, resource_type, physical_id):
        return {}

    def update(self, resource_type, physical_id, attributes, previous=None):
        return {}

    def delete(self, resource_type, physical_id):
        pass


class VersionedProvider(BaseProvider):
    """Bumps a "version" output on every update."""

    name = "versioned"

    def __init__(self):
        self.versions = {}

    def create(self, resource_type, attributes):
        physical_id = f"{resource_type}-{len(self.versions) + 1}"
        self.versions[physical_id] = 1
        return physical_id, {"version": 1}

    def read(self, resource_type, physical_id):
        return {"version": self.versions[physical_id]}

    def update(self, resource_type, physical_id, attributes, previous=None):
        self.versions[physical_id] += 1
        return {"version": self.versions[physical_id]}

    def delete(self, resource_type, physical_id):
        self.versions.pop(physical_id, None)


class FlakyStateManager(StateManager):
    """Fails the given save calls (1-based) with a disk error."""

    def __init__(self, state_path, failing_calls):
        super().__init__(state_path)
        self.failing_calls = set(failing_calls)
        self.save_calls = 0

    def save(self, snapshot):
        self.save_calls += 1
        if self.save_calls in self.failing_calls:
            raise StateError("Failed to save state file: disk full")
        super().save(snapshot)


def run_with(provider, state_manager, make_config, resources):
    registry = ProviderRegistry()
    registry.register(provider)
    graph = DependencyGraph.build(make_config(resources).resources)
    plan = DeploymentPlanner(lambda r: provider.name).create_plan(graph, Snapshot(project_name="test"))
    return DeploymentExecutor(registry, state_manager, max_workers=2).execute(plan, Snapshot(project_name="test"))


class TestExecution:
    """Test applying plans."""

    def test_apply_records_concrete_state(self, run_apply, state_manager):
        plan, result = run_apply(two_branches_with_outputs())

        assert result.status == ExecutionStatus.SUCCESS
        assert result.succeeded == 4
        snapshot = state_manager.load()
        network = snapshot.get_resource("network.a")
        subnet = snapshot.get_resource("subnet.b")
        assert subnet.attributes["network_id"] == network.physical_id
        assert subnet.dependencies == ["network.a"]
        consumer = snapshot.get_resource("consumer.d")
        assert consumer.attributes["queue_arn"] == snapshot.get_resource("queue.c").outputs["arn"]

    def test_second_plan_is_empty(self, run_apply):
        run_apply(two_branches_with_outputs())

        plan, result = run_apply(two_branches_with_outputs())

        assert plan.actions == []
        assert result.status == ExecutionStatus.SUCCESS

    def test_snapshot_saved_after_each_action(self, run_apply, state_manager):
        run_apply([resource("queue", "a"), resource("queue", "b")])

        # One save when the state file is initialized, then one per action
        assert state_manager.load().serial == 3

    def test_progress_callback_sees_each_action(self, run_apply):
        events = []

        run_apply(
            [resource("queue", "a")],
            progress_callback=lambda action, status, message: events.append((action.action_id, status)),
        )

        assert events == [
            ("create:queue.a", ExecutionStatus.IN_PROGRESS),
            ("create:queue.a", ExecutionStatus.SUCCESS),
        ]

    def test_sequential_execution(self, run_apply, local_provider):
        plan, result = run_apply(two_branches_with_outputs(), parallel=False)

        assert result.status == ExecutionStatus.SUCCESS
        created = [call[1] for call in local_provider.calls if call[0] == "create"]
        assert created == ["network", "subnet", "queue", "consumer"]

    def test_independent_actions_run_concurrently(self, make_config, state_manager):
        registry = ProviderRegistry()
        registry.register(BarrierProvider())
        graph = DependencyGraph.build(make_config([resource("queue", "a"), resource("queue", "b")]).resources)
        plan = DeploymentPlanner(lambda r: "barrier").create_plan(graph, Snapshot(project_name="test"))

        result = DeploymentExecutor(registry, state_manager, max_workers=2).execute(
            plan, Snapshot(project_name="test")
        )

        assert result.status == ExecutionStatus.SUCCESS

    def test_update_uses_recorded_physical_id(self, run_apply, local_provider, state_manager):
        run_apply([resource("queue", "a", attributes={"size": 1})])
        physical_id = state_manager.load().get_resource("queue.a").physical_id

        plan, result = run_apply([resource("queue", "a", attributes={"size": 2})])

        assert plan.action_ids() == ["update:queue.a"]
        assert local_provider.calls[-1] == ("update", "queue", physical_id)
        assert state_manager.load().get_resource("queue.a").attributes == {"size": 2}

    def test_dependents_follow_outputs_changed_by_update(self, make_config, state_manager):
        registry = ProviderRegistry()
        registry.register(VersionedProvider())

        def run(size):
            config = make_config([
                resource("db", "a", attributes={"size": size}, outputs=["version"]),
                resource("app", "b", attributes={"db_version": "${db.a.version}"}),
            ])
            orchestrator = DeploymentOrchestrator(config, state_manager, registry)
            with orchestrator.locked():
                plan = orchestrator.plan()
                orchestrator.apply(plan)
            return plan.action_ids()

        run(1)

        assert run(2) == ["update:db.a", "update:app.b"]
        assert state_manager.load().get_resource("app.b").attributes == {"db_version": 2}
        assert run(2) == []

    def test_destroy_removes_everything(self, run_apply, local_provider, state_manager):
        run_apply(two_branches_with_outputs())

        plan, result = run_apply(two_branches_with_outputs(), destroy=True)

        assert result.status == ExecutionStatus.SUCCESS
        assert plan.action_ids()[:2] == ["delete:subnet.b", "delete:network.a"]
        assert state_manager.load().is_empty()
        assert local_provider.list_objects() == {}


class TestReplacement:
    """Test replacement of immutable resources."""

    @staticmethod
    def stack(cidr, **lifecycle):
        return [
            resource(
                "network", "a",
                attributes={"cidr_block": cidr},
                lifecycle={"immutable": ["cidr_block"], **lifecycle},
            ),
            resource("subnet", "b", attributes={"network_id": "${network.a.id}"}),
        ]

    def test_destroy_before_create(self, run_apply, local_provider, state_manager):
        run_apply(self.stack("10.0.0.0/16"))
        old_id = state_manager.load().get_resource("network.a").physical_id
        local_provider.calls.clear()

        plan, result = run_apply(self.stack("10.1.0.0/16"))

        assert result.status == ExecutionStatus.SUCCESS
        assert [call[:2] for call in local_provider.calls] == [
            ("delete", "network"),
            ("create", "network"),
            ("update", "subnet"),
        ]
        snapshot = state_manager.load()
        new_id = snapshot.get_resource("network.a").physical_id
        assert new_id != old_id
        assert snapshot.get_resource("subnet.b").attributes["network_id"] == new_id

    def test_create_before_destroy(self, run_apply, local_provider, state_manager):
        run_apply(self.stack("10.0.0.0/16", create_before_destroy=True))
        old_id = state_manager.load().get_resource("network.a").physical_id
        local_provider.calls.clear()

        plan, result = run_apply(self.stack("10.1.0.0/16", create_before_destroy=True))

        assert result.status == ExecutionStatus.SUCCESS
        assert local_provider.calls[-1] == ("delete", "network", old_id)
        snapshot = state_manager.load()
        assert snapshot.deposed == []
        assert old_id not in local_provider.list_objects()
        assert len(local_provider.list_objects()) == 2

    def test_failed_delete_leaves_deposed_object(self, run_apply, local_provider, state_manager):
        run_apply(self.stack("10.0.0.0/16", create_before_destroy=True))
        old_id = state_manager.load().get_resource("network.a").physical_id
        local_provider.inject_failure("network", "delete")

        plan, result = run_apply(self.stack("10.1.0.0/16", create_before_destroy=True))

        assert result.status == ExecutionStatus.PARTIAL
        snapshot = state_manager.load()
        assert [d.physical_id for d in snapshot.deposed] == [old_id]
        assert snapshot.get_resource("network.a").physical_id != old_id

        local_provider.clear_failures()
        plan, result = run_apply(self.stack("10.1.0.0/16", create_before_destroy=True))

        assert plan.action_ids() == [f"delete:network.a#{old_id}"]
        assert result.status == ExecutionStatus.SUCCESS
        assert state_manager.load().deposed == []


class TestFailures:
    """Test failure isolation, skipping and cancellation."""

    def test_failure_skips_dependents_only(self, run_apply, local_provider, state_manager):
        local_provider.inject_failure("queue", "create")

        plan, result = run_apply(two_branches_with_outputs())

        assert result.status == ExecutionStatus.PARTIAL
        statuses = {aid: r.status for aid, r in result.action_results.items()}
        assert statuses == {
            "create:network.a": ExecutionStatus.SUCCESS,
            "create:subnet.b": ExecutionStatus.SUCCESS,
            "create:queue.c": ExecutionStatus.FAILED,
            "create:consumer.d": ExecutionStatus.SKIPPED,
        }
        assert result.action_results["create:consumer.d"].reason == "Dependency queue.c failed"
        assert "injected failure" in result.get_failure_summary()["queue.c"]
        assert sorted(state_manager.load().resources) == ["network.a", "subnet.b"]

    def test_rerun_only_touches_what_did_not_converge(self, run_apply, local_provider):
        local_provider.inject_failure("queue", "create")
        run_apply(two_branches_with_outputs())
        local_provider.clear_failures()

        plan, result = run_apply(two_branches_with_outputs())

        assert set(plan.action_ids()) == {"create:queue.c", "create:consumer.d"}
        assert result.status == ExecutionStatus.SUCCESS

    def test_skips_cascade_transitively(self, run_apply, local_provider):
        local_provider.inject_failure("network")
        chain = [
            resource("network", "a"),
            resource("subnet", "b", depends_on=["network.a"]),
            resource("function", "c", depends_on=["subnet.b"]),
        ]

        plan, result = run_apply(chain)

        assert result.status == ExecutionStatus.FAILED
        assert result.skipped == 2
        assert result.action_results["create:function.c"].reason == "Dependency network.a failed"

    def test_missing_output_fails_at_apply(self, run_apply, state_manager):
        resources = [
            resource("network", "a", outputs=["endpoint"]),
            resource("subnet", "b", attributes={"url": "${network.a.endpoint}"}),
        ]

        plan, result = run_apply(resources)

        assert result.status == ExecutionStatus.PARTIAL
        failed = result.action_results["create:subnet.b"]
        assert failed.status == ExecutionStatus.FAILED
        assert "network.a.endpoint" in failed.reason
        assert sorted(state_manager.load().resources) == ["network.a"]

    def test_preset_cancel_starts_nothing(self, run_apply, local_provider, state_manager):
        cancel = threading.Event()
        cancel.set()

        plan, result = run_apply(two_branches(), cancel_event=cancel)

        assert result.status == ExecutionStatus.CANCELED
        assert result.canceled == 4
        assert local_provider.calls == []
        assert state_manager.load().resources == {}

    def test_cancel_lets_started_actions_finish(self, run_apply, state_manager):
        cancel = threading.Event()

        def on_progress(action, status, message):
            if status == ExecutionStatus.SUCCESS:
                cancel.set()

        chain = [resource("network", "a"), resource("subnet", "b", depends_on=["network.a"])]
        plan, result = run_apply(chain, cancel_event=cancel, progress_callback=on_progress)

        assert result.status == ExecutionStatus.CANCELED
        assert result.action_results["create:network.a"].status == ExecutionStatus.SUCCESS
        assert result.action_results["create:subnet.b"].status == ExecutionStatus.CANCELED
        assert sorted(state_manager.load().resources) == ["network.a"]

    def test_unknown_provider_fails_the_action(self, run_apply):
        plan, result = run_apply([resource("queue", "a", provider="missing")])

        assert result.status == ExecutionStatus.FAILED
        assert "Unknown provider 'missing'" in result.action_results["create:queue.a"].reason


@pytest.mark.parametrize("parallel", [True, False])
def test_partial_failure_is_the_same_in_both_modes(run_apply, local_provider, parallel):
    local_provider.inject_failure("queue", "create")

    plan, result = run_apply(two_branches_with_outputs(), parallel=parallel)

    assert result.status == ExecutionStatus.PARTIAL
    assert (result.succeeded, result.failed, result.skipped) == (2, 1, 1)


class TestRecordingFailures:
    """Test that every finished provider call is recorded even when recording goes wrong."""

    def test_tuple_outputs_are_stored_as_lists(self, make_config, state_manager):
        result = run_with(OddOutputsProvider(), state_manager, make_config, [resource("slow", "s")])

        assert result.status == ExecutionStatus.SUCCESS
        assert state_manager.load().get_resource("slow.s").outputs == {"zones": ["a", "b"]}

    def test_unstorable_output_fails_the_action_but_records_the_object(self, make_config, state_manager):
        provider = OddOutputsProvider()
        resources = [
            resource("slow", "s"),
            resource("odd", "b"),
            resource("app", "c", depends_on=["odd.b"]),
        ]

        result = run_with(provider, state_manager, make_config, resources)

        assert result.status == ExecutionStatus.PARTIAL
        failed = result.action_results["create:odd.b"]
        assert failed.status == ExecutionStatus.FAILED
        assert "handle" in failed.reason
        assert result.action_results["create:app.c"].status == ExecutionStatus.SKIPPED
        snapshot = state_manager.load()
        assert sorted(provider.created) == ["odd", "slow"]
        assert sorted(snapshot.resources) == ["odd.b", "slow.s"]
        assert snapshot.get_resource("odd.b").outputs == {"zones": ["a", "b"]}

    def test_failed_save_does_not_abandon_other_calls(self, make_config, tmp_path):
        manager = FlakyStateManager(str(tmp_path / "state.json"), failing_calls=[1])
        provider = OddOutputsProvider()

        result = run_with(provider, manager, make_config, [resource("fast", "f"), resource("slow", "s")])

        assert result.action_results["create:fast.f"].status == ExecutionStatus.FAILED
        assert "disk full" in result.action_results["create:fast.f"].reason
        assert result.action_results["create:slow.s"].status == ExecutionStatus.SUCCESS
        assert result.status == ExecutionStatus.PARTIAL
        assert sorted(manager.load().resources) == ["fast.f", "slow.s"]
