"""Planner that diffs the declaration against the state snapshot."""

import heapq
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from converge.orchestrator.dependency_graph import DeclaredResource, DependencyGraph
from converge.orchestrator.references import UNKNOWN, contains_unknown, find_references, resolve_value
from converge.state.models import ResourceState, Snapshot
from converge.utils.errors import (
    CycleError,
    ErrorContext,
    UnresolvedReferenceError,
    ValidationError,
)
from converge.utils.logging import get_logger

logger = get_logger(__name__)

SENSITIVE_MASK = "(sensitive)"


class ChangeType(Enum):
    """Type of change for a resource."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_CHANGE = "no_change"


@dataclass
class AttributeChange:
    """One attribute that differs between the snapshot and the declaration."""

    name: str
    before: Any = None
    after: Any = None
    sensitive: bool = False
    forces_replacement: bool = False

    def display(self, value: Any) -> Any:
        return SENSITIVE_MASK if self.sensitive and value is not None else value


@dataclass
class ResourceChange:
    """Classification of one resource."""

    resource_id: str
    resource_type: str
    change_type: ChangeType
    provider: str
    desired: Optional[DeclaredResource] = None
    prior: Optional[ResourceState] = None
    attributes: Dict[str, Any] = field(default_factory=dict)  # Planned values, may hold UNKNOWN
    attribute_changes: List[AttributeChange] = field(default_factory=list)
    create_before_destroy: bool = False
    deposed: bool = False
    reason: Optional[str] = None
    sensitive: List[str] = field(default_factory=list)  # Own and inherited through references

    @property
    def key(self) -> str:
        """Unique key; deposed objects are keyed by physical id as well."""
        if self.deposed and self.prior is not None:
            return f"{self.resource_id}#{self.prior.physical_id}"
        return self.resource_id


@dataclass
class PlannedAction:
    """A single provider call in the plan."""

    action_id: str
    resource_id: str
    resource_type: str
    action: ChangeType  # CREATE, UPDATE or DELETE
    provider: str
    change: ResourceChange
    replace: bool = False
    depends_on: Set[str] = field(default_factory=set)

    def describe(self) -> str:
        label = self.action.value
        if self.replace:
            label += " (replace)"
        if self.change.deposed:
            label += " (deposed)"
        return f"{label} {self.resource_id}"


@dataclass
class Plan:
    """Ordered actions plus the per-resource classification behind them."""

    actions: List[PlannedAction] = field(default_factory=list)
    changes: Dict[str, ResourceChange] = field(default_factory=dict)
    destroy: bool = False
    dependency_graph: Optional[DependencyGraph] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def has_changes(self) -> bool:
        return len(self.actions) > 0

    def get_action(self, action_id: str) -> Optional[PlannedAction]:
        for action in self.actions:
            if action.action_id == action_id:
                return action
        return None

    def action_ids(self) -> List[str]:
        return [action.action_id for action in self.actions]

    def get_changes_by_type(self, change_type: ChangeType) -> List[ResourceChange]:
        return [c for c in self.changes.values() if c.change_type == change_type]

    def get_summary(self) -> Dict[str, int]:
        """Count resources by change type."""
        summary = {change_type.value: 0 for change_type in ChangeType}
        for change in self.changes.values():
            summary[change.change_type.value] += 1
        return summary

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view with sensitive values masked."""
        return {
            "destroy": self.destroy,
            "created_at": self.created_at.isoformat(),
            "summary": self.get_summary(),
            "actions": [
                {
                    "id": action.action_id,
                    "resource": action.resource_id,
                    "type": action.resource_type,
                    "action": action.action.value,
                    "replace": action.replace,
                    "deposed": action.change.deposed,
                    "provider": action.provider,
                    "depends_on": sorted(action.depends_on),
                }
                for action in self.actions
            ],
            "changes": {
                key: {
                    "change": change.change_type.value,
                    "reason": change.reason,
                    "attributes": [
                        {
                            "name": attr.name,
                            "before": _jsonable(attr.display(attr.before)),
                            "after": _jsonable(attr.display(attr.after)),
                            "forces_replacement": attr.forces_replacement,
                        }
                        for attr in change.attribute_changes
                    ],
                }
                for key, change in self.changes.items()
                if change.change_type != ChangeType.NO_CHANGE
            },
        }


def _jsonable(value: Any) -> Any:
    if value is UNKNOWN:
        return str(UNKNOWN)
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


def materialize_attributes(
    desired: DeclaredResource,
    prior: Optional[ResourceState],
    lookup: Callable[[str, str], Any]
) -> Dict[str, Any]:
    """Resolve a resource's attributes; ignored attributes keep their applied values."""
    attributes = {key: resolve_value(value, lookup) for key, value in desired.attributes.items()}
    if prior is not None:
        for key in desired.lifecycle.ignore_changes:
            if key in prior.attributes:
                attributes[key] = prior.attributes[key]
    return attributes


def default_provider_resolver(resource: DeclaredResource) -> str:
    return resource.provider or "local"


class DeploymentPlanner:
    """Creates apply and destroy plans. Planning never mutates anything."""

    def __init__(self, provider_resolver: Optional[Callable[[DeclaredResource], str]] = None):
        """
        Args:
            provider_resolver: Maps a declared resource to its provider name
        """
        self.provider_resolver = provider_resolver or default_provider_resolver
        self.logger = get_logger(__name__)

    def create_plan(self, graph: DependencyGraph, snapshot: Snapshot) -> Plan:
        """Diff the declaration against the snapshot.

        Args:
            graph: Validated dependency graph of the declaration
            snapshot: Last persisted state

        Returns:
            Plan whose actions are topologically ordered

        Raises:
            UnresolvedReferenceError: If an applied resource lacks a referenced value
            ValidationError: If prevent_destroy would be violated
            CycleError: If the action ordering is unsatisfiable
        """
        self.logger.info("Creating plan...")
        changes: Dict[str, ResourceChange] = {}

        for resource_id in graph.topological_sort():
            desired = graph.get_resource(resource_id)
            prior = snapshot.get_resource(resource_id)
            changes[resource_id] = self._classify(desired, prior, changes, snapshot, graph)

        for resource_id in sorted(snapshot.resources):
            if not graph.has_resource(resource_id):
                prior = snapshot.resources[resource_id]
                changes[resource_id] = ResourceChange(
                    resource_id=resource_id,
                    resource_type=prior.type,
                    change_type=ChangeType.DELETE,
                    provider=prior.provider,
                    prior=prior,
                    create_before_destroy=prior.create_before_destroy,
                    reason="Resource no longer in declaration",
                )

        self._add_deposed(changes, snapshot)
        self._check_prevent_destroy(changes)
        self._propagate_create_before_destroy(changes, graph)

        plan = Plan(
            actions=self._build_actions(changes, graph, snapshot),
            changes=changes,
            destroy=False,
            dependency_graph=graph,
        )
        self._log_summary(plan)
        return plan

    def create_destruction_plan(self, snapshot: Snapshot, graph: Optional[DependencyGraph] = None) -> Plan:
        """Plan deletion of every resource in the snapshot.

        Args:
            snapshot: Last persisted state
            graph: Declaration graph, used for ordering ties and prevent_destroy

        Returns:
            Plan deleting dependents before their dependencies
        """
        self.logger.info("Creating destruction plan...")
        changes: Dict[str, ResourceChange] = {}

        for resource_id in sorted(snapshot.resources):
            prior = snapshot.resources[resource_id]
            desired = graph.get_resource(resource_id) if graph else None
            changes[resource_id] = ResourceChange(
                resource_id=resource_id,
                resource_type=prior.type,
                change_type=ChangeType.DELETE,
                provider=prior.provider,
                desired=desired,
                prior=prior,
                reason="Destroy requested",
            )

        self._add_deposed(changes, snapshot)
        self._check_prevent_destroy(changes)

        plan = Plan(
            actions=self._build_actions(changes, graph, snapshot),
            changes=changes,
            destroy=True,
            dependency_graph=graph,
        )
        self._log_summary(plan)
        return plan

    def _classify(
        self,
        desired: DeclaredResource,
        prior: Optional[ResourceState],
        changes: Dict[str, ResourceChange],
        snapshot: Snapshot,
        graph: DependencyGraph
    ) -> ResourceChange:
        """Classify one declared resource; its dependencies are already classified."""
        provider = self.provider_resolver(desired)
        sensitive = set(desired.lifecycle.sensitive) | self._inherited_sensitivity(desired, changes)

        def lookup(target_id: str, attribute: str) -> Any:
            return self._planned_value(desired.id, target_id, attribute, changes, snapshot, graph)

        attributes = materialize_attributes(desired, prior, lookup)
        change = ResourceChange(
            resource_id=desired.id,
            resource_type=desired.type,
            change_type=ChangeType.NO_CHANGE,
            provider=provider,
            desired=desired,
            prior=prior,
            attributes=attributes,
            create_before_destroy=desired.lifecycle.create_before_destroy,
            sensitive=sorted(sensitive),
        )

        if prior is None:
            change.change_type = ChangeType.CREATE
            change.reason = "Resource does not exist"
            change.attribute_changes = [
                AttributeChange(name=key, after=value, sensitive=key in sensitive)
                for key, value in sorted(attributes.items())
            ]
            return change

        immutable = set(desired.lifecycle.immutable)
        ignored = set(desired.lifecycle.ignore_changes)
        for key in sorted(set(attributes) | set(prior.attributes)):
            if key in ignored:
                continue
            before = prior.attributes.get(key)
            after = attributes.get(key)
            in_both = key in attributes and key in prior.attributes
            if in_both and before == after and not contains_unknown(after):
                continue
            change.attribute_changes.append(AttributeChange(
                name=key,
                before=before,
                after=after,
                sensitive=key in sensitive,
                forces_replacement=key in immutable,
            ))

        provider_changed = prior.provider != provider
        if not change.attribute_changes and not provider_changed:
            change.reason = "No changes detected"
            return change

        forcing = [a.name for a in change.attribute_changes if a.forces_replacement]
        if forcing or provider_changed:
            change.change_type = ChangeType.REPLACE
            if provider_changed:
                change.reason = f"Provider changed from {prior.provider} to {provider}"
            else:
                change.reason = f"Immutable attribute(s) changed: {', '.join(forcing)}"
        else:
            change.change_type = ChangeType.UPDATE
            change.reason = "Attributes changed: " + ", ".join(a.name for a in change.attribute_changes)
        return change

    @staticmethod
    def _inherited_sensitivity(desired: DeclaredResource, changes: Dict[str, ResourceChange]) -> Set[str]:
        """Attributes whose value is built from a sensitive value of another resource."""
        inherited = set()
        for key, value in desired.attributes.items():
            for ref in find_references(value, desired.id, key):
                target = changes.get(ref.target_id)
                if target is not None and ref.target_attribute in target.sensitive:
                    inherited.add(key)
        return inherited

    def _planned_value(
        self,
        source_id: str,
        target_id: str,
        attribute: str,
        changes: Dict[str, ResourceChange],
        snapshot: Snapshot,
        graph: DependencyGraph
    ) -> Any:
        """Value a reference will have once its target has been applied."""
        target_change = changes[target_id]
        if target_change.change_type in (ChangeType.CREATE, ChangeType.REPLACE):
            return UNKNOWN

        target = graph.get_resource(target_id)
        if target_change.change_type == ChangeType.UPDATE and attribute in target.attributes:
            return target_change.attributes[attribute]

        prior = snapshot.get_resource(target_id)
        try:
            value = prior.get_value(attribute)
        except KeyError:
            if attribute in target.attributes:
                return target_change.attributes[attribute]
            raise UnresolvedReferenceError(
                f"Resource '{source_id}' references '{target_id}.{attribute}', "
                f"but the provider did not return '{attribute}' for '{target_id}'",
                target_id=target_id,
                attribute=attribute,
                context=ErrorContext(resource_id=source_id)
            )

        # Provider outputs may change when the target is updated; only the id is stable
        if target_change.change_type == ChangeType.UPDATE and attribute != "id":
            return UNKNOWN
        return value

    def _add_deposed(self, changes: Dict[str, ResourceChange], snapshot: Snapshot) -> None:
        for prior in snapshot.deposed:
            change = ResourceChange(
                resource_id=prior.id,
                resource_type=prior.type,
                change_type=ChangeType.DELETE,
                provider=prior.provider,
                prior=prior,
                deposed=True,
                reason="Superseded object from an earlier replacement",
            )
            changes[change.key] = change

    def _check_prevent_destroy(self, changes: Dict[str, ResourceChange]) -> None:
        for change in changes.values():
            if change.deposed or change.desired is None:
                continue
            if change.desired.lifecycle.prevent_destroy and change.change_type in (
                ChangeType.DELETE, ChangeType.REPLACE
            ):
                raise ValidationError(
                    f"Resource '{change.resource_id}' has lifecycle.prevent_destroy set, "
                    f"but the plan would {change.change_type.value} it",
                    context=ErrorContext(resource_id=change.resource_id),
                    suggestions=[
                        "Revert the change that forces the replacement",
                        "Remove prevent_destroy if destroying it is intended"
                    ]
                )

    def _propagate_create_before_destroy(
        self,
        changes: Dict[str, ResourceChange],
        graph: DependencyGraph
    ) -> None:
        """A replaced dependency of a create-before-destroy replacement must also create first."""
        for resource_id in reversed(graph.topological_sort()):
            change = changes[resource_id]
            if change.change_type != ChangeType.REPLACE or not change.create_before_destroy:
                continue
            for dep_id in graph.get_dependencies(resource_id):
                dep_change = changes.get(dep_id)
                if dep_change and dep_change.change_type == ChangeType.REPLACE and not dep_change.create_before_destroy:
                    self.logger.debug(f"{dep_id} inherits create_before_destroy from {resource_id}")
                    dep_change.create_before_destroy = True

    def _build_actions(
        self,
        changes: Dict[str, ResourceChange],
        graph: Optional[DependencyGraph],
        snapshot: Snapshot
    ) -> List[PlannedAction]:
        """Decompose changes into provider calls and order them."""
        actions: Dict[str, PlannedAction] = {}
        apply_action: Dict[str, str] = {}
        destroy_action: Dict[str, str] = {}

        def add(action_id: str, change: ResourceChange, action: ChangeType, replace: bool = False) -> PlannedAction:
            actions[action_id] = PlannedAction(
                action_id=action_id,
                resource_id=change.resource_id,
                resource_type=change.resource_type,
                action=action,
                provider=change.provider if action != ChangeType.DELETE or change.prior is None else change.prior.provider,
                change=change,
                replace=replace,
            )
            return actions[action_id]

        for key, change in changes.items():
            rid = change.resource_id
            if change.deposed:
                add(f"delete:{key}", change, ChangeType.DELETE)
            elif change.change_type == ChangeType.CREATE:
                apply_action[rid] = add(f"create:{rid}", change, ChangeType.CREATE).action_id
            elif change.change_type == ChangeType.UPDATE:
                apply_action[rid] = add(f"update:{rid}", change, ChangeType.UPDATE).action_id
            elif change.change_type == ChangeType.DELETE:
                destroy_action[rid] = add(f"delete:{rid}", change, ChangeType.DELETE).action_id
            elif change.change_type == ChangeType.REPLACE:
                destroy_action[rid] = add(f"delete:{rid}", change, ChangeType.DELETE, replace=True).action_id
                apply_action[rid] = add(f"create:{rid}", change, ChangeType.CREATE, replace=True).action_id

        # Applies wait for the applies of their dependencies
        for rid, action_id in apply_action.items():
            for dep_id in graph.get_dependencies(rid) if graph else ():
                if dep_id in apply_action:
                    actions[action_id].depends_on.add(apply_action[dep_id])

        for rid, destroy_id in destroy_action.items():
            change = changes[rid]
            is_replace = change.change_type == ChangeType.REPLACE
            create_first = is_replace and change.create_before_destroy

            if is_replace:
                if create_first:
                    actions[destroy_id].depends_on.add(apply_action[rid])
                else:
                    actions[apply_action[rid]].depends_on.add(destroy_id)

            # Objects that still point at this one go (or move away) first
            for dependent_id in snapshot.get_dependents(rid):
                if dependent_id == rid:
                    continue
                if dependent_id in destroy_action:
                    actions[destroy_id].depends_on.add(destroy_action[dependent_id])
                if (not is_replace or create_first) and dependent_id in apply_action:
                    actions[destroy_id].depends_on.add(apply_action[dependent_id])

        return self._order(actions, changes, graph)

    def _order(
        self,
        actions: Dict[str, PlannedAction],
        changes: Dict[str, ResourceChange],
        graph: Optional[DependencyGraph]
    ) -> List[PlannedAction]:
        """Kahn's algorithm with a deterministic tie-break.

        Declared resources come in declaration order, then state-only
        resources by identifier, then deposed objects.
        """
        state_only = sorted(
            {c.resource_id for c in changes.values() if not (graph and graph.has_resource(c.resource_id))}
        )

        def sort_key(action: PlannedAction) -> Tuple:
            change = action.change
            if change.deposed:
                group, index = 2, 0
            elif graph and graph.has_resource(action.resource_id):
                group, index = 0, graph.get_resource(action.resource_id).index
            else:
                group, index = 1, state_only.index(action.resource_id)
            destroy_first = action.replace and not change.create_before_destroy
            if action.action == ChangeType.DELETE:
                phase = 0 if destroy_first else 1
            else:
                phase = 1 if destroy_first else 0
            return (group, index, phase, action.action_id)

        dependents: Dict[str, List[str]] = {action_id: [] for action_id in actions}
        in_degree = {action_id: len(action.depends_on) for action_id, action in actions.items()}
        for action_id, action in actions.items():
            for upstream in action.depends_on:
                dependents[upstream].append(action_id)

        heap = [(sort_key(actions[a]), a) for a, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        ordered = []
        while heap:
            _, action_id = heapq.heappop(heap)
            ordered.append(actions[action_id])
            for dependent_id in dependents[action_id]:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(heap, (sort_key(actions[dependent_id]), dependent_id))

        if len(ordered) != len(actions):
            stuck = sorted(a for a, degree in in_degree.items() if degree > 0)
            raise CycleError(
                f"Plan actions cannot be ordered; cycle among: {', '.join(stuck)}",
                cycle=stuck
            )

        return ordered

    def _log_summary(self, plan: Plan) -> None:
        summary = plan.get_summary()
        self.logger.info(
            f"Plan created: {summary['create']} create, {summary['update']} update, "
            f"{summary['replace']} replace, {summary['delete']} delete, "
            f"{len(plan.actions)} actions"
        )
