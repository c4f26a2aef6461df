"""Dependency graph builder for declared resources."""

import heapq
from typing import Any, Dict, List, Set, Optional
from dataclasses import dataclass, field
from collections import defaultdict, deque

from converge.config.models import LifecycleConfig, ResourceConfig
from converge.orchestrator.references import Reference, find_references
from converge.utils.errors import CycleError, ErrorContext, UnresolvedReferenceError


@dataclass
class DeclaredResource:
    """A resource as declared for this run."""

    id: str
    type: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    provider: Optional[str] = None
    index: int = 0  # Declaration order

    @classmethod
    def from_config(cls, config: ResourceConfig, index: int) -> "DeclaredResource":
        return cls(
            id=config.id,
            type=config.type,
            name=config.name,
            attributes=config.attributes,
            depends_on=list(config.depends_on),
            outputs=list(config.outputs),
            lifecycle=config.lifecycle,
            provider=config.provider,
            index=index,
        )

    def exports(self, attribute: str) -> bool:
        """Whether other resources may reference ``attribute``."""
        return attribute == "id" or attribute in self.attributes or attribute in self.outputs


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    resource_id: str
    resource: DeclaredResource
    dependencies: Set[str]  # Resource IDs this node depends on
    dependents: Set[str]  # Resource IDs that depend on this node
    references: List[Reference] = field(default_factory=list)


class DependencyGraph:
    """Directed acyclic graph (DAG) of declared resources.

    Edges come from reference expressions in attribute values and from
    explicit ``depends_on`` entries. References are resolved to typed
    :class:`Reference` edges once, here, and reused by the planner and
    executor.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, DependencyNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def build(cls, resources: List[ResourceConfig]) -> "DependencyGraph":
        """Build and validate a graph from resource blocks.

        Raises:
            UnresolvedReferenceError: If a reference has no target
            CycleError: If the references form a cycle
        """
        graph = cls()
        for index, config in enumerate(resources):
            graph.add_resource(DeclaredResource.from_config(config, index))
        graph.validate()
        return graph

    def add_resource(self, resource: DeclaredResource) -> None:
        """Add a resource and its outgoing edges.

        Args:
            resource: Resource to add to the graph
        """
        references = []
        for key in resource.attributes:
            references.extend(find_references(resource.attributes[key], resource.id, key))

        dependencies = {ref.target_id for ref in references} | set(resource.depends_on)
        node = DependencyNode(
            resource_id=resource.id,
            resource=resource,
            dependencies=dependencies,
            dependents=set(),
            references=references,
        )
        self.nodes[resource.id] = node

        for dep_id in dependencies:
            self._adjacency_list[dep_id].add(resource.id)
            if dep_id in self.nodes:
                self.nodes[dep_id].dependents.add(resource.id)

        for dependent_id in self._adjacency_list[resource.id]:
            node.dependents.add(dependent_id)

    def get_dependencies(self, resource_id: str) -> Set[str]:
        """Get direct dependencies of a resource."""
        if resource_id not in self.nodes:
            return set()
        return self.nodes[resource_id].dependencies.copy()

    def get_dependents(self, resource_id: str) -> Set[str]:
        """Get direct dependents of a resource."""
        return self._adjacency_list[resource_id].copy()

    def get_references(self, resource_id: str) -> List[Reference]:
        """Reference edges leaving a resource."""
        if resource_id not in self.nodes:
            return []
        return list(self.nodes[resource_id].references)

    def get_all_dependencies(self, resource_id: str) -> Set[str]:
        """Get all transitive dependencies of a resource."""
        visited = set()
        queue = deque([resource_id])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue
            visited.add(current_id)
            if current_id in self.nodes:
                for dep_id in self.nodes[current_id].dependencies:
                    if dep_id not in visited:
                        queue.append(dep_id)

        visited.discard(resource_id)
        return visited

    def get_all_dependents(self, resource_id: str) -> Set[str]:
        """Get all transitive dependents of a resource."""
        visited = set()
        queue = deque([resource_id])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue
            visited.add(current_id)
            for dependent_id in self._adjacency_list[current_id]:
                if dependent_id not in visited:
                    queue.append(dependent_id)

        visited.discard(resource_id)
        return visited

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            List of resource IDs forming a cycle (first node repeated at the
            end), or None if no cycle exists
        """
        # White (0): unvisited, Gray (1): on the current path, Black (2): done
        color = {node_id: 0 for node_id in self.nodes}
        path: List[str] = []

        def dfs(node_id: str) -> Optional[List[str]]:
            color[node_id] = 1
            path.append(node_id)

            for dep_id in self.ordered(self.nodes[node_id].dependencies):
                if dep_id not in color:
                    continue
                if color[dep_id] == 1:
                    start = path.index(dep_id)
                    return path[start:] + [dep_id]
                if color[dep_id] == 0:
                    cycle = dfs(dep_id)
                    if cycle:
                        return cycle

            path.pop()
            color[node_id] = 2
            return None

        for node_id in self.ordered(self.nodes):
            if color[node_id] == 0:
                cycle = dfs(node_id)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate references and acyclicity.

        Raises:
            UnresolvedReferenceError: If a reference targets a missing resource or attribute
            CycleError: If the graph contains a cycle
        """
        for node_id in self.ordered(self.nodes):
            node = self.nodes[node_id]
            for dep_id in node.resource.depends_on:
                if dep_id not in self.nodes:
                    raise UnresolvedReferenceError(
                        f"Resource '{node_id}' depends on '{dep_id}' which is not declared",
                        target_id=dep_id,
                        context=ErrorContext(resource_id=node_id)
                    )
            for ref in node.references:
                target = self.nodes.get(ref.target_id)
                if target is None:
                    raise UnresolvedReferenceError(
                        f"Resource '{node_id}' attribute '{ref.attribute_path}' references "
                        f"'{ref.target_id}' which is not declared",
                        target_id=ref.target_id,
                        attribute=ref.target_attribute,
                        context=ErrorContext(resource_id=node_id)
                    )
                if not target.resource.exports(ref.target_attribute):
                    raise UnresolvedReferenceError(
                        f"Resource '{node_id}' attribute '{ref.attribute_path}' references "
                        f"'{ref.target_id}.{ref.target_attribute}', which is neither an attribute "
                        f"nor a declared output of '{ref.target_id}'",
                        target_id=ref.target_id,
                        attribute=ref.target_attribute,
                        context=ErrorContext(resource_id=node_id),
                        suggestions=[f"Add '{ref.target_attribute}' to the outputs list of '{ref.target_id}'"]
                    )

        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CycleError(
                f"Circular dependency detected: {' -> '.join(cycle)}",
                cycle=cycle,
                context=ErrorContext(resource_id=cycle[0])
            )

    def topological_sort(self) -> List[str]:
        """Order resources so that dependencies come before dependents.

        Ties are broken by declaration order.

        Raises:
            CycleError: If graph contains cycles
        """
        in_degree = {
            node_id: len([d for d in node.dependencies if d in self.nodes])
            for node_id, node in self.nodes.items()
        }
        heap = [(self.nodes[n].resource.index, n) for n, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            _, node_id = heapq.heappop(heap)
            result.append(node_id)
            for dependent_id in self._adjacency_list[node_id]:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(heap, (self.nodes[dependent_id].resource.index, dependent_id))

        if len(result) != len(self.nodes):
            cycle = self.detect_circular_dependencies() or []
            raise CycleError(
                "Cannot perform topological sort: graph contains cycles",
                cycle=cycle
            )

        return result

    def get_deployment_waves(self) -> List[List[str]]:
        """Group resources into levels that could be applied in parallel.

        Raises:
            CycleError: If graph contains cycles
        """
        order = self.topological_sort()
        level: Dict[str, int] = {}
        for node_id in order:
            deps = [d for d in self.nodes[node_id].dependencies if d in self.nodes]
            level[node_id] = max((level[d] + 1 for d in deps), default=0)

        waves: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for node_id in order:
            waves[level[node_id]].append(node_id)
        return waves

    def get_destruction_order(self) -> List[str]:
        """Reverse of the deployment order."""
        return list(reversed(self.topological_sort()))

    def get_roots(self) -> List[str]:
        """Resources without dependencies, in declaration order."""
        return [n for n in self.ordered(self.nodes) if not self.nodes[n].dependencies]

    def get_resource(self, resource_id: str) -> Optional[DeclaredResource]:
        node = self.nodes.get(resource_id)
        return node.resource if node else None

    def has_resource(self, resource_id: str) -> bool:
        return resource_id in self.nodes

    def resources(self) -> List[DeclaredResource]:
        """All resources in declaration order."""
        return [self.nodes[n].resource for n in self.ordered(self.nodes)]

    def size(self) -> int:
        return len(self.nodes)

    def is_empty(self) -> bool:
        return len(self.nodes) == 0

    def ordered(self, resource_ids) -> List[str]:
        """Declared IDs in declaration order, unknown IDs last by name."""
        return sorted(
            resource_ids,
            key=lambda rid: (0, self.nodes[rid].resource.index, rid) if rid in self.nodes else (1, 0, rid)
        )
