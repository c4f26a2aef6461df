"""Main orchestrator that coordinates locking, planning and execution."""

import threading
from contextlib import contextmanager
from typing import Optional, Tuple

from converge.config.parser import Config
from converge.state.models import Snapshot
from converge.state.manager import StateManager
from converge.orchestrator.dependency_graph import DependencyGraph
from converge.orchestrator.planner import DeploymentPlanner, Plan
from converge.orchestrator.executor import (
    DeploymentExecutor,
    ExecutionResult,
    ProgressCallback
)
from converge.provisioners.base import ProviderRegistry
from converge.utils.errors import ErrorContext, ResourceNotFoundError, StateError, error_handler
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class DeploymentOrchestrator:
    """Runs one plan, apply or destroy against a declaration and its state.

    Planning and execution must happen while the state lock is held::

        with orchestrator.locked():
            plan = orchestrator.plan()
            result = orchestrator.apply(plan)
    """

    def __init__(
        self,
        config: Config,
        state_manager: StateManager,
        registry: ProviderRegistry,
        max_workers: Optional[int] = None
    ):
        """Initialize deployment orchestrator.

        Args:
            config: Loaded declaration
            state_manager: State manager for the project's state file
            registry: Provider plugins
            max_workers: Parallelism override (default settings.max_workers)
        """
        self.config = config
        self.state_manager = state_manager
        self.registry = registry

        self.planner = DeploymentPlanner(
            provider_resolver=lambda resource: registry.resolve_name(resource.type, resource.provider)
        )
        self.executor = DeploymentExecutor(
            registry=registry,
            state_manager=state_manager,
            max_workers=max_workers or config.settings.max_workers
        )
        self.snapshot: Optional[Snapshot] = None
        self.graph: Optional[DependencyGraph] = None
        self.logger = get_logger(__name__)

    @contextmanager
    def locked(self, timeout: Optional[float] = None):
        """Hold the state lock for the duration of the block.

        Raises:
            StateLockError: If another run holds the lock past the timeout
        """
        self.state_manager.lock(
            timeout=self.config.settings.lock_timeout if timeout is None else timeout
        )
        try:
            yield self
        finally:
            self.state_manager.unlock()

    def build_graph(self) -> DependencyGraph:
        """Build and validate the declaration's dependency graph."""
        self.graph = DependencyGraph.build(self.config.resources)
        return self.graph

    def load_snapshot(self) -> Snapshot:
        """Load the snapshot, creating an empty state file on first use."""
        self.snapshot = self.state_manager.load_or_initialize(self.config.project.name)
        return self.snapshot

    def plan(self, refresh: bool = False, destroy: bool = False) -> Plan:
        """Create an apply plan, or a destroy plan when ``destroy`` is set.

        Args:
            refresh: Read every recorded object from its provider first. The
                refreshed values live only in memory; the state file changes
                only when the plan is applied.
            destroy: Plan deletion of every recorded resource

        Returns:
            The plan; the snapshot it was computed from is kept on the orchestrator
        """
        self._require_lock()
        graph = self.build_graph()
        snapshot = self.load_snapshot()

        if refresh:
            snapshot = self.refresh(snapshot.model_copy(deep=True))
            self.snapshot = snapshot

        if destroy:
            return self.planner.create_destruction_plan(snapshot, graph)
        return self.planner.create_plan(graph, snapshot)

    def apply(
        self,
        plan: Plan,
        parallel: bool = True,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ExecutionResult:
        """Execute a plan produced by :meth:`plan` in the same locked block."""
        self._require_lock()
        if self.snapshot is None:
            raise StateError("apply called before plan; no snapshot is loaded")

        self.logger.info(f"Applying {len(plan.actions)} actions (parallel={parallel})...")
        return self.executor.execute(
            plan,
            self.snapshot,
            parallel=parallel,
            cancel_event=cancel_event,
            progress_callback=progress_callback
        )

    def destroy(
        self,
        parallel: bool = True,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> Tuple[Plan, ExecutionResult]:
        """Plan and execute deletion of every recorded resource."""
        plan = self.plan(destroy=True)
        return plan, self.apply(
            plan,
            parallel=parallel,
            cancel_event=cancel_event,
            progress_callback=progress_callback
        )

    def refresh(self, snapshot: Snapshot) -> Snapshot:
        """Update recorded values in ``snapshot`` from what the providers report.

        Objects the provider no longer has are dropped from the snapshot so
        that the next plan creates them again. Nothing is saved here.
        """
        self.logger.info(f"Refreshing {len(snapshot.resources)} resources...")
        for resource in snapshot.list_resources():
            provider = self.registry.get(resource.provider)
            try:
                current = provider.read(resource.type, resource.physical_id)
            except ResourceNotFoundError:
                self.logger.warning(f"{resource.id} ({resource.physical_id}) no longer exists")
                snapshot.remove_resource(resource.id)
                continue
            except Exception as e:
                raise error_handler.handle_exception(
                    e,
                    ErrorContext(
                        resource_id=resource.id,
                        resource_type=resource.type,
                        operation="read",
                        provider=resource.provider
                    )
                )

            attributes = {
                key: current.get(key, value) for key, value in resource.attributes.items()
            }
            outputs = {
                key: value for key, value in current.items() if key not in resource.attributes
            }
            if attributes != resource.attributes or outputs != resource.outputs:
                self.logger.info(f"{resource.id} drifted from its recorded values")
                resource.attributes = attributes
                resource.outputs = outputs

        return snapshot

    def _require_lock(self) -> None:
        if not self.state_manager.is_locked:
            raise StateError(
                "The state lock must be held while planning or applying",
                suggestions=["Wrap the call in 'with orchestrator.locked():'"]
            )
