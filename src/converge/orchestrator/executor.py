"""Plan executor with dependency-driven parallel execution and progress tracking."""

import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum

from converge.orchestrator.planner import ChangeType, Plan, PlannedAction, materialize_attributes
from converge.provisioners.base import ProviderRegistry
from converge.state.manager import StateManager, find_non_concrete
from converge.state.models import ResourceState, Snapshot
from converge.utils.errors import (
    DeploymentError,
    ErrorContext,
    ProviderError,
    UnresolvedReferenceError,
    error_handler,
)
from converge.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


def _as_json_data(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_as_json_data(item) for item in value]
    if isinstance(value, dict):
        return {key: _as_json_data(item) for key, item in value.items()}
    return value


def concrete_outputs(outputs: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], List[str]]:
    """Split provider outputs into storable values and the names of the rest.

    Tuples become lists; anything else that is not plain JSON data is dropped.
    """
    kept: Dict[str, Any] = {}
    rejected: List[str] = []
    for key, value in (outputs or {}).items():
        value = _as_json_data(value)
        if isinstance(key, str) and find_non_concrete(value) is None:
            kept[key] = value
        else:
            rejected.append(str(key))
    return kept, sorted(rejected)


class ExecutionStatus(Enum):
    """Status of an action or of a whole run."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"
    PARTIAL = "partial"


@dataclass
class ActionExecutionResult:
    """Result of executing a single planned action."""

    action_id: str
    resource_id: str
    action: ChangeType
    status: ExecutionStatus = ExecutionStatus.PENDING
    error: Optional[DeploymentError] = None
    reason: Optional[str] = None
    physical_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED


@dataclass
class ExecutionResult:
    """Complete result of one apply or destroy run."""

    status: ExecutionStatus
    run_id: str
    action_results: Dict[str, ActionExecutionResult] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def _count(self, status: ExecutionStatus) -> int:
        return sum(1 for r in self.action_results.values() if r.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(ExecutionStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(ExecutionStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(ExecutionStatus.SKIPPED)

    @property
    def canceled(self) -> int:
        return self._count(ExecutionStatus.CANCELED)

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def get_failed_results(self) -> List[ActionExecutionResult]:
        return [r for r in self.action_results.values() if r.is_failed()]

    def get_failure_summary(self) -> Dict[str, str]:
        """Failed and skipped resources mapped to the reason they did not converge."""
        summary = {}
        for result in self.action_results.values():
            if result.status in (ExecutionStatus.FAILED, ExecutionStatus.SKIPPED, ExecutionStatus.CANCELED):
                summary.setdefault(result.resource_id, result.reason or result.status.value)
        return summary


# Type alias for progress callback: (action, status, message)
ProgressCallback = Callable[[PlannedAction, ExecutionStatus, Optional[str]], None]


class DeploymentExecutor:
    """Executes plans, running independent actions concurrently.

    An action starts once every action it depends on has succeeded. When an
    action fails, everything that transitively depends on it is skipped;
    unrelated branches keep going. The snapshot is saved after every
    completed action so that an interrupted run can be resumed by planning
    again.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        state_manager: StateManager,
        max_workers: int = 10
    ):
        """Initialize executor.

        Args:
            registry: Provider plugins by name
            state_manager: Persists the snapshot after each action
            max_workers: Maximum number of provider calls in flight
        """
        self.registry = registry
        self.state_manager = state_manager
        self.max_workers = max_workers
        self.logger = get_logger(__name__)

    def execute(
        self,
        plan: Plan,
        snapshot: Snapshot,
        parallel: bool = True,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ExecutionResult:
        """Execute a plan against the snapshot.

        Args:
            plan: Plan to execute; its actions are already ordered
            snapshot: Snapshot the plan was computed from, updated in place
            parallel: Run independent actions concurrently
            cancel_event: When set, no further actions are started
            progress_callback: Optional callback for progress updates

        Returns:
            ExecutionResult with one entry per planned action
        """
        run_id = uuid.uuid4().hex[:12]
        start_time = datetime.now(timezone.utc)
        results = {
            action.action_id: ActionExecutionResult(
                action_id=action.action_id,
                resource_id=action.resource_id,
                action=action.action,
            )
            for action in plan.actions
        }

        with LogContext(self.logger, run_id=run_id):
            self.logger.info(
                f"Starting execution of {len(plan.actions)} actions "
                f"(parallel={parallel}, max_workers={self.max_workers})"
            )
            workers = self.max_workers if parallel else 1
            self._run(plan, snapshot, results, workers, cancel_event, progress_callback)

            end_time = datetime.now(timezone.utc)
            result = ExecutionResult(
                status=ExecutionStatus.SUCCESS,
                run_id=run_id,
                action_results=results,
                start_time=start_time,
                end_time=end_time,
                duration=(end_time - start_time).total_seconds(),
            )
            result.status = self._overall_status(result)
            self._log_outcome(result)
        return result

    def _run(
        self,
        plan: Plan,
        snapshot: Snapshot,
        results: Dict[str, ActionExecutionResult],
        workers: int,
        cancel_event: Optional[threading.Event],
        progress_callback: Optional[ProgressCallback]
    ) -> None:
        """Scheduling loop; every snapshot mutation happens on this thread."""
        pending: List[str] = plan.action_ids()
        remaining = {action.action_id: set(action.depends_on) for action in plan.actions}
        dependents: Dict[str, Set[str]] = {action_id: set() for action_id in remaining}
        for action_id, upstream in remaining.items():
            for upstream_id in upstream:
                dependents[upstream_id].add(action_id)

        in_flight: Dict[Future, PlannedAction] = {}
        inputs: Dict[str, Dict[str, Any]] = {}

        with ThreadPoolExecutor(max_workers=workers) as pool:
            while pending or in_flight:
                if cancel_event is not None and cancel_event.is_set():
                    self._cancel_pending(plan, pending, results, progress_callback)
                    pending = []
                else:
                    for action_id in list(pending):
                        if len(in_flight) >= workers:
                            break
                        if remaining[action_id]:
                            continue
                        pending.remove(action_id)
                        action = plan.get_action(action_id)
                        future = self._start(pool, action, snapshot, results[action_id], inputs, progress_callback)
                        if future is not None:
                            in_flight[future] = action
                        else:
                            self._cascade_skip(action_id, dependents, results, pending, progress_callback, plan)

                if not in_flight:
                    continue

                done, _ = wait(list(in_flight), timeout=0.5, return_when=FIRST_COMPLETED)
                for future in done:
                    action = in_flight.pop(future)
                    result = results[action.action_id]
                    self._finish(action, future, result, snapshot, inputs.pop(action.action_id, None), plan)
                    self._notify(progress_callback, action, result)

                    if result.is_success():
                        for dependent_id in dependents[action.action_id]:
                            remaining[dependent_id].discard(action.action_id)
                    else:
                        self._cascade_skip(action.action_id, dependents, results, pending, progress_callback, plan)

    def _start(
        self,
        pool: ThreadPoolExecutor,
        action: PlannedAction,
        snapshot: Snapshot,
        result: ActionExecutionResult,
        inputs: Dict[str, Dict[str, Any]],
        progress_callback: Optional[ProgressCallback]
    ) -> Optional[Future]:
        """Resolve an action's inputs and submit its provider call.

        Returns:
            The submitted future, or None if the action failed before submission
        """
        result.status = ExecutionStatus.IN_PROGRESS
        result.start_time = datetime.now(timezone.utc)
        self._notify(progress_callback, action, result)

        try:
            provider = self.registry.get(action.provider)
            if action.action == ChangeType.DELETE:
                future = pool.submit(provider.delete, action.resource_type, action.change.prior.physical_id)
            else:
                attributes = self._resolve_inputs(action, snapshot)
                inputs[action.action_id] = attributes
                if action.action == ChangeType.CREATE:
                    future = pool.submit(provider.create, action.resource_type, attributes)
                else:
                    current = snapshot.get_resource(action.resource_id)
                    future = pool.submit(
                        provider.update, action.resource_type, current.physical_id, attributes,
                        previous=dict(current.attributes)
                    )
        except DeploymentError as e:
            self._fail(result, e)
            self._notify(progress_callback, action, result)
            return None

        self.logger.info(f"{action.describe()}...", extra={"resource_id": action.resource_id})
        return future

    def _resolve_inputs(self, action: PlannedAction, snapshot: Snapshot) -> Dict[str, Any]:
        """Concrete attributes for a create or update, read from the live snapshot.

        Raises:
            UnresolvedReferenceError: If a referenced value is still missing
        """
        desired = action.change.desired

        def lookup(target_id: str, attribute: str) -> Any:
            target = snapshot.get_resource(target_id)
            if target is None or not target.has_value(attribute):
                raise UnresolvedReferenceError(
                    f"Resource '{action.resource_id}' references '{target_id}.{attribute}', "
                    f"which has no applied value",
                    target_id=target_id,
                    attribute=attribute,
                    context=ErrorContext(resource_id=action.resource_id, operation=action.action.value)
                )
            return target.get_value(attribute)

        prior = snapshot.get_resource(action.resource_id) if action.action == ChangeType.UPDATE else None
        return materialize_attributes(desired, prior, lookup)

    def _finish(
        self,
        action: PlannedAction,
        future: Future,
        result: ActionExecutionResult,
        snapshot: Snapshot,
        attributes: Optional[Dict[str, Any]],
        plan: Plan
    ) -> None:
        """Record a completed provider call and persist the snapshot."""
        result.end_time = datetime.now(timezone.utc)
        result.duration = (result.end_time - result.start_time).total_seconds()

        try:
            value = future.result()
        except Exception as e:
            context = ErrorContext(
                resource_id=action.resource_id,
                resource_type=action.resource_type,
                operation=action.action.value,
                provider=action.provider,
            )
            self._fail(result, error_handler.handle_exception(e, context))
            return

        rejected: List[str] = []
        if action.action == ChangeType.DELETE:
            self._record_delete(action, snapshot)
            result.physical_id = action.change.prior.physical_id
        else:
            result.physical_id, rejected = self._record_apply(action, value, attributes, snapshot, plan)

        if rejected:
            # The object exists and is recorded, but dependents cannot use it
            self._fail(result, ProviderError(
                f"{action.describe()} returned outputs that cannot be stored: {', '.join(rejected)}",
                context=ErrorContext(
                    resource_id=action.resource_id,
                    resource_type=action.resource_type,
                    operation=action.action.value,
                    provider=action.provider,
                )
            ))
        else:
            result.status = ExecutionStatus.SUCCESS
            self.logger.info(
                f"{action.describe()} complete in {result.duration:.1f}s",
                extra={"resource_id": action.resource_id, "duration": result.duration}
            )

        try:
            self.state_manager.save(snapshot)
        except DeploymentError as e:
            # The in-memory snapshot still holds the change; a later save may persist it
            self._fail(result, e)

    def _record_apply(
        self,
        action: PlannedAction,
        value: Any,
        attributes: Dict[str, Any],
        snapshot: Snapshot,
        plan: Plan
    ) -> Tuple[str, List[str]]:
        """Record a created or updated object.

        Returns:
            The physical id and the names of provider outputs that were dropped
            because they are not plain JSON data
        """
        desired = action.change.desired
        current = snapshot.get_resource(action.resource_id)
        now = datetime.now(timezone.utc)

        if action.action == ChangeType.CREATE:
            physical_id, outputs = value
            created_at = now
            if current is not None:
                # The old object stays recorded until its delete succeeds
                snapshot.add_deposed(current)
        else:
            physical_id = current.physical_id
            outputs = value
            created_at = current.created_at

        outputs, rejected = concrete_outputs(outputs)

        dependencies = plan.dependency_graph.get_dependencies(desired.id) if plan.dependency_graph else set()
        snapshot.add_resource(ResourceState(
            id=desired.id,
            type=desired.type,
            name=desired.name,
            provider=action.provider,
            physical_id=physical_id,
            attributes=attributes,
            outputs=outputs,
            dependencies=sorted(dependencies),
            create_before_destroy=action.change.create_before_destroy,
            sensitive=list(action.change.sensitive),
            created_at=created_at,
            updated_at=now,
        ))
        return physical_id, rejected

    @staticmethod
    def _record_delete(action: PlannedAction, snapshot: Snapshot) -> None:
        prior = action.change.prior
        if snapshot.remove_deposed(prior.id, prior.physical_id) is not None:
            return
        current = snapshot.get_resource(prior.id)
        if current is not None and current.physical_id == prior.physical_id:
            snapshot.remove_resource(prior.id)

    def _fail(self, result: ActionExecutionResult, error: DeploymentError) -> None:
        result.status = ExecutionStatus.FAILED
        result.error = error
        result.reason = error.message
        if result.end_time is None:
            result.end_time = datetime.now(timezone.utc)
            result.duration = (result.end_time - result.start_time).total_seconds()
        error_handler.log_error(error)

    def _cascade_skip(
        self,
        failed_id: str,
        dependents: Dict[str, Set[str]],
        results: Dict[str, ActionExecutionResult],
        pending: List[str],
        progress_callback: Optional[ProgressCallback],
        plan: Plan
    ) -> None:
        """Skip every pending action that transitively depends on a failed one."""
        failed_resource = results[failed_id].resource_id
        stack = sorted(dependents[failed_id])
        while stack:
            action_id = stack.pop()
            result = results[action_id]
            if result.status != ExecutionStatus.PENDING:
                continue
            result.status = ExecutionStatus.SKIPPED
            result.reason = f"Dependency {failed_resource} failed"
            if action_id in pending:
                pending.remove(action_id)
            self._notify(progress_callback, plan.get_action(action_id), result)
            stack.extend(sorted(dependents[action_id]))

    def _cancel_pending(
        self,
        plan: Plan,
        pending: List[str],
        results: Dict[str, ActionExecutionResult],
        progress_callback: Optional[ProgressCallback]
    ) -> None:
        if pending:
            self.logger.warning(f"Run canceled; {len(pending)} actions will not be started")
        for action_id in pending:
            result = results[action_id]
            if result.status == ExecutionStatus.PENDING:
                result.status = ExecutionStatus.CANCELED
                result.reason = "Run canceled before the action started"
                self._notify(progress_callback, plan.get_action(action_id), result)

    @staticmethod
    def _notify(
        progress_callback: Optional[ProgressCallback],
        action: PlannedAction,
        result: ActionExecutionResult
    ) -> None:
        if progress_callback:
            progress_callback(action, result.status, result.reason)

    @staticmethod
    def _overall_status(result: ExecutionResult) -> ExecutionStatus:
        if result.canceled:
            return ExecutionStatus.CANCELED
        if result.failed or result.skipped:
            return ExecutionStatus.PARTIAL if result.succeeded else ExecutionStatus.FAILED
        return ExecutionStatus.SUCCESS

    def _log_outcome(self, result: ExecutionResult) -> None:
        if result.status == ExecutionStatus.SUCCESS:
            self.logger.info(
                f"Execution completed: {result.succeeded} actions in {result.duration:.1f}s"
            )
            return
        self.logger.error(
            f"Execution {result.status.value}: {result.succeeded} succeeded, {result.failed} failed, "
            f"{result.skipped} skipped, {result.canceled} canceled"
        )
        for resource_id, reason in sorted(result.get_failure_summary().items()):
            self.logger.error(f"  {resource_id}: {reason}")
