"""Orchestrator module for planning and executing changes."""

from converge.orchestrator.references import UNKNOWN, Reference, find_references, resolve_value
from converge.orchestrator.dependency_graph import DeclaredResource, DependencyGraph, DependencyNode
from converge.orchestrator.planner import (
    AttributeChange,
    ChangeType,
    DeploymentPlanner,
    Plan,
    PlannedAction,
    ResourceChange,
)
from converge.orchestrator.executor import (
    ActionExecutionResult,
    DeploymentExecutor,
    ExecutionResult,
    ExecutionStatus,
    ProgressCallback
)
from converge.orchestrator.orchestrator import DeploymentOrchestrator

__all__ = [
    # References
    'UNKNOWN',
    'Reference',
    'find_references',
    'resolve_value',

    # Dependency graph
    'DeclaredResource',
    'DependencyGraph',
    'DependencyNode',

    # Planning
    'AttributeChange',
    'ChangeType',
    'DeploymentPlanner',
    'Plan',
    'PlannedAction',
    'ResourceChange',

    # Execution
    'ActionExecutionResult',
    'DeploymentExecutor',
    'ExecutionResult',
    'ExecutionStatus',
    'ProgressCallback',

    # Main orchestrator
    'DeploymentOrchestrator',
]
