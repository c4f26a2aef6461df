"""Shared fixtures."""

import pytest

from converge.config.parser import Config
from converge.orchestrator.orchestrator import DeploymentOrchestrator
from converge.provisioners import LocalProvider, ProviderRegistry
from converge.state.manager import StateManager


@pytest.fixture
def make_config():
    """Build a validated declaration from resource blocks."""
    def _make(resources, **settings):
        data = {"project": {"name": "test"}, "resources": resources}
        if settings:
            data["settings"] = settings
        return Config.from_dict(data)
    return _make


@pytest.fixture
def local_provider():
    """In-memory local provider."""
    return LocalProvider()


@pytest.fixture
def registry(local_provider):
    """Registry with the local provider as default."""
    registry = ProviderRegistry(default_provider="local")
    registry.register(local_provider)
    return registry


@pytest.fixture
def state_manager(tmp_path):
    """State manager writing under a temporary directory."""
    return StateManager(str(tmp_path / "state" / "test.json"))


@pytest.fixture
def run_apply(make_config, registry, state_manager):
    """Plan and apply a declaration the way the apply command does.

    Returns a function taking resource blocks and returning (plan, result).
    """
    def _run(resources, destroy=False, **kwargs):
        orchestrator = DeploymentOrchestrator(make_config(resources), state_manager, registry)
        with orchestrator.locked():
            plan = orchestrator.plan(destroy=destroy)
            result = orchestrator.apply(plan, **kwargs)
        return plan, result
    return _run
