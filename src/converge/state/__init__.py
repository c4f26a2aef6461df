"""State management module for tracking applied resources."""

from .manager import StateManager, compute_checksum
from .models import ResourceState, Snapshot

__all__ = [
    "ResourceState",
    "Snapshot",
    "StateManager",
    "compute_checksum",
]
