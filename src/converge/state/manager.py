"""State manager for loading, saving, and locking the state snapshot."""

import fcntl
import hashlib
import json
import os
import socket
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from converge.state.models import Snapshot
from converge.utils.errors import (
    StateCorruptionError,
    StateError,
    StateLockError,
    StateNotFoundError,
)
from converge.utils.logging import get_logger

logger = get_logger(__name__)


def compute_checksum(snapshot_data: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON encoding of a snapshot."""
    canonical = json.dumps(snapshot_data, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def find_non_concrete(value: Any, path: str = "") -> Optional[str]:
    """Return the path of the first value that is not plain JSON data, or None."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return None
    if isinstance(value, list):
        for index, item in enumerate(value):
            found = find_non_concrete(item, f"{path}[{index}]")
            if found is not None:
                return found
        return None
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                return f"{path}.{key!r}"
            found = find_non_concrete(item, f"{path}.{key}" if path else key)
            if found is not None:
                return found
        return None
    return path or "<root>"


class StateManager:
    """Manages the state snapshot with atomic writes and an exclusive run lock."""

    def __init__(self, state_path: str):
        """
        Initialize StateManager.

        Args:
            state_path: Path to the state file
        """
        self.state_path = Path(state_path)
        self.lock_path = self.state_path.with_name(self.state_path.name + ".lock")
        self._lock_file: Optional[int] = None

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    @property
    def is_locked(self) -> bool:
        """Whether this manager currently holds the lock."""
        return self._lock_file is not None

    def load(self) -> Snapshot:
        """
        Load and verify the snapshot.

        Returns:
            Snapshot object

        Raises:
            StateNotFoundError: If state file does not exist
            StateCorruptionError: If the file fails its integrity check
        """
        if not self.state_path.exists():
            raise StateNotFoundError(f"State file not found: {self.state_path}")

        try:
            with open(self.state_path, "r") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise StateCorruptionError(f"Failed to parse state file {self.state_path}: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to read state file {self.state_path}: {e}", cause=e)

        if not isinstance(document, dict) or "snapshot" not in document or "checksum" not in document:
            raise StateCorruptionError(f"State file {self.state_path} is missing its snapshot or checksum")

        expected = document["checksum"]
        actual = compute_checksum(document["snapshot"])
        if expected != actual:
            raise StateCorruptionError(
                f"State file {self.state_path} failed its integrity check "
                f"(checksum {actual} does not match recorded {expected})"
            )

        try:
            snapshot = Snapshot.model_validate(document["snapshot"])
        except ValidationError as e:
            raise StateCorruptionError(f"State file {self.state_path} has an invalid schema: {e}", cause=e)

        logger.debug(f"Loaded state serial {snapshot.serial} with {len(snapshot.resources)} resources")
        return snapshot

    def save(self, snapshot: Snapshot) -> None:
        """
        Atomically persist the snapshot.

        The new content is written to a temporary file in the same directory,
        flushed to disk and renamed over the state file, so a reader sees either
        the previous or the new snapshot and never a partial one.

        Args:
            snapshot: Snapshot to save; its serial is incremented

        Raises:
            StateCorruptionError: If the snapshot holds non-concrete values
            StateError: If the snapshot cannot be written
        """
        for resource in list(snapshot.resources.values()) + list(snapshot.deposed):
            for section in ("attributes", "outputs"):
                bad_path = find_non_concrete(getattr(resource, section))
                if bad_path is not None:
                    raise StateCorruptionError(
                        f"Refusing to save non-concrete value at {resource.id}.{section}.{bad_path}"
                    )

        snapshot.serial += 1
        snapshot.timestamp = datetime.now(timezone.utc)
        data = snapshot.model_dump(mode="json")
        document = {"checksum": compute_checksum(data), "snapshot": data}

        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        temp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                dir=self.state_path.parent,
                prefix=f".{self.state_path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                temp_name = f.name
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_name, self.state_path)
            temp_name = None
        except OSError as e:
            raise StateError(f"Failed to save state file {self.state_path}: {e}", cause=e)
        finally:
            if temp_name is not None and os.path.exists(temp_name):
                os.unlink(temp_name)

        logger.debug(f"Saved state serial {snapshot.serial}")

    def initialize(self, project_name: str) -> Snapshot:
        """
        Create and persist an empty snapshot.

        Args:
            project_name: Project name

        Returns:
            New Snapshot object
        """
        snapshot = Snapshot(project_name=project_name)
        self.save(snapshot)
        logger.info(f"Initialized new state file: {self.state_path}")
        return snapshot

    def load_or_initialize(self, project_name: str) -> Snapshot:
        """Load the snapshot, creating an empty one on first use."""
        if not self.exists():
            return self.initialize(project_name)
        return self.load()

    def lock(self, timeout: float = 10.0) -> None:
        """
        Acquire the exclusive run lock.

        Args:
            timeout: Seconds to wait for another run to release the lock

        Raises:
            StateLockError: If lock cannot be acquired
        """
        if self._lock_file is not None:
            return

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        except OSError as e:
            raise StateLockError(f"Failed to open lock file {self.lock_path}: {e}", cause=e)

        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - start_time >= timeout:
                    os.close(fd)
                    holder = self.read_lock_info()
                    detail = f" (held by {self._describe_holder(holder)})" if holder else ""
                    raise StateLockError(
                        f"State {self.state_path} is locked by another run{detail}",
                        suggestions=[
                            "Wait for the other run to finish",
                            "If no run is active, remove the stale lock with 'converge force-unlock'"
                        ]
                    )
                time.sleep(0.1)

        info = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.write(fd, json.dumps(info).encode("utf-8"))
        self._lock_file = fd
        logger.debug(f"Acquired state lock {self.lock_path}")

    def unlock(self) -> None:
        """Release lock on state file."""
        if self._lock_file is not None:
            try:
                os.ftruncate(self._lock_file, 0)
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
                os.close(self._lock_file)
            finally:
                self._lock_file = None
            logger.debug(f"Released state lock {self.lock_path}")

    def read_lock_info(self) -> Optional[Dict[str, Any]]:
        """Holder information recorded in the lock file, if any."""
        try:
            content = self.lock_path.read_text()
        except OSError:
            return None
        if not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            return None

    def force_unlock(self) -> bool:
        """Remove a stale lock file left by a crashed run.

        Returns:
            True if a lock file was removed
        """
        if not self.lock_path.exists():
            return False
        self.lock_path.unlink()
        logger.warning(f"Removed state lock file {self.lock_path}")
        return True

    @staticmethod
    def _describe_holder(holder: Dict[str, Any]) -> str:
        return (
            f"pid {holder.get('pid', '?')} on {holder.get('host', '?')} "
            f"since {holder.get('acquired_at', '?')}"
        )

    def __enter__(self):
        """Context manager entry - acquire lock."""
        self.lock()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.unlock()
