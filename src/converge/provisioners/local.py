"""Local provider backed by a JSON object store.

Used for local runs of a declaration without any cloud account and as the
provider behind the test suite. Objects live in a single JSON file (or only in
memory when no path is given); every object gets a generated physical id and
a stable ``arn``-style output.
"""

import json
import os
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from converge.provisioners.base import BaseProvider
from converge.utils.errors import ErrorContext, ProviderError, ResourceNotFoundError
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class LocalProvider(BaseProvider):
    """Stores objects in a local JSON file."""

    name = "local"

    def __init__(self, store_path: Optional[str] = None, latency: float = 0.0):
        """
        Args:
            store_path: JSON file holding the objects; None keeps them in memory
            latency: Seconds each call sleeps, to mimic a remote API
        """
        self.store_path = Path(store_path) if store_path else None
        self.latency = latency
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self._failures: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()
        self._objects: Dict[str, Dict[str, Any]] = self._read_store()

    def inject_failure(self, resource_type: str, operation: str = "*", message: str = "injected failure") -> None:
        """Make ``operation`` ('create', 'update', 'delete' or '*') fail for a type."""
        self._failures[(resource_type, operation)] = message

    def clear_failures(self) -> None:
        self._failures.clear()

    def create(self, resource_type: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        self._call("create", resource_type)
        physical_id = f"{resource_type}-{uuid.uuid4().hex[:12]}"
        outputs = {"arn": f"local:{resource_type}:{physical_id}"}
        with self._lock:
            self._objects[physical_id] = {
                "type": resource_type,
                "attributes": dict(attributes),
                "outputs": outputs,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            self._write_store()
            self.calls.append(("create", resource_type, physical_id))
        logger.debug(f"Created local object {physical_id}")
        return physical_id, dict(outputs)

    def read(self, resource_type: str, physical_id: str) -> Dict[str, Any]:
        self._call("read", resource_type)
        with self._lock:
            self.calls.append(("read", resource_type, physical_id))
            obj = self._objects.get(physical_id)
            if obj is None:
                raise ResourceNotFoundError(
                    f"Local object {physical_id} not found",
                    context=ErrorContext(resource_type=resource_type, operation="read", provider=self.name)
                )
            return {**obj["attributes"], **obj["outputs"]}

    def update(
        self,
        resource_type: str,
        physical_id: str,
        attributes: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        # Attributes are replaced wholesale, so removed keys need no special handling
        self._call("update", resource_type)
        with self._lock:
            self.calls.append(("update", resource_type, physical_id))
            obj = self._objects.get(physical_id)
            if obj is None:
                raise ResourceNotFoundError(
                    f"Local object {physical_id} not found",
                    context=ErrorContext(resource_type=resource_type, operation="update", provider=self.name)
                )
            obj["attributes"] = dict(attributes)
            self._write_store()
            return dict(obj["outputs"])

    def delete(self, resource_type: str, physical_id: str) -> None:
        self._call("delete", resource_type)
        with self._lock:
            self.calls.append(("delete", resource_type, physical_id))
            self._objects.pop(physical_id, None)
            self._write_store()

    def list_objects(self) -> Dict[str, Dict[str, Any]]:
        """Copy of every stored object keyed by physical id."""
        with self._lock:
            return json.loads(json.dumps(self._objects))

    def _call(self, operation: str, resource_type: str) -> None:
        if self.latency:
            time.sleep(self.latency)
        message = self._failures.get((resource_type, operation)) or self._failures.get((resource_type, "*"))
        if message is not None:
            raise ProviderError(
                f"{operation} {resource_type} failed: {message}",
                context=ErrorContext(resource_type=resource_type, operation=operation, provider=self.name)
            )

    def _read_store(self) -> Dict[str, Dict[str, Any]]:
        if self.store_path is None or not self.store_path.exists():
            return {}
        with open(self.store_path, "r") as f:
            return json.load(f)

    def _write_store(self) -> None:
        if self.store_path is None:
            return
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.store_path.with_name(self.store_path.name + ".tmp")
        with open(temp_path, "w") as f:
            json.dump(self._objects, f, indent=2, sort_keys=True)
        os.replace(temp_path, self.store_path)
