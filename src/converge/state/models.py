"""State snapshot data models."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceState(BaseModel):
    """Last-applied concrete values of one resource."""

    id: str = Field(..., description="Logical identifier '<type>.<name>'")
    type: str = Field(..., description="Resource type")
    name: str = Field(..., description="Resource name")
    provider: str = Field(..., description="Provider that manages the object")
    physical_id: str = Field(..., description="Provider-assigned identifier")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Resolved attributes as last applied"
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Provider-assigned outputs"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Resource IDs this resource depended on when applied"
    )
    create_before_destroy: bool = False
    sensitive: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def get_value(self, attribute: str) -> Any:
        """Look up an attribute for reference resolution.

        ``id`` is the physical id; outputs take precedence over inputs.

        Raises:
            KeyError: If the resource has no such attribute
        """
        if attribute == "id":
            return self.physical_id
        if attribute in self.outputs:
            return self.outputs[attribute]
        if attribute in self.attributes:
            return self.attributes[attribute]
        raise KeyError(attribute)

    def has_value(self, attribute: str) -> bool:
        try:
            self.get_value(attribute)
        except KeyError:
            return False
        return True


class Snapshot(BaseModel):
    """The persisted record of every managed resource."""

    version: int = Field(1, description="State format version")
    lineage: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Identifies one state history across serials"
    )
    serial: int = Field(0, description="Incremented on every save")
    project_name: str = Field(..., description="Project name")
    timestamp: datetime = Field(default_factory=_utcnow, description="Last update timestamp")
    resources: Dict[str, ResourceState] = Field(
        default_factory=dict, description="Resources keyed by logical identifier"
    )
    deposed: List[ResourceState] = Field(
        default_factory=list,
        description="Objects superseded by a create-before-destroy replacement, pending deletion"
    )

    def add_resource(self, resource: ResourceState) -> None:
        """Add or replace a resource entry."""
        self.resources[resource.id] = resource
        self.timestamp = _utcnow()

    def remove_resource(self, resource_id: str) -> Optional[ResourceState]:
        """Remove a resource entry and return it."""
        resource = self.resources.pop(resource_id, None)
        self.timestamp = _utcnow()
        return resource

    def get_resource(self, resource_id: str) -> Optional[ResourceState]:
        return self.resources.get(resource_id)

    def has_resource(self, resource_id: str) -> bool:
        return resource_id in self.resources

    def add_deposed(self, resource: ResourceState) -> None:
        """Record an old object that still has to be deleted."""
        self.deposed.append(resource)
        self.timestamp = _utcnow()

    def remove_deposed(self, resource_id: str, physical_id: str) -> Optional[ResourceState]:
        """Forget a deposed object once it has been deleted."""
        for index, resource in enumerate(self.deposed):
            if resource.id == resource_id and resource.physical_id == physical_id:
                self.timestamp = _utcnow()
                return self.deposed.pop(index)
        return None

    def list_resources(self) -> List[ResourceState]:
        """All current resources ordered by identifier."""
        return [self.resources[rid] for rid in sorted(self.resources)]

    def get_dependents(self, resource_id: str) -> List[str]:
        """Resources whose recorded dependencies include ``resource_id``."""
        return sorted(
            resource.id for resource in self.resources.values()
            if resource_id in resource.dependencies
        )

    def is_empty(self) -> bool:
        return not self.resources and not self.deposed
