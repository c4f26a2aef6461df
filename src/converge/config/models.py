"""Pydantic models for the declaration document schema."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

# Identifier segments: resource types and names
IDENTIFIER_PATTERN = "^[A-Za-z][A-Za-z0-9_-]*$"


class LifecycleConfig(BaseModel):
    """Per-resource lifecycle policy."""

    immutable: List[str] = Field(
        default_factory=list, description="Attributes whose change forces a replacement"
    )
    create_before_destroy: bool = Field(
        False, description="Create the replacement before destroying the old object"
    )
    prevent_destroy: bool = Field(
        False, description="Fail planning if the resource would be destroyed or replaced"
    )
    ignore_changes: List[str] = Field(
        default_factory=list, description="Attributes excluded from the diff"
    )
    sensitive: List[str] = Field(
        default_factory=list, description="Attributes masked in plan output and logs"
    )


class ResourceConfig(BaseModel):
    """A single resource block."""

    type: str = Field(..., min_length=1, max_length=128, pattern=IDENTIFIER_PATTERN)
    name: str = Field(..., min_length=1, max_length=128, pattern=IDENTIFIER_PATTERN)
    provider: Optional[str] = Field(None, description="Provider name overriding the type mapping")
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(
        default_factory=list, description="Explicit dependencies as '<type>.<name>'"
    )
    outputs: List[str] = Field(
        default_factory=list, description="Provider-assigned attributes this resource exports"
    )
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)

    @property
    def id(self) -> str:
        """Logical identifier '<type>.<name>'."""
        return f"{self.type}.{self.name}"

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> List[str]:
        """Explicit dependencies must be resource identifiers."""
        for dep in v:
            if dep.count(".") != 1 or not all(dep.split(".")):
                raise ValueError(f"depends_on entries must look like '<type>.<name>': {dep}")
        return v

    @model_validator(mode="after")
    def validate_lifecycle(self):
        """Lifecycle entries must name declared attributes."""
        declared = set(self.attributes)
        for field_name in ("immutable", "ignore_changes", "sensitive"):
            unknown = [a for a in getattr(self.lifecycle, field_name) if a not in declared]
            if unknown:
                raise ValueError(
                    f"lifecycle.{field_name} names undeclared attribute(s): {', '.join(unknown)}"
                )
        if "id" in declared:
            raise ValueError("'id' is reserved for the provider-assigned identifier")
        return self


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    description: Optional[str] = None


class SettingsConfig(BaseModel):
    """Engine settings."""

    state_path: Optional[str] = Field(
        None, description="State file path (default .converge/state/<project>.json)"
    )
    max_workers: int = Field(10, ge=1, le=128)
    lock_timeout: float = Field(10.0, ge=0)
    default_provider: str = Field("local", min_length=1)
    providers: Dict[str, str] = Field(
        default_factory=dict,
        description="Resource type (or 'prefix*' pattern) to provider name"
    )
    local_store: Optional[str] = Field(
        None, description="Object store for the local provider (default .converge/local/<project>.json)"
    )
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    cloudcontrol_type_names: Dict[str, str] = Field(
        default_factory=dict,
        description="Declared type to CloudFormation type name, e.g. vpc: AWS::EC2::VPC"
    )
    poll_max_attempts: int = Field(60, ge=1)
    poll_base_delay: float = Field(1.0, ge=0)
    poll_max_delay: float = Field(30.0, ge=0)


class DeclarationConfig(BaseModel):
    """The whole declaration document."""

    project: ProjectConfig
    settings: SettingsConfig = Field(default_factory=SettingsConfig)
    resources: List[ResourceConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_ids(self):
        """Resource identifiers must be unique."""
        seen = set()
        for resource in self.resources:
            if resource.id in seen:
                raise ValueError(f"Duplicate resource identifier: {resource.id}")
            seen.add(resource.id)
        return self
