"""YAML declaration parser."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import (
    DeclarationConfig,
    ProjectConfig,
    ResourceConfig,
    SettingsConfig,
)


class ConfigValidationError(Exception):
    """Exception raised when declaration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class Config:
    """Loads and validates a declaration document."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to the declaration file (YAML or JSON)
        """
        self.config_path = Path(config_path) if config_path else None
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.settings: SettingsConfig = SettingsConfig()
        self.resources: List[ResourceConfig] = []

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Build a configuration from an already-parsed document."""
        config = cls()
        config.data = data
        return config._finish_load()

    def load(self) -> "Config":
        """Load and validate configuration from file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If the declaration is invalid
            FileNotFoundError: If the declaration file doesn't exist
        """
        if self.config_path is None or not self.config_path.exists():
            raise FileNotFoundError(f"Declaration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        return self._finish_load()

    def _finish_load(self) -> "Config":
        if not isinstance(self.data, dict):
            raise ConfigValidationError("Declaration must be a mapping at the top level")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Declaration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        # Per-section validation passed; the root model checks cross-resource rules
        try:
            declaration = DeclarationConfig(**self.data)
        except ValidationError as e:
            raise ConfigValidationError(
                "Declaration validation failed",
                [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
            )

        self.project = declaration.project
        self.settings = declaration.settings
        self.resources = declaration.resources
        return self

    def validate(self) -> List[Dict]:
        """Validate each section against the schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            errors.extend(self._validate_section(ProjectConfig, self.data["project"], ["project"]))

        if "settings" in self.data:
            errors.extend(self._validate_section(SettingsConfig, self.data["settings"], ["settings"]))

        resources = self.data.get("resources", [])
        if not isinstance(resources, list):
            errors.append({"loc": ["resources"], "msg": "Resources must be a list"})
        else:
            for idx, resource_data in enumerate(resources):
                errors.extend(
                    self._validate_section(ResourceConfig, resource_data, ["resources", idx])
                )

        return errors

    @staticmethod
    def _validate_section(model, section_data: Any, location: List) -> List[Dict]:
        if not isinstance(section_data, dict):
            return [{"loc": location, "msg": "Section must be a mapping"}]
        try:
            model(**section_data)
        except ValidationError as e:
            return [
                {"loc": location + list(error["loc"]), "msg": error["msg"]}
                for error in e.errors()
            ]
        return []

    def get_resource(self, resource_id: str) -> Optional[ResourceConfig]:
        """Get a resource block by its '<type>.<name>' identifier."""
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        return None

    def get_state_path(self) -> Path:
        """Resolve the state file path."""
        if self.settings.state_path:
            return Path(self.settings.state_path)
        return Path(".converge") / "state" / f"{self.project.name}.json"

    def get_local_store_path(self) -> Path:
        """Resolve the local provider's object store path."""
        if self.settings.local_store:
            return Path(self.settings.local_store)
        return Path(".converge") / "local" / f"{self.project.name}.json"

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary."""
        return {
            "project": self.project.model_dump() if self.project else {},
            "settings": self.settings.model_dump(),
            "resources": [resource.model_dump() for resource in self.resources],
        }
