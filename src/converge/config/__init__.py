"""Declaration loading for the converge engine."""

from .models import (
    DeclarationConfig,
    LifecycleConfig,
    ProjectConfig,
    ResourceConfig,
    SettingsConfig,
)
from .parser import Config, ConfigValidationError

__all__ = [
    "DeclarationConfig",
    "LifecycleConfig",
    "ProjectConfig",
    "ResourceConfig",
    "SettingsConfig",
    "Config",
    "ConfigValidationError",
]
