"""Provider plugin contract and registry."""

import fnmatch
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from converge.utils.errors import ConfigurationError


class BaseProvider(ABC):
    """Base class for provider plugins.

    A provider performs CRUD calls against one external system. The engine
    never inspects resource types; it passes them through so that one plugin
    may serve several types.
    """

    #: Name used in settings.providers and the state file
    name: str = "base"

    @abstractmethod
    def create(self, resource_type: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create an object.

        Args:
            resource_type: Resource type from the declaration
            attributes: Fully resolved attributes

        Returns:
            Tuple of (physical id, provider-assigned outputs)
        """
        pass

    @abstractmethod
    def read(self, resource_type: str, physical_id: str) -> Dict[str, Any]:
        """Read an object's current attributes.

        Raises:
            ResourceNotFoundError: If the object does not exist
        """
        pass

    @abstractmethod
    def update(
        self,
        resource_type: str,
        physical_id: str,
        attributes: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Update an object in place.

        Args:
            resource_type: Declared resource type
            physical_id: Provider id of the object
            attributes: Fully resolved attributes the object should end up with
            previous: Attributes recorded by the last apply; keys missing from
                ``attributes`` were removed from the declaration

        Returns:
            Provider-assigned outputs after the update
        """
        pass

    @abstractmethod
    def delete(self, resource_type: str, physical_id: str) -> None:
        """Delete an object. Deleting an object that is already gone succeeds."""
        pass


class ProviderRegistry:
    """Maps resource types to provider plugins.

    Mappings are exact types or shell-style patterns such as ``aws_*``.
    Exact matches win over patterns; among patterns the longest wins.
    """

    def __init__(self, default_provider: Optional[str] = None):
        self._providers: Dict[str, BaseProvider] = {}
        self._type_mappings: Dict[str, str] = {}
        self.default_provider = default_provider

    def register(self, provider: BaseProvider, name: Optional[str] = None) -> None:
        """Register a provider under its name."""
        self._providers[name or provider.name] = provider
        if self.default_provider is None:
            self.default_provider = name or provider.name

    def map_type(self, pattern: str, provider_name: str) -> None:
        """Route resource types matching ``pattern`` to ``provider_name``."""
        self._type_mappings[pattern] = provider_name

    def get(self, name: str) -> BaseProvider:
        """Get a provider by name.

        Raises:
            ConfigurationError: If no provider has that name
        """
        if name not in self._providers:
            available = ", ".join(sorted(self._providers)) or "none"
            raise ConfigurationError(
                f"Unknown provider '{name}'. Registered providers: {available}"
            )
        return self._providers[name]

    def resolve_name(self, resource_type: str, override: Optional[str] = None) -> str:
        """Name of the provider responsible for a resource type."""
        if override:
            return override
        if resource_type in self._type_mappings:
            return self._type_mappings[resource_type]

        matches = [
            pattern for pattern in self._type_mappings
            if fnmatch.fnmatchcase(resource_type, pattern)
        ]
        if matches:
            return self._type_mappings[max(matches, key=len)]

        if self.default_provider is None:
            raise ConfigurationError(f"No provider configured for resource type '{resource_type}'")
        return self.default_provider

    def names(self):
        return sorted(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers
