"""Base provider interface and abstract classes."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from landform.utils.errors import ErrorContext, FatalProviderError


@dataclass(frozen=True)
class ResourceSchema:
    """What a provider knows about one resource type."""

    # Attributes whose change requires destroying and recreating the object
    immutable: FrozenSet[str] = frozenset()
    # Attributes assigned by the platform; ``id`` is always present
    computed: FrozenSet[str] = frozenset()

    @property
    def computed_attributes(self) -> FrozenSet[str]:
        return self.computed | {"id"}


@dataclass
class ResourceObject:
    """A resource as handed to a provider call."""

    type: str
    name: str
    attributes: Dict[str, Any]
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    @property
    def id(self) -> Optional[str]:
        return self.outputs.get("id")


class BaseProvider(ABC):
    """Base class for all providers.

    A provider implements create/read/update/delete for the resource types
    listed in ``schemas``. Each call receives a timeout in seconds that it
    should pass on to any client it uses.
    """

    name: str = ""
    schemas: Dict[str, ResourceSchema] = {}

    def supports(self, resource_type: str) -> bool:
        return resource_type in self.schemas

    def get_schema(self, resource_type: str) -> ResourceSchema:
        """Schema for a resource type.

        Raises:
            FatalProviderError: If the type is not implemented by this provider
        """
        schema = self.schemas.get(resource_type)
        if schema is None:
            raise FatalProviderError(
                f"Provider '{self.name}' does not support resource type '{resource_type}'",
                context=ErrorContext(resource_type=resource_type, provider=self.name),
                suggestions=[f"Supported types: {', '.join(sorted(self.schemas)) or 'none'}"]
            )
        return schema

    @abstractmethod
    def create(self, resource: ResourceObject, timeout: float) -> Dict[str, Any]:
        """Create the resource.

        Args:
            resource: Resource with resolved attributes
            timeout: Seconds allowed for the call

        Returns:
            Provider-assigned outputs; must contain ``id``
        """

    def read(self, resource: ResourceObject, timeout: float) -> Optional[Dict[str, Any]]:
        """Fetch current outputs of an existing object.

        Args:
            resource: Resource as recorded in the snapshot
            timeout: Seconds allowed for the call

        Returns:
            Current outputs, or None if the object no longer exists
        """
        # Default implementation - subclasses should override
        return dict(resource.outputs)

    @abstractmethod
    def update(
        self,
        current: ResourceObject,
        attributes: Dict[str, Any],
        timeout: float
    ) -> Dict[str, Any]:
        """Update the object in place.

        Args:
            current: Resource as recorded in the snapshot
            attributes: New resolved attributes
            timeout: Seconds allowed for the call

        Returns:
            Outputs after the update
        """

    @abstractmethod
    def delete(self, resource: ResourceObject, timeout: float) -> None:
        """Delete the object. Deleting an already missing object is not an error."""
