"""State snapshot and lock record data models."""

import getpass
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

SNAPSHOT_FORMAT_VERSION = 1


def _utcnow() -> datetime:
    return datetime.utcnow()


def default_lock_owner() -> str:
    """user@host of the current process."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class ResourceState(BaseModel):
    """Last-known state of one applied resource."""

    type: str = Field(..., description="Resource type")
    name: str = Field(..., description="Resource name")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Resolved input attributes as applied"
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Provider-assigned values, including id"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Addresses this resource depended on when applied"
    )
    create_before_destroy: bool = Field(False, description="Lifecycle policy when applied")
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    @property
    def id(self) -> Optional[str]:
        return self.outputs.get("id")

    def get_value(self, attribute: str) -> Any:
        """Attribute lookup for references: outputs win over inputs."""
        if attribute in self.outputs:
            return self.outputs[attribute]
        return self.attributes.get(attribute)

    def has_value(self, attribute: str) -> bool:
        return attribute in self.outputs or attribute in self.attributes


class DeposedObject(BaseModel):
    """An old object replaced with create-before-destroy but not yet destroyed."""

    key: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    resource: ResourceState

    @property
    def address(self) -> str:
        return self.resource.address


class StateSnapshot(BaseModel):
    """Mapping from resource address to last-known resource state."""

    version: int = Field(SNAPSHOT_FORMAT_VERSION, description="Snapshot format version")
    state_id: str = Field(..., description="State identity")
    serial: int = Field(0, description="Incremented on every write")
    lineage: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Fixed at creation; distinguishes unrelated states with the same id"
    )
    timestamp: datetime = Field(default_factory=_utcnow)
    resources: Dict[str, ResourceState] = Field(default_factory=dict)
    deposed: List[DeposedObject] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_resource(self, address: str) -> Optional[ResourceState]:
        return self.resources.get(address)

    def has_resource(self, address: str) -> bool:
        return address in self.resources

    def set_resource(self, resource: ResourceState) -> None:
        self.resources[resource.address] = resource
        self.timestamp = _utcnow()

    def remove_resource(self, address: str) -> Optional[ResourceState]:
        resource = self.resources.pop(address, None)
        self.timestamp = _utcnow()
        return resource

    def depose(self, address: str) -> Optional[DeposedObject]:
        """Move the current object at ``address`` to the deposed list."""
        resource = self.resources.pop(address, None)
        if resource is None:
            return None
        deposed = DeposedObject(resource=resource)
        self.deposed.append(deposed)
        self.timestamp = _utcnow()
        return deposed

    def remove_deposed(self, key: str) -> Optional[DeposedObject]:
        for index, deposed in enumerate(self.deposed):
            if deposed.key == key:
                self.timestamp = _utcnow()
                return self.deposed.pop(index)
        return None

    def addresses(self) -> List[str]:
        return list(self.resources)

    def is_empty(self) -> bool:
        return not self.resources and not self.deposed

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSnapshot":
        return cls.model_validate(data)


class LockToken(BaseModel):
    """Lock record for one state id; held for a whole plan/apply cycle."""

    state_id: str
    lock_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = "apply"
    who: str = Field(default_factory=default_lock_owner)
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime

    @classmethod
    def new(cls, state_id: str, ttl: float, operation: str = "apply") -> "LockToken":
        now = _utcnow()
        return cls(
            state_id=state_id,
            operation=operation,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at
