"""Pydantic models for the project file and resource declarations."""

import re
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]*$"
_IDENTIFIER_RE = re.compile(IDENTIFIER_PATTERN)


class LifecycleConfig(BaseModel):
    """Per-resource lifecycle policy."""

    model_config = ConfigDict(frozen=True)

    create_before_destroy: bool = Field(
        False, description="Create the replacement before destroying the old object"
    )
    prevent_destroy: bool = Field(
        False, description="Fail any plan that would destroy this resource"
    )
    ignore_changes: List[str] = Field(
        default_factory=list, description="Top-level attributes excluded from diffing"
    )


class ResourceDeclaration(BaseModel):
    """A declared resource: type, name, attributes and references."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., pattern=IDENTIFIER_PATTERN, description="Resource type (e.g. null_resource)")
    name: str = Field(..., pattern=IDENTIFIER_PATTERN, description="Resource name, unique per type")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Attribute map; strings may contain ${...} expressions"
    )
    depends_on: List[str] = Field(
        default_factory=list, description="Explicit dependencies as resource addresses"
    )
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> List[str]:
        """Each entry must look like TYPE.NAME."""
        for address in v:
            parts = address.split(".")
            if len(parts) != 2 or not all(_IDENTIFIER_RE.match(p) for p in parts):
                raise ValueError(f"depends_on entry '{address}' is not a resource address")
        return v

    @property
    def address(self) -> str:
        """Resource address (TYPE.NAME)."""
        return f"{self.type}.{self.name}"


class BackendConfig(BaseModel):
    """Where snapshots and lock records are stored."""

    type: str = Field("local", pattern="^(local|s3)$")

    # local backend
    path: str = Field(".landform/state", description="Directory for local state files")

    # s3 backend
    bucket: Optional[str] = Field(None, description="S3 bucket holding snapshot objects")
    key_prefix: str = Field("landform", description="Key prefix for snapshot objects")
    lock_table: Optional[str] = Field(None, description="DynamoDB table holding lock records")
    region: Optional[str] = Field(None, description="AWS region for the backend clients")
    profile: Optional[str] = Field(None, description="AWS profile for the backend clients")
    encrypt: bool = Field(True, description="Request server-side encryption for snapshots")

    @model_validator(mode="after")
    def validate_backend(self):
        """The s3 backend needs a bucket and a lock table."""
        if self.type == "s3":
            if not self.bucket:
                raise ValueError("bucket is required for the s3 backend")
            if not self.lock_table:
                raise ValueError("lock_table is required for the s3 backend")
        return self


class RetryConfig(BaseModel):
    """Backoff settings for transient provider errors."""

    max_retries: int = Field(5, ge=0, le=20)
    base_delay: float = Field(1.0, gt=0)
    max_delay: float = Field(30.0, gt=0)

    @model_validator(mode="after")
    def validate_delays(self):
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self


class EngineConfig(BaseModel):
    """Execution settings for plan and apply."""

    max_workers: int = Field(10, ge=1, le=256, description="Concurrent provider calls")
    halt_on_failure: bool = Field(False, description="Stop scheduling after the first failure")
    provider_timeout: float = Field(300.0, gt=0, description="Seconds allowed per provider call")
    lock_ttl: float = Field(900.0, gt=0, description="Seconds before an unrenewed lock is stale")
    lock_timeout: float = Field(0.0, ge=0, description="Seconds to wait for a held lock")
    retry: RetryConfig = Field(default_factory=RetryConfig)


class ProjectConfig(BaseModel):
    """Project metadata."""

    name: str = Field(..., pattern=IDENTIFIER_PATTERN)
    state_id: Optional[str] = Field(
        None, description="State identity; defaults to the project name"
    )
    description: Optional[str] = None

    @property
    def effective_state_id(self) -> str:
        return self.state_id or self.name
