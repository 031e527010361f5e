"""Configuration management for landform projects."""

from .models import (
    BackendConfig,
    EngineConfig,
    LifecycleConfig,
    ProjectConfig,
    ResourceDeclaration,
    RetryConfig,
)
from .parser import Config, ConfigValidationError, parse_variable_value

__all__ = [
    "BackendConfig",
    "EngineConfig",
    "LifecycleConfig",
    "ProjectConfig",
    "ResourceDeclaration",
    "RetryConfig",
    "Config",
    "ConfigValidationError",
    "parse_variable_value",
]
