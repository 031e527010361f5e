"""Providers implementing create/read/update/delete per resource type."""

from .base import BaseProvider, ResourceObject, ResourceSchema
from .local import LocalProvider
from .null import NullProvider
from .registry import ENTRY_POINT_GROUP, ProviderRegistry, provider_name_for

__all__ = [
    'BaseProvider',
    'ResourceObject',
    'ResourceSchema',
    'LocalProvider',
    'NullProvider',
    'ProviderRegistry',
    'ENTRY_POINT_GROUP',
    'provider_name_for',
]
