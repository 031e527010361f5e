"""Null provider: resources that exist only in state."""

import base64
import secrets
from typing import Any, Dict

from .base import BaseProvider, ResourceObject, ResourceSchema


class NullProvider(BaseProvider):
    """Provider for ``null_resource`` and ``null_id``.

    ``null_resource`` is a placeholder whose ``triggers`` map forces a
    replacement when it changes. ``null_id`` generates random bytes once and
    exposes them as ``hex`` and ``b64``; useful for unique names.
    """

    name = "null"
    schemas = {
        "null_resource": ResourceSchema(immutable=frozenset({"triggers"})),
        "null_id": ResourceSchema(
            immutable=frozenset({"byte_length", "prefix", "keepers"}),
            computed=frozenset({"hex", "b64"}),
        ),
    }

    def create(self, resource: ResourceObject, timeout: float) -> Dict[str, Any]:
        self.get_schema(resource.type)

        if resource.type == "null_id":
            raw = secrets.token_bytes(int(resource.attributes.get("byte_length", 8)))
            prefix = resource.attributes.get("prefix") or ""
            hex_value = prefix + raw.hex()
            return {
                "id": hex_value,
                "hex": hex_value,
                "b64": base64.urlsafe_b64encode(raw).decode("ascii").rstrip("="),
            }

        return {"id": str(secrets.randbits(63))}

    def update(
        self,
        current: ResourceObject,
        attributes: Dict[str, Any],
        timeout: float
    ) -> Dict[str, Any]:
        return dict(current.outputs)

    def delete(self, resource: ResourceObject, timeout: float) -> None:
        return None
