"""Local provider: files on the machine running landform."""

import hashlib
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from landform.utils.errors import ErrorContext, FatalProviderError
from landform.utils.logging import get_logger

from .base import BaseProvider, ResourceObject, ResourceSchema

logger = get_logger(__name__)


class LocalProvider(BaseProvider):
    """Provider for ``local_file``.

    Attributes: ``filename`` (required, relative paths resolve against the
    project directory), ``content`` and ``file_permission`` (octal string,
    default ``"0644"``). Outputs: ``id`` (SHA-1 of the content) and
    ``content_sha256``.
    """

    name = "local"
    schemas = {
        "local_file": ResourceSchema(
            immutable=frozenset({"filename"}),
            computed=frozenset({"content_sha256", "path"}),
        ),
    }

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()

    def create(self, resource: ResourceObject, timeout: float) -> Dict[str, Any]:
        self.get_schema(resource.type)
        return self._write(resource.address, resource.attributes)

    def read(self, resource: ResourceObject, timeout: float) -> Optional[Dict[str, Any]]:
        path = self._path(resource.address, resource.attributes)
        if not path.exists():
            logger.info(f"{resource.address}: {path} no longer exists")
            return None

        content = path.read_bytes()
        return self._outputs(path, content)

    def update(
        self,
        current: ResourceObject,
        attributes: Dict[str, Any],
        timeout: float
    ) -> Dict[str, Any]:
        return self._write(current.address, attributes)

    def delete(self, resource: ResourceObject, timeout: float) -> None:
        path = self._path(resource.address, resource.attributes)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"{resource.address}: {path} already deleted")

    def _path(self, address: str, attributes: Dict[str, Any]) -> Path:
        filename = attributes.get("filename")
        if not filename or not isinstance(filename, str):
            raise FatalProviderError(
                "local_file requires a 'filename' string attribute",
                context=ErrorContext(address=address, provider=self.name)
            )
        path = Path(filename)
        return path if path.is_absolute() else self.base_dir / path

    def _write(self, address: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        path = self._path(address, attributes)
        content = str(attributes.get("content", "")).encode("utf-8")
        permission = attributes.get("file_permission", "0644")

        try:
            mode = int(str(permission), 8)
        except ValueError as e:
            raise FatalProviderError(
                f"Invalid file_permission '{permission}'",
                context=ErrorContext(address=address, provider=self.name),
                cause=e
            )

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            os.chmod(temp_name, mode)
            os.replace(temp_name, path)
        except OSError:
            Path(temp_name).unlink(missing_ok=True)
            raise

        return self._outputs(path, content)

    @staticmethod
    def _outputs(path: Path, content: bytes) -> Dict[str, Any]:
        return {
            "id": hashlib.sha1(content).hexdigest(),
            "content_sha256": hashlib.sha256(content).hexdigest(),
            "path": str(path),
        }
