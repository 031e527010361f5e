"""YAML configuration parser for the landform project file."""

import glob
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from landform.utils.errors import ConfigurationError

from .models import BackendConfig, EngineConfig, ProjectConfig, ResourceDeclaration

DEFAULT_CONFIG_FILE = "landform.yaml"
VARIABLE_ENV_PREFIX = "LANDFORM_VAR_"


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        super().__init__(message)

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


def parse_variable_value(raw: str) -> Any:
    """Interpret a variable given on the command line or in the environment.

    YAML scalars are used so that ``3`` is an int and ``true`` a bool; anything
    that does not parse stays a string.
    """
    try:
        value = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    return raw if value is None and raw.strip() not in ("null", "~") else value


class Config:
    """Configuration manager for a landform project."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to the landform.yaml project file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.backend: BackendConfig = BackendConfig()
        self.engine: EngineConfig = EngineConfig()
        self.variables: Dict[str, Any] = {}
        self.resources: List[ResourceDeclaration] = []

    @property
    def base_dir(self) -> Path:
        return self.config_path.parent

    @property
    def state_id(self) -> str:
        if self.project is None:
            raise ConfigValidationError("Configuration not loaded. Call load() first.")
        return self.project.effective_state_id

    def load(self, variable_overrides: Optional[Dict[str, Any]] = None) -> "Config":
        """Load and validate configuration from YAML.

        Args:
            variable_overrides: Variables from the command line (highest precedence)

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        self.data = self._read_yaml(self.config_path)
        resource_entries = self._collect_resource_entries()

        validation_errors = self.validate(resource_entries)
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**self.data["project"])
        self.backend = BackendConfig(**(self.data.get("backend") or {}))
        self.engine = EngineConfig(**(self.data.get("engine") or {}))
        self.resources = [ResourceDeclaration(**entry) for _, entry in resource_entries]
        self.variables = self._resolve_variables(variable_overrides or {})

        return self

    def validate(self, resource_entries: Optional[List] = None) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        if resource_entries is None:
            resource_entries = self._collect_resource_entries()

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            errors.extend(self._model_errors(ProjectConfig, self.data["project"], ["project"]))

        for section, model in (("backend", BackendConfig), ("engine", EngineConfig)):
            if self.data.get(section) is not None:
                errors.extend(self._model_errors(model, self.data[section], [section]))

        variables = self.data.get("variables")
        if variables is not None and not isinstance(variables, dict):
            errors.append({"loc": ["variables"], "msg": "Must be a mapping of name to value"})

        seen: Dict[str, List] = {}
        for location, entry in resource_entries:
            entry_errors = self._model_errors(ResourceDeclaration, entry, location)
            errors.extend(entry_errors)
            if not entry_errors:
                address = f"{entry['type']}.{entry['name']}"
                if address in seen:
                    errors.append({
                        "loc": location,
                        "msg": f"Duplicate resource address '{address}' (first declared at "
                               f"{' -> '.join(str(p) for p in seen[address])})",
                    })
                else:
                    seen[address] = location

        return errors

    def get_resources(self) -> List[ResourceDeclaration]:
        """Resource declarations in declaration order."""
        return list(self.resources)

    def _read_yaml(self, path: Path) -> Dict:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML in {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigValidationError(f"Top level of {path} must be a mapping")
        return data

    def _collect_resource_entries(self) -> List:
        """Gather (location, entry) pairs from the project file and includes."""
        entries = []
        self._append_entries(entries, self.data.get("resources"), [self.config_path.name])

        for pattern in self.data.get("include") or []:
            matches = sorted(glob.glob(str(self.base_dir / pattern)))
            if not matches:
                raise ConfigValidationError(f"Include pattern matched no files: {pattern}")
            for match in matches:
                included = self._read_yaml(Path(match))
                self._append_entries(entries, included.get("resources"), [os.path.relpath(match, self.base_dir)])

        return entries

    @staticmethod
    def _append_entries(entries: List, raw, prefix: List) -> None:
        if raw is None:
            return
        if not isinstance(raw, list):
            raise ConfigValidationError(f"'resources' in {prefix[0]} must be a list")
        for index, entry in enumerate(raw):
            if not isinstance(entry, dict):
                raise ConfigValidationError(f"Resource #{index} in {prefix[0]} must be a mapping")
            entries.append((prefix + ["resources", index], entry))

    @staticmethod
    def _model_errors(model, data, location: List) -> List[Dict]:
        if not isinstance(data, dict):
            return [{"loc": location, "msg": "Must be a mapping"}]
        try:
            model(**data)
        except ValidationError as e:
            return [
                {"loc": location + list(error["loc"]), "msg": error["msg"]}
                for error in e.errors()
            ]
        return []

    def _resolve_variables(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Defaults from the file, then LANDFORM_VAR_* environment, then overrides."""
        variables = dict(self.data.get("variables") or {})

        for key, raw in os.environ.items():
            if key.startswith(VARIABLE_ENV_PREFIX) and len(key) > len(VARIABLE_ENV_PREFIX):
                variables[key[len(VARIABLE_ENV_PREFIX):]] = parse_variable_value(raw)

        variables.update(overrides)
        return variables
