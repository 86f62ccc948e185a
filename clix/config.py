"""
Engine configuration at ~/.clix/config.yaml.

Everything is optional; missing keys fall back to defaults:

- security: approval patterns, command length and chaining limits,
  dangerous first words
- execution: loop iteration cap, shell overrides
- validation: the workflow invocation prefix, built-in variable names
"""
from pathlib import Path
from typing import Any, List, Optional

import yaml

from .errors import ConfigurationError


class EngineConfig:
    """
    Engine configuration loaded from YAML.

    Values passed in (or read from YAML) are deep-merged over
    ``get_default()``.
    """

    CONFIG_PATH = Path.home() / ".clix" / "config.yaml"

    def __init__(self, data: Optional[dict] = None):
        self._data = self._deep_merge(self.get_default(), data or {})
        self._check_types()

    @classmethod
    def get_default(cls) -> dict:
        return {
            "security": {
                "require_approval_patterns": [
                    r"rm\s+-rf",
                    r"sudo\s+",
                    r"chmod\s+777",
                    r">\s*/dev/null",
                ],
                "max_command_length": 1000,
                "max_chained_commands": 3,
                "dangerous_commands": [
                    "rm", "rmdir", "dd", "mkfs", "format", "fdisk",
                    "shutdown", "reboot", "halt", "poweroff", "init",
                ],
            },
            "execution": {
                # None keeps loops unbounded
                "max_loop_iterations": None,
                "shell": None,
                "test_shell": None,
            },
            "validation": {
                "workflow_call_prefix": "clix flow run",
                "builtin_variables": ["HOME", "USER", "PATH", "PWD", "SHELL", "TERM"],
            },
        }

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "EngineConfig":
        """
        Load configuration from ``path`` (default ~/.clix/config.yaml).

        Returns defaults if the file doesn't exist.

        Raises:
            ConfigurationError: The file is not valid YAML or has wrong types
        """
        config_path = Path(path) if path is not None else cls.CONFIG_PATH
        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                user_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(user_data, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping at top level")

        return cls(user_data)

    @staticmethod
    def _deep_merge(base: dict, override: dict) -> dict:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = EngineConfig._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _check_types(self) -> None:
        for section in ("security", "execution", "validation"):
            if not isinstance(self._data.get(section, {}), dict):
                raise ConfigurationError(f"'{section}' must be a mapping")

        cap = self.get("execution", "max_loop_iterations")
        if cap is not None and (not isinstance(cap, int) or isinstance(cap, bool) or cap < 1):
            raise ConfigurationError("execution.max_loop_iterations must be a positive integer")

        for key in ("max_command_length", "max_chained_commands"):
            value = self.get("security", key)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigurationError(f"security.{key} must be an integer")

        for section, key in (("security", "require_approval_patterns"),
                             ("security", "dangerous_commands"),
                             ("validation", "builtin_variables")):
            if not isinstance(self.get(section, key), list):
                raise ConfigurationError(f"{section}.{key} must be a list")

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self._data.get(section, {}).get(key, default)

    @property
    def require_approval_patterns(self) -> List[str]:
        return list(self.get("security", "require_approval_patterns"))

    @property
    def max_command_length(self) -> int:
        return self.get("security", "max_command_length")

    @property
    def max_chained_commands(self) -> int:
        return self.get("security", "max_chained_commands")

    @property
    def dangerous_commands(self) -> List[str]:
        return list(self.get("security", "dangerous_commands"))

    @property
    def max_loop_iterations(self) -> Optional[int]:
        return self.get("execution", "max_loop_iterations")

    @property
    def shell(self) -> Optional[str]:
        return self.get("execution", "shell")

    @property
    def test_shell(self) -> Optional[str]:
        return self.get("execution", "test_shell")

    @property
    def workflow_call_prefix(self) -> str:
        return self.get("validation", "workflow_call_prefix")

    @property
    def builtin_variables(self) -> List[str]:
        return list(self.get("validation", "builtin_variables"))

    def to_dict(self) -> dict:
        return self._data
