"""Configuration data models."""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import TypeAdapter

from structsync.domains.shared.kernel import NegotiationModeLiteral

ENV_PREFIX = "STRUCTSYNC_"

_NEGOTIATION_MODE = TypeAdapter(NegotiationModeLiteral)

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


@dataclass
class SyncConfig:
    """Centralized configuration for one sync channel."""

    # Registry settings
    max_registry_entries: int = 100  # definitions kept per registry (LRU)
    max_route_entries: int = 256  # route -> structure id mappings kept per channel

    # Negotiation: "single" (one agreed id) or "list" (set of known ids)
    negotiation_mode: str = "list"

    # Protocol behaviour
    enabled: bool = True  # False: every composite is sent as a full packet
    enable_differential: bool = True
    verify_structure_ids: bool = False
    id_length: int = 16  # hex characters kept from the structure digest

    # Caller-level policy
    fallback_on_error: bool = False

    # Pattern learning
    enable_pattern_learning: bool = False
    max_patterns_per_structure: int = 10

    def __post_init__(self) -> None:
        self.negotiation_mode = _NEGOTIATION_MODE.validate_python(self.negotiation_mode)
        for name in (
            "max_registry_entries",
            "max_route_entries",
            "id_length",
            "max_patterns_per_structure",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "SyncConfig":
        """Create configuration from dictionary. Unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: _coerce(cls, k, v) for k, v in config.items() if k in known})

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "SyncConfig":
        """Load configuration from a YAML file.

        Settings may sit at the top level or under a ``structsync:`` key.
        """
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping in {yaml_path}, got {type(data).__name__}")
        section = data.get("structsync", data)
        return cls.from_dict(section or {})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        """Build configuration from STRUCTSYNC_* environment variables."""
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is not None:
                values[f.name] = raw
        return cls.from_dict(values)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            key: value for key, value in self.__dict__.items()
            if not key.startswith('_')
        }

    def update(self, **kwargs) -> None:
        """Update configuration values.

        The result is validated before anything is assigned, so a
        rejected update leaves the configuration unchanged.
        """
        known = {f.name for f in fields(self)}
        changes = {}
        for key, value in kwargs.items():
            if key not in known:
                raise AttributeError(f"Unknown configuration key: {key}")
            changes[key] = _coerce(type(self), key, value)
        validated = replace(self, **changes)
        for key in known:
            setattr(self, key, getattr(validated, key))


def _coerce(cls: type, name: str, value: Any) -> Any:
    """Coerce string values (env vars, YAML scalars) to the field's type."""
    default = getattr(cls, name, None)
    if isinstance(default, bool):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            raise ValueError(f"Invalid boolean for {name}: {value!r}")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    return value
