"""Provider and agent configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from jsonschema import ValidationError, validate

from .errors import ConfigError

PROVIDERS = ("openai", "anthropic", "groq", "google")

DEFAULT_PROVIDER = "openai"
DEFAULT_MODEL = "gpt-4o"
DEFAULT_MESSAGE_CONTEXT = 20
DEFAULT_MAX_TURN_RESTARTS = 25


@dataclass
class ProviderConfig:
    """Active provider selection for an agent.

    ``client`` is the vendor SDK client; when omitted one is built from the
    environment the first time a request is made.
    """

    provider: Optional[str] = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    client: Any = None
    settings: Dict[str, Any] = field(default_factory=dict)


AGENT_SETTINGS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "agent_id": {"type": ["string", "null"]},
        "provider": {"type": "string", "enum": list(PROVIDERS)},
        "model": {"type": "string", "minLength": 1},
        "message_context": {"type": "integer", "minimum": -1},
        "stream": {"type": "boolean"},
        "max_turn_restarts": {"type": "integer", "minimum": 1},
        "trace_path": {"type": ["string", "null"]},
        "settings": {"type": "object"},
        "system_prompts": {"type": "array", "items": {"type": "string"}},
    },
    "additionalProperties": False,
}


@dataclass
class AgentSettings:
    agent_id: Optional[str] = None
    provider: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    message_context: int = DEFAULT_MESSAGE_CONTEXT
    stream: bool = False
    max_turn_restarts: int = DEFAULT_MAX_TURN_RESTARTS
    trace_path: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    system_prompts: list = field(default_factory=list)

    def provider_config(self, client: Any = None) -> ProviderConfig:
        return ProviderConfig(
            provider=self.provider,
            model=self.model,
            client=client,
            settings=dict(self.settings),
        )


def validate_settings(doc: Dict[str, Any]) -> None:
    try:
        validate(instance=doc, schema=AGENT_SETTINGS_SCHEMA)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e.message}") from e


def _env_overrides(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    if os.environ.get("MAGMA_PROVIDER"):
        out["provider"] = os.environ["MAGMA_PROVIDER"]
    if os.environ.get("MAGMA_MODEL"):
        out["model"] = os.environ["MAGMA_MODEL"]
    raw_context = os.environ.get("MAGMA_MESSAGE_CONTEXT")
    if raw_context:
        try:
            out["message_context"] = int(raw_context)
        except ValueError as e:
            raise ConfigError(f"MAGMA_MESSAGE_CONTEXT must be an integer, got '{raw_context}'") from e
    return out


def load_agent_settings(path: Optional[Union[str, Path]] = None, *, env_file: Optional[str] = None) -> AgentSettings:
    """Load settings from YAML (optional), ``.env`` and ``MAGMA_*`` variables."""
    load_dotenv(env_file)
    doc: Dict[str, Any] = {}
    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                doc = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Unable to read configuration '{path}': {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in '{path}': {e}") from e
        if not isinstance(doc, dict):
            raise ConfigError("Configuration root must be a mapping")
    doc = _env_overrides(doc)
    validate_settings(doc)
    return AgentSettings(**doc)


__all__ = [
    "PROVIDERS",
    "DEFAULT_PROVIDER",
    "DEFAULT_MODEL",
    "DEFAULT_MESSAGE_CONTEXT",
    "DEFAULT_MAX_TURN_RESTARTS",
    "ProviderConfig",
    "AGENT_SETTINGS_SCHEMA",
    "AgentSettings",
    "validate_settings",
    "load_agent_settings",
]
