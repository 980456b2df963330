from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from pydantic import BaseModel, PrivateAttr, ValidationError as SchemaError, field_validator

from common.storage import Storage, StorageError
from parley.errors import ConfigError, StorageWriteFailed

logger = logging.getLogger(__name__)

CONFIG_KEY = "config"

DEFAULT_MODEL = "llama-3.1-sonar-large-128k-online"
DEFAULT_SYSTEM_PROMPT = "You are a capable assistant."

MODEL_CATALOG: dict[str, str] = {
    "llama-3.1-sonar-large-128k-online": "Llama 3.1 Sonar Large (128k)",
    "llama-3.1-sonar-small-128k-online": "Llama 3.1 Sonar Small (128k)",
    "llama-3.1-70b-versatile": "Llama 3.1 70B",
    "sonar-small-online": "Sonar Small",
    "sonar-medium-online": "Sonar Medium",
    "codellama-70b-instruct": "CodeLlama 70B",
    "mixtral-8x7b-instruct": "Mixtral 8x7B",
}

MODEL_ALIASES = {
    "large": "llama-3.1-sonar-large-128k-online",
    "small": "llama-3.1-sonar-small-128k-online",
    "70b": "llama-3.1-70b-versatile",
    "sonar-small": "sonar-small-online",
    "sonar-medium": "sonar-medium-online",
    "codellama": "codellama-70b-instruct",
    "mixtral": "mixtral-8x7b-instruct",
}


def resolve_model_alias(name: str) -> str:
    return MODEL_ALIASES.get(name.lower(), name)


def model_display_name(model: str) -> str:
    return MODEL_CATALOG.get(model, model)


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name) or default


def default_data_dir() -> str:
    return get_optional_env("PARLEY_DATA_DIR", os.path.join(os.path.expanduser("~"), ".parley"))


class Configuration(BaseModel):
    api_key: str = ""
    model: str = DEFAULT_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Set when api_key came from PERPLEXITY_API_KEY rather than the stored record.
    _api_key_from_env: bool = PrivateAttr(default=False)

    @field_validator("api_key")
    @classmethod
    def _strip_key(cls, value: str) -> str:
        return value.strip()

    @field_validator("model")
    @classmethod
    def _known_model(cls, value: str) -> str:
        value = resolve_model_alias(value.strip())
        if value not in MODEL_CATALOG:
            raise ValueError(f"Unknown model: {value}")
        return value

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key)


@dataclass
class ClientConfig:
    api_base: str = field(
        default_factory=lambda: get_optional_env("PARLEY_API_BASE", "https://api.perplexity.ai")
    )
    timeout: float = field(default_factory=lambda: float(get_optional_env("PARLEY_TIMEOUT", "60")))
    max_tokens: int = 1024
    temperature: float = 0.7
    frequency_penalty: float = 0.5

    @property
    def completions_url(self) -> str:
        return self.api_base.rstrip("/") + "/chat/completions"


class ConfigStore:
    """Reads and writes the user's Configuration record."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def load(self) -> Configuration:
        try:
            data = self.storage.read(CONFIG_KEY)
        except StorageError as e:
            logger.warning(f"Config unreadable, using defaults: {e}")
            data = None

        config = Configuration()
        if isinstance(data, dict):
            try:
                config = Configuration.model_validate(data)
            except SchemaError as e:
                logger.warning(f"Invalid stored config, using defaults: {e}")

        updates: dict[str, str] = {}
        if not config.api_key and os.environ.get("PERPLEXITY_API_KEY"):
            updates["api_key"] = os.environ["PERPLEXITY_API_KEY"].strip()
        if data is None and os.environ.get("PARLEY_MODEL"):
            updates["model"] = os.environ["PARLEY_MODEL"]
        if updates:
            try:
                config = Configuration.model_validate({**config.model_dump(), **updates})
            except SchemaError as e:
                raise ConfigError(f"Invalid configuration from environment: {e}") from e
            config._api_key_from_env = "api_key" in updates
        return config

    def save(self, config: Configuration) -> None:
        record = config.model_dump()
        if config._api_key_from_env:
            record["api_key"] = ""
        try:
            self.storage.write(CONFIG_KEY, record)
        except StorageError as e:
            raise StorageWriteFailed(f"Could not save settings: {e}") from e

    def update(self, config: Configuration, **changes) -> Configuration:
        """Validate and persist changes. An environment key is only written when set explicitly."""
        try:
            updated = Configuration.model_validate({**config.model_dump(), **changes})
        except SchemaError as e:
            raise ConfigError(_first_error(e)) from e
        if "api_key" not in changes:
            updated._api_key_from_env = config._api_key_from_env
        self.save(updated)
        return updated


def _first_error(exc: SchemaError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    msg = str(errors[0].get("msg", exc))
    return msg.removeprefix("Value error, ")
