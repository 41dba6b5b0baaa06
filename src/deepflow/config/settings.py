"""Settings and configuration management."""

import logging
import os
import re
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

logger = logging.getLogger(__name__)

_DEFAULT_DATABASE_URL = "sqlite:///deepflow-state.db"

# Regex for ${ENV_VAR} placeholders in YAML values
_ENV_VAR_PLACEHOLDER_RE = re.compile(r"^\$\{[A-Z_][A-Z0-9_]*\}$")

# YAML config search paths (checked in order, first found wins)
_YAML_SEARCH_PATHS = [
    Path("deepflow.yaml"),
    Path("config/deepflow.yaml"),
    Path.home() / ".config" / "deepflow" / "deepflow.yaml",
]


def _find_yaml_config() -> Path | None:
    """Find the deepflow.yaml to overlay, honouring DEEPFLOW_CONFIG_FILE."""
    explicit = os.environ.get("DEEPFLOW_CONFIG_FILE")
    if explicit:
        path = Path(explicit)
        if path.is_file():
            return path
        logger.warning("DEEPFLOW_CONFIG_FILE points to missing file: %s", explicit)
        return None
    for path in _YAML_SEARCH_PATHS:
        if path.is_file():
            return path
    return None


class Settings(BaseSettings):
    """Application settings.

    Priority chain: init kwargs > env vars > .env file > deepflow.yaml > defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="DEEPFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Priority: init kwargs > env vars > .env file > deepflow.yaml > file secrets > defaults
        """
        sources: list[PydanticBaseSettingsSource] = [
            init_settings,
            env_settings,
            dotenv_settings,
        ]

        yaml_path = _find_yaml_config()
        if yaml_path:
            sources.append(
                YamlConfigSettingsSource(
                    settings_cls,
                    yaml_file=yaml_path,
                    yaml_file_encoding="utf-8",
                )
            )

        sources.append(file_secret_settings)
        return tuple(sources)

    @model_validator(mode="before")
    @classmethod
    def _resolve_env_var_placeholders(cls, data: dict) -> dict:
        """Strip unresolved ${VAR} placeholders so they become None.

        YAML files may reference secrets as ${ENV_VAR}; when the variable is
        unset the field default applies instead of the raw placeholder.
        """
        if not isinstance(data, dict):
            return data
        for key, value in data.items():
            if isinstance(value, str) and _ENV_VAR_PLACEHOLDER_RE.match(value):
                data[key] = None
        return data

    # Application Settings
    log_level: str = Field("INFO", description="Logging level")
    log_format: str = Field("text", description="Log format: 'text' or 'json'")
    sanitize_logs: bool = Field(True, description="Sanitize sensitive data from logs")

    # Database
    database_url: str = Field(
        default=_DEFAULT_DATABASE_URL,
        description="Database URL (sqlite:///path.db or sqlite:///:memory:)",
    )

    # Provider credentials (fallback when no per-user credential store is given)
    openai_api_key: str | None = Field(None, description="OpenAI API key")
    anthropic_api_key: str | None = Field(None, description="Anthropic API key")
    google_api_key: str | None = Field(None, description="Google Gemini API key")
    cohere_api_key: str | None = Field(None, description="Cohere API key")
    mistral_api_key: str | None = Field(None, description="Mistral API key")
    provider_timeout: float = Field(120.0, gt=0, description="Provider request timeout in seconds")

    # Spend limits applied when a user has no stored limits
    default_daily_limit_usd: float = Field(10.0, ge=0, description="Default daily spend ceiling")
    default_monthly_limit_usd: float = Field(
        100.0, ge=0, description="Default monthly spend ceiling"
    )
    default_warning_threshold: float = Field(
        0.8, gt=0, le=1, description="Fraction of a limit that triggers a warning"
    )

    # Orchestrator
    step_max_retries: int = Field(
        0, ge=0, description="Retries for transient provider errors (0 disables retries)"
    )
    retry_base_delay: float = Field(1.0, ge=0, description="Initial retry delay in seconds")
    retry_max_delay: float = Field(30.0, ge=0, description="Maximum retry delay in seconds")
    max_parallel_steps: int = Field(4, ge=1, description="Maximum concurrently dispatched steps")
    default_max_tokens: int = Field(4000, ge=1, description="Max tokens when a step sets none")
    workflows_dir: Path | None = Field(
        None, description="Directory with additional workflow YAML definitions"
    )

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")
        return value

    def provider_api_keys(self) -> dict[str, str]:
        """Return configured provider credentials keyed by provider name."""
        keys = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
            "cohere": self.cohere_api_key,
            "mistral": self.mistral_api_key,
        }
        return {name: key for name, key in keys.items() if key}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
