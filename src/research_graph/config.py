"""Configuration with 4-layer resolution: defaults -> YAML -> env -> overrides.

Uses pydantic-settings with YamlConfigSettingsSource for layered configuration.
Supports ``.env`` file loading, ``RESEARCH_GRAPH_`` prefixed env vars, and
nested delimiter ``__`` for overriding sub-model fields.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class ModelSettings(BaseModel):
    """Model Service selection and sampling parameters."""

    platform_model: str = Field(
        default="google__gemini-flash",
        description='Opaque "<provider>__<model>" selector.',
    )
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, gt=0)
    timeout: int = Field(default=120, gt=0, description="Request timeout in seconds.")


class SearchSettings(BaseModel):
    """Search Service provider configuration."""

    provider: Literal["tavily", "bing", "google", "exa"] = "tavily"
    results_per_page: int = Field(default=10, gt=0, le=50)
    market: str = "en-US"
    safe_search: Literal["off", "moderate", "strict"] = "moderate"
    timeout: int = Field(default=30, gt=0)


class SelectionSettings(BaseModel):
    """Diversity selector bounds."""

    max_selected: int = Field(default=3, gt=0, description="K: maximum sources per report.")
    min_score: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="T: a result must score strictly above this to be selected.",
    )


class FetchSettings(BaseModel):
    """Content fetcher configuration."""

    timeout: int = Field(default=30, gt=0, description="Per-request timeout in seconds.")
    max_content_length: int = Field(
        default=500_000, gt=0, description="Max characters kept per fetched page."
    )


class RetrySettings(BaseModel):
    """Retry controller policy for rate-limited remote calls."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(
        default=1.0, ge=0.0, description="Seconds; attempt n waits base_delay * 2**n."
    )


class PersistenceSettings(BaseModel):
    """Project store configuration."""

    directory: Path = Path("./data/projects")
    debounce_seconds: float = Field(default=1.0, ge=0.0)


class LoggingSettings(BaseModel):
    """Logging / observability configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Main Settings (4-layer resolution)
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Top-level application settings.

    Resolution order (last wins):
        1. Field defaults (defined above)
        2. YAML config file (``config.yaml`` or ``--config`` path)
        3. Environment variables (prefixed ``RESEARCH_GRAPH_``)
        4. Overrides passed to :meth:`load`
    """

    model_config = SettingsConfigDict(
        env_prefix="RESEARCH_GRAPH_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="config.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    _config_path_override: ClassVar[Path | None] = None

    model: ModelSettings = Field(default_factory=ModelSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    selection: SelectionSettings = Field(default_factory=SelectionSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Order sources: init > env > .env > yaml > defaults."""
        yaml_file = cls._config_path_override or settings_cls.model_config.get(
            "yaml_file", "config.yaml"
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
        )

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Load settings with optional config path and overrides.

        Args:
            config_path: Optional path to a YAML config file.
            **overrides: Key-value overrides applied at highest priority.

        Returns:
            Fully-resolved Settings instance.

        Raises:
            ValidationError: If any setting value fails validation.
        """
        cls._config_path_override = config_path
        try:
            return cls(**overrides)
        finally:
            cls._config_path_override = None


def format_validation_error(exc: ValidationError) -> str:
    """Format a Pydantic ValidationError into a user-friendly message.

    Args:
        exc: The validation error to format.

    Returns:
        A multi-line string with each error on its own line.
    """
    lines: list[str] = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        msg = error["msg"]
        raw_input = error.get("input")
        if raw_input is not None:
            lines.append(f"  {loc}: {msg} (got {raw_input!r})")
        else:
            lines.append(f"  {loc}: {msg}")
    return "Configuration error:\n" + "\n".join(lines)
