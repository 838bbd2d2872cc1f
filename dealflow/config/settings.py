from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dealflow.config.pipeline import (
    ConversationLimits,
    PipelineConfig,
)
from dealflow.utils.error_taxonomy import ConfigurationError
from dealflow.utils.retry import RetryOptions


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DEALFLOW_",
        extra="ignore",
    )

    sqlite_path: Path = Path("data/dealflow.sqlite3")
    prompts_root: Path = Path("dealflow/prompts")
    reasoning_params_path: Path | None = None

    reasoning_model: str = "gpt-5.1"
    quick_context_model: str = "gpt-5-mini"
    ocr_model: str = "mistral-ocr-latest"
    memo_prompt_version: str = "v001"
    quick_context_prompt_version: str = "v001"

    max_iterations: int = Field(default=15, ge=1)
    wall_clock_budget_seconds: float = Field(default=600.0, gt=0)
    max_searches_per_iteration: int = Field(default=3, ge=1)
    search_timeout_seconds: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)
    ocr_timeout_seconds: float = Field(default=300.0, gt=0)
    min_primary_text_length: int = Field(default=200, ge=1)
    quick_context_enabled: bool = True
    stream_buffer_size: int = Field(default=1_000, ge=1)

    server_host: str = "127.0.0.1"
    server_port: int = Field(default=8000, ge=1, le=65535)
    log_level: str = "INFO"
    log_file: Path | None = None

    alert_webhook_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "DEALFLOW_ALERT_WEBHOOK_URL",
            "ALERT_WEBHOOK_URL",
        ),
    )
    alert_webhook_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "DEALFLOW_ALERT_WEBHOOK_TOKEN",
            "ALERT_WEBHOOK_TOKEN",
        ),
    )

    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DEALFLOW_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    mistral_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DEALFLOW_MISTRAL_API_KEY", "MISTRAL_API_KEY"),
    )
    linkup_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DEALFLOW_LINKUP_API_KEY", "LINKUP_API_KEY"),
    )
    linkup_base_url: str = "https://api.linkup.so/v1"

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parents[2]

    @property
    def resolved_sqlite_path(self) -> Path:
        return self._resolve_path(self.sqlite_path)

    @property
    def resolved_prompts_root(self) -> Path:
        return self._resolve_path(self.prompts_root)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as file:
            data = yaml.safe_load(file) or {}

        if not isinstance(data, dict):
            raise ValueError(f"YAML config must contain object root: {path}")

        return data

    @property
    def reasoning_params(self) -> dict[str, Any]:
        if self.reasoning_params_path is None:
            return {}
        return self.load_yaml(self._resolve_path(self.reasoning_params_path))

    def require_runtime_settings(self) -> None:
        """Fail fast when a credential or the alert destination is missing."""
        required = {
            "OPENAI_API_KEY": self.openai_api_key,
            "MISTRAL_API_KEY": self.mistral_api_key,
            "LINKUP_API_KEY": self.linkup_api_key,
            "ALERT_WEBHOOK_URL": self.alert_webhook_url,
        }
        missing = [name for name, value in required.items() if not (value or "").strip()]
        if missing:
            raise ConfigurationError(
                "Missing required settings: " + ", ".join(sorted(missing))
            )

    def to_pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            retry=RetryOptions(
                max_retries=self.max_retries,
                base_delay_seconds=self.retry_base_delay_seconds,
                max_delay_seconds=self.retry_max_delay_seconds,
            ),
            conversation=ConversationLimits(
                max_iterations=self.max_iterations,
                wall_clock_budget_seconds=self.wall_clock_budget_seconds,
                max_searches_per_iteration=self.max_searches_per_iteration,
                search_timeout_seconds=self.search_timeout_seconds,
            ),
            ocr_timeout_seconds=self.ocr_timeout_seconds,
            min_primary_text_length=self.min_primary_text_length,
            quick_context_enabled=self.quick_context_enabled,
            memo_prompt_version=self.memo_prompt_version,
            quick_context_prompt_version=self.quick_context_prompt_version,
            reasoning_model=self.reasoning_model,
            reasoning_params=self.reasoning_params,
            quick_context_model=self.quick_context_model,
        )

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
