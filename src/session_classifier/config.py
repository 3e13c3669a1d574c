"""Configuration management for the session classifier."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Classifier settings, loaded from env vars and optionally overridden by a YAML config file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API keys
    openai_api_key: str = ""
    azure_openai_api_key: str = ""

    # Model config
    openai_model: str = "gpt-4o-mini"
    azure_openai_deployment: str = ""
    openai_base_url: str = ""
    azure_openai_endpoint: str = ""
    azure_openai_base_url: str = ""
    openai_temperature: float = 0.0
    client_max_retries: int = 4
    client_backoff_seconds: float = 1.0

    # Session source
    session_api_base_url: str = ""
    session_api_key: str = ""
    session_api_timeout_seconds: float = 60.0
    session_fetch_limit: int = 10000

    # Sampling
    min_session_count: int = 10
    min_messages_per_session: int = 2
    min_content_length: int = 10
    message_fetch_buffer_hours: int = 1
    random_seed: int | None = None

    # Parallel processing
    parallel_stream_count: int = 8
    sessions_per_stream: int = 4
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    sync_frequency: Literal["after_each_round", "at_end"] = "after_each_round"
    conflict_resolution_enabled: bool = True
    conflict_resolution_min_labels: int = 3

    # Discovery
    discovery_enabled: bool = True
    discovery_target_percentage: int = 15
    discovery_batch_size: int = 5

    # Paths
    input_sessions_path: Path = Field(default=Path("data/sessions.jsonl"))
    output_dir: Path = Field(default=Path("runs"))

    @classmethod
    def from_yaml(cls, config_path: str | Path, **overrides) -> "Settings":
        """Load settings from a YAML config file, with env vars and overrides applied on top."""
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_config = yaml.safe_load(f) or {}
        else:
            yaml_config = {}
        merged = {**yaml_config, **overrides}
        return cls(**merged)

    def resolved_openai_base_url(self) -> str:
        """Resolve effective base URL, preferring explicit base URL then Azure endpoint."""

        candidate = (
            self.openai_base_url.strip()
            or self.azure_openai_base_url.strip()
            or self.azure_openai_endpoint.strip()
        )
        if not candidate:
            return ""

        normalized = candidate.rstrip("/")
        if "azure.com" in normalized.lower() and "openai/v1" not in normalized:
            normalized = f"{normalized}/openai/v1"
        return f"{normalized}/"

    def uses_azure_openai(self) -> bool:
        """Return whether effective endpoint appears to be Azure OpenAI."""

        return "azure.com" in self.resolved_openai_base_url().lower()

    def resolved_openai_api_key(self) -> str:
        """Resolve API key with Azure-aware safeguard."""

        if self.uses_azure_openai():
            return self.azure_openai_api_key.strip()
        if self.openai_api_key.strip():
            return self.openai_api_key.strip()
        return self.azure_openai_api_key.strip()

    def resolved_openai_model(self) -> str:
        """Resolve model/deployment name with Azure-aware safeguard."""

        if self.uses_azure_openai() and self.azure_openai_deployment.strip():
            return self.azure_openai_deployment.strip()
        return self.openai_model.strip()

    def resolved_openai_key_source(self) -> str:
        """Return non-secret key source label for diagnostics."""

        if self.uses_azure_openai():
            if self.azure_openai_api_key.strip():
                return "AZURE_OPENAI_API_KEY"
            return "AZURE_OPENAI_API_KEY (missing)"
        if self.openai_api_key.strip():
            return "OPENAI_API_KEY"
        if self.azure_openai_api_key.strip():
            return "AZURE_OPENAI_API_KEY"
        return "none"
