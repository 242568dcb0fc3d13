"""
Application configuration.

All settings are loaded from environment variables (or a local .env file).
Secrets default to empty strings so the module imports cleanly in tests;
the pipeline refuses to start a run when a required credential is missing.

Pipeline tuning values here are only *defaults*. They are turned into an
explicit PipelineConfig at the HTTP edge and passed down from there. No
pipeline stage reads this module.

Usage:
    from ambient.config import settings
    print(settings.anthropic_model)
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Literal


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Anthropic LLM ---
    anthropic_api_key: str = Field(default="", description="Anthropic API key")
    anthropic_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Anthropic model to use",
    )
    anthropic_max_tokens_classify: int = Field(default=300)
    anthropic_max_tokens_extract: int = Field(default=1500)
    anthropic_max_tokens_blend: int = Field(default=2000)
    anthropic_max_tokens_compile: int = Field(default=1200)
    anthropic_max_tokens_automation: int = Field(default=3000)

    # --- Gmail API ---
    gmail_base_url: str = Field(default="https://gmail.googleapis.com/gmail/v1")
    gmail_userinfo_url: str = Field(default="https://www.googleapis.com/oauth2/v3/userinfo")

    # --- Pipeline defaults ---
    sent_count: int = Field(default=10, description="Sent emails to fetch per run")
    received_count: int = Field(default=10, description="Received emails to fetch per run")
    fetch_concurrency: int = Field(default=20, description="Concurrent Gmail requests per chunk")
    fetch_batch_delay_ms: int = Field(default=250, description="Pause between fetch chunks")
    fetch_retry_delay_ms: int = Field(default=1000, description="Base delay for fetch retries")
    fetch_max_retries: int = Field(default=3)
    outer_batch_size: int = Field(default=200, description="Emails per extraction batch")
    profile_word_limit: int = Field(default=250, description="Max words in the compiled profile")
    automation_display_count: int = Field(default=5)
    progress_history_size: int = Field(default=100, description="Sessions whose latest progress is kept")
    category_config_path: str = Field(
        default="",
        description="YAML file with profile categories and their guidance. Empty uses the built-in set.",
    )

    # --- Storage ---
    profile_store_path: str = Field(
        default="",
        description="Directory for JSON profile files. Empty keeps profiles in memory.",
    )

    # --- App ---
    app_name: str = Field(default="Ambient Profile")
    app_env: Literal["development", "staging", "production"] = Field(default="development")
    log_level: str = Field(default="info")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
