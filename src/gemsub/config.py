from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized configuration loaded from environment variables and .env."""

    # Provider
    provider: str = Field(default="gemini", description="gemini or openai (OpenAI compatible)", alias="PROVIDER")
    model_name: str = Field(
        default="gemini-2.5-flash",
        description="Model name used for translation",
        alias="MODEL_NAME",
    )

    # API tokens / credentials
    gemini_api_key: Optional[str] = Field(default=None, description="Primary Gemini API key", alias="GEMINI_API_KEY")
    gemini_api_key2: Optional[str] = Field(
        default=None,
        description="Secondary Gemini API key used when the primary one runs out of quota",
        alias="GEMINI_API_KEY2",
    )
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key", alias="OPENAI_API_KEY")
    openai_api_key2: Optional[str] = Field(default=None, description="Secondary OpenAI API key", alias="OPENAI_API_KEY2")
    openai_api_base: Optional[str] = Field(default=None, description="OpenAI compatible base URL", alias="OPENAI_API_BASE")

    # Translation
    target_language: Optional[str] = Field(default=None, description="Default translation target language", alias="TARGET_LANGUAGE")
    batch_size: int = Field(default=300, ge=1, description="Subtitle entries per model request", alias="BATCH_SIZE")
    streaming: bool = Field(default=True, description="Use streamed responses", alias="STREAMING")
    thinking: bool = Field(default=True, description="Ask reasoning-capable models to think", alias="THINKING")
    thinking_budget: Optional[int] = Field(
        default=2048,
        ge=0,
        le=24576,
        description="Reasoning token budget (0 disables thinking, unset uses the provider default)",
        alias="THINKING_BUDGET",
    )

    # Sampling (None means the provider default applies)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, alias="TEMPERATURE")
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, alias="TOP_P")
    top_k: Optional[int] = Field(default=None, ge=0, alias="TOP_K")

    # Quota / retries
    free_quota: bool = Field(default=True, description="Free quota accounts wait between batches", alias="FREE_QUOTA")
    free_quota_delay_s: float = Field(default=2.0, ge=0.0, alias="FREE_QUOTA_DELAY")
    quota_cooldown_s: float = Field(default=60.0, ge=0.0, alias="QUOTA_COOLDOWN")
    max_batch_retries: int = Field(
        default=5,
        ge=1,
        description="Failed attempts of one batch (validation / transport) before the run aborts",
        alias="MAX_BATCH_RETRIES",
    )
    request_timeout_s: float = Field(default=240.0, gt=0.0, alias="REQUEST_TIMEOUT")
    context_pairs: int = Field(default=3, ge=0, description="Request/response pairs kept as context", alias="CONTEXT_PAIRS")

    # Side logs
    progress_log: bool = Field(default=False, description="Write progress.log next to the input", alias="PROGRESS_LOG")
    thoughts_log: bool = Field(default=False, description="Append reasoning to thoughts.log", alias="THOUGHTS_LOG")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        env_prefix="",
        case_sensitive=False,
        populate_by_name=True,
    )

    def api_keys(self) -> tuple[Optional[str], Optional[str]]:
        """Return (primary, secondary) keys for the configured provider."""
        if self.provider == "openai":
            return self.openai_api_key, self.openai_api_key2
        return self.gemini_api_key, self.gemini_api_key2


@dataclass
class TranslationJob:
    """Per-run parameters: which file, into which language, from where."""

    input_file: Path
    target_language: str
    output_file: Optional[Path] = None
    start_line: Optional[int] = None
    description: Optional[str] = None

    def __post_init__(self) -> None:
        self.input_file = Path(self.input_file)
        if self.output_file is None:
            self.output_file = self.input_file.with_name(f"{self.input_file.stem}_{self.target_language}.srt")
        else:
            self.output_file = Path(self.output_file)

    @property
    def work_dir(self) -> Path:
        return self.input_file.parent
