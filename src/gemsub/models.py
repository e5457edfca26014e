from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import Settings, TranslationJob

_GEMINI_THINKING_RE = re.compile(r"gemini-(2\.5|[3-9](\.\d+)?)-")
_OPENAI_REASONING_RE = re.compile(r"(^|/)(o[1-9]|gpt-5|deepseek-r|deepseek-reasoner|qwq)", re.IGNORECASE)


class ModelCheckError(RuntimeError):
    """Raised when required models or credentials are missing."""


class ConfigError(ModelCheckError):
    """Raised when a translation job is missing required configuration."""


@dataclass(frozen=True)
class ModelCapabilities:
    name: str
    thinking: bool
    thinking_budget: bool


def model_capabilities(provider: str, model_name: str) -> ModelCapabilities:
    """Reasoning support of `model_name`, decided from its name."""
    name = model_name.removeprefix("models/")
    if provider == "openai":
        thinking = bool(_OPENAI_REASONING_RE.search(name))
        return ModelCapabilities(name=name, thinking=thinking, thinking_budget=False)
    thinking = bool(_GEMINI_THINKING_RE.search(name)) or "thinking" in name
    # Pro models cannot switch thinking off, so only flash variants take a budget.
    return ModelCapabilities(name=name, thinking=thinking, thinking_budget=thinking and "flash" in name)


@dataclass
class Requirement:
    name: str
    value: Optional[object]
    hint: str

    def satisfied(self) -> bool:
        if isinstance(self.value, Path):
            return self.value.is_file()
        return bool(self.value)


class ModelManager:
    """Validate credentials and job inputs before any network call is made."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()

    def requirements(self, job: TranslationJob | None = None) -> list[Requirement]:
        primary, _secondary = self.settings.api_keys()
        key_name = "OPENAI_API_KEY" if self.settings.provider == "openai" else "GEMINI_API_KEY"
        reqs = [
            Requirement(
                name=f"API Key ({self.settings.provider})",
                value=primary,
                hint=f"请在 .env 中配置 {key_name}。",
            ),
            Requirement(
                name="Model",
                value=self.settings.model_name,
                hint="请设置 MODEL_NAME。",
            ),
        ]
        if job is not None:
            reqs.append(Requirement(name="Target language", value=job.target_language, hint="请指定目标语言。"))
            reqs.append(
                Requirement(
                    name="Input file",
                    value=job.input_file,
                    hint=f"输入文件不存在: {job.input_file}",
                )
            )
        return reqs

    def missing(self, job: TranslationJob | None = None) -> list[Requirement]:
        return [req for req in self.requirements(job) if not req.satisfied()]

    def ensure_ready(self, job: TranslationJob | None = None) -> None:
        if self.settings.provider not in {"gemini", "openai"}:
            raise ConfigError(f"未知的 PROVIDER: {self.settings.provider}（可选 gemini / openai）")
        missing = self.missing(job)
        if not missing:
            return
        for req in missing:
            logger.error(f"缺少 {req.name}: {req.hint}")
        names = ", ".join(req.name for req in missing)
        raise ConfigError(f"缺少必要配置: {names}")

    def capabilities(self) -> ModelCapabilities:
        return model_capabilities(self.settings.provider, self.settings.model_name)
