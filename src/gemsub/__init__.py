"""Batch subtitle translation with Gemini / OpenAI-compatible models."""

from .config import Settings, TranslationJob
from .translator import SubtitleTranslator

__all__ = ["Settings", "SubtitleTranslator", "TranslationJob"]
