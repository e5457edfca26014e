from __future__ import annotations

from pathlib import Path

import pytest


def test_settings_read_environment(monkeypatch):
    from gemsub.config import Settings

    monkeypatch.setenv("GEMINI_API_KEY", "env-key")
    monkeypatch.setenv("BATCH_SIZE", "50")
    monkeypatch.setenv("STREAMING", "false")

    s = Settings()
    assert s.gemini_api_key == "env-key"
    assert s.batch_size == 50
    assert s.streaming is False
    assert s.api_keys() == ("env-key", None)


def test_settings_defaults():
    from gemsub.config import Settings

    s = Settings(gemini_api_key="k")
    assert s.batch_size == 300
    assert s.free_quota_delay_s == 2.0
    assert s.quota_cooldown_s == 60.0
    assert s.context_pairs == 3
    assert s.temperature is None


def test_settings_validate_ranges():
    from pydantic import ValidationError

    from gemsub.config import Settings

    with pytest.raises(ValidationError):
        Settings(thinking_budget=30000)
    with pytest.raises(ValidationError):
        Settings(temperature=2.5)
    with pytest.raises(ValidationError):
        Settings(batch_size=0)


def test_openai_provider_uses_openai_keys():
    from gemsub.config import Settings

    s = Settings(provider="openai", openai_api_key="a", openai_api_key2="b", gemini_api_key="g")
    assert s.api_keys() == ("a", "b")


def test_job_default_output_name():
    from gemsub.config import TranslationJob

    job = TranslationJob(input_file=Path("/subs/movie.en.srt"), target_language="Spanish")
    assert job.output_file == Path("/subs/movie.en_Spanish.srt")
    assert job.work_dir == Path("/subs")
