"""命令行入口测试."""

from __future__ import annotations

from pathlib import Path

import pytest


class _FakeTranslator:
    instances: list["_FakeTranslator"] = []
    results: dict[str, bool] = {}

    def __init__(self, settings, job, cancel_token=None):
        self.settings = settings
        self.job = job
        self.confirm_resume = "unset"
        _FakeTranslator.instances.append(self)

    def translate(self, confirm_resume=None):
        self.confirm_resume = confirm_resume
        return _FakeTranslator.results.get(self.job.input_file.name, True)


@pytest.fixture
def fake_translator(monkeypatch):
    import gemsub.cli as cli

    _FakeTranslator.instances = []
    _FakeTranslator.results = {}
    monkeypatch.setattr(cli, "SubtitleTranslator", _FakeTranslator)
    monkeypatch.setattr(cli, "install_signal_handlers", lambda _token: None)
    monkeypatch.delenv("TARGET_LANGUAGE", raising=False)
    return _FakeTranslator


def test_translate_command_maps_flags(fake_translator, tmp_path: Path):
    from gemsub.cli import main

    src = tmp_path / "ep1.srt"
    code = main(
        [
            "translate",
            str(src),
            "-l",
            "Korean",
            "-k",
            "key-a",
            "--api-key2",
            "key-b",
            "-b",
            "50",
            "--no-streaming",
            "--temperature",
            "0.2",
            "-s",
            "7",
            "-y",
        ]
    )

    assert code == 0
    (tr,) = fake_translator.instances
    assert tr.job.target_language == "Korean"
    assert tr.job.output_file == tmp_path / "ep1_Korean.srt"
    assert tr.job.start_line == 7
    assert tr.settings.api_keys() == ("key-a", "key-b")
    assert tr.settings.batch_size == 50
    assert tr.settings.streaming is False
    assert tr.settings.temperature == 0.2
    assert tr.confirm_resume is None


def test_translate_without_language_fails(fake_translator, tmp_path: Path):
    from gemsub.cli import main

    assert main(["translate", str(tmp_path / "a.srt"), "-k", "x"]) == 2
    assert fake_translator.instances == []


def test_batch_command_reports_partial_failure(fake_translator, tmp_path: Path):
    from gemsub.cli import main

    fake_translator.results = {"b.srt": False}
    out_dir = tmp_path / "out"
    code = main(
        ["batch", str(tmp_path / "a.srt"), str(tmp_path / "b.srt"), "-l", "fr", "-o", str(out_dir), "-k", "x", "-y"]
    )

    assert code == 1
    assert [t.job.output_file for t in fake_translator.instances] == [out_dir / "a_fr.srt", out_dir / "b_fr.srt"]


def test_interrupt_exits_with_130(fake_translator, monkeypatch, tmp_path: Path):
    from gemsub.cli import main
    from gemsub.interrupts import CancelledByUser

    def _boom(self, confirm_resume=None):
        raise CancelledByUser("SIGINT")

    monkeypatch.setattr(_FakeTranslator, "translate", _boom)
    assert main(["translate", str(tmp_path / "a.srt"), "-l", "fr", "-k", "x"]) == 130


def test_models_command_lists_names(monkeypatch, capsys):
    import gemsub.cli as cli

    class _Backend:
        def list_models(self, api_key):
            assert api_key == "key-a"
            return ["gemini-2.5-flash", "gemini-2.5-pro"]

    monkeypatch.setattr(cli, "build_backend", lambda _settings: _Backend())
    assert cli.main(["models", "-k", "key-a"]) == 0
    out = capsys.readouterr().out
    assert "Available models:" in out
    assert "gemini-2.5-pro" in out
