from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

SAMPLE = """1
00:00:01,000 --> 00:00:02,500
Hello there

2
00:00:03,000 --> 00:00:04,000
Two
lines

"""


def test_load_keeps_ids_timings_and_multiline_text(tmp_path: Path):
    from gemsub.codec import load_subtitles

    path = tmp_path / "a.srt"
    path.write_text("\ufeff" + SAMPLE, encoding="utf-8")
    entries = load_subtitles(path)

    assert [e.id for e in entries] == ["1", "2"]
    assert entries[0].start == timedelta(seconds=1)
    assert entries[0].end == timedelta(seconds=2, milliseconds=500)
    assert entries[1].text == "Two\nlines"


def test_save_then_load_preserves_entries(tmp_path: Path):
    from gemsub.codec import load_subtitles, save_subtitles

    src = tmp_path / "a.srt"
    src.write_text(SAMPLE, encoding="utf-8")
    entries = load_subtitles(src)
    entries[0].text = "你好"

    out = tmp_path / "nested" / "b.srt"
    save_subtitles(entries, out)
    again = load_subtitles(out)

    assert [(e.id, e.start, e.end) for e in again] == [(e.id, e.start, e.end) for e in entries]
    assert again[0].text == "你好"


def test_garbage_input_raises_parse_error():
    from gemsub.codec import SubtitleParseError, parse

    with pytest.raises(SubtitleParseError):
        parse("this is not a subtitle file\n")


def test_missing_file_raises_parse_error(tmp_path: Path):
    from gemsub.codec import SubtitleParseError, load_subtitles

    with pytest.raises(SubtitleParseError):
        load_subtitles(tmp_path / "missing.srt")
