"""SRT parsing / serialization on top of the `srt` library."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import srt
from loguru import logger


class SubtitleParseError(ValueError):
    """Raised when a subtitle file cannot be read or parsed."""


@dataclass
class SubtitleEntry:
    id: str
    start: timedelta
    end: timedelta
    text: str


def parse(text: str) -> list[SubtitleEntry]:
    try:
        subs = list(srt.parse(text))
    except srt.SRTParseError as exc:
        raise SubtitleParseError(f"无法解析字幕: {exc}") from exc
    return [SubtitleEntry(id=str(s.index), start=s.start, end=s.end, text=s.content) for s in subs]


def serialize(entries: list[SubtitleEntry]) -> str:
    subs = [
        srt.Subtitle(index=int(e.id), start=e.start, end=e.end, content=e.text)
        for e in entries
    ]
    return srt.compose(subs, reindex=False)


def load_subtitles(path: str | Path) -> list[SubtitleEntry]:
    path = Path(path)
    try:
        # utf-8-sig: many SRT files carry a BOM.
        text = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        raise SubtitleParseError(f"无法读取字幕文件: {path} ({exc})") from exc
    entries = parse(text)
    logger.info(f"已加载 {len(entries)} 条字幕: {path}")
    return entries


def save_subtitles(entries: list[SubtitleEntry], path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(serialize(entries), encoding="utf-8")
