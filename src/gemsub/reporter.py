from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from loguru import logger


@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int
    percentage: int
    message: str = ""


def make_event(current: int, total: int, message: str = "") -> ProgressEvent:
    safe_total = max(1, int(total))
    safe_current = max(0, min(int(current), safe_total))
    ratio = min(1.0, max(0.0, safe_current / safe_total))
    return ProgressEvent(current=safe_current, total=safe_total, percentage=int(100 * ratio), message=message)


class ProgressReporter(Protocol):
    """Sink for translation progress (terminal renderer, push-event transport, ...)."""

    def on_progress(self, event: ProgressEvent) -> None: ...

    def on_batch_success(self, message: str) -> None: ...

    def on_warning(self, message: str) -> None: ...

    def on_error(self, message: str) -> None: ...


class LoggerReporter:
    """Default sink: everything goes through loguru."""

    def __init__(self, progress_level: str = "DEBUG"):
        self.progress_level = progress_level

    def on_progress(self, event: ProgressEvent) -> None:
        logger.log(
            self.progress_level,
            f"翻译进度: {event.percentage}% ({event.current}/{event.total}) {event.message}".rstrip(),
        )

    def on_batch_success(self, message: str) -> None:
        logger.success(message)

    def on_warning(self, message: str) -> None:
        logger.warning(message)

    def on_error(self, message: str) -> None:
        logger.error(message)


class TranscriptReporter:
    """Forward to another reporter and remember messages for `progress.log`."""

    def __init__(self, inner: ProgressReporter):
        self.inner = inner
        self.messages: list[str] = []
        self.last_event: ProgressEvent | None = None

    def _remember(self, message: str) -> None:
        if message and message not in self.messages:
            self.messages.append(message)

    def on_progress(self, event: ProgressEvent) -> None:
        self.last_event = event
        self.inner.on_progress(event)

    def on_batch_success(self, message: str) -> None:
        self._remember(message)
        self.inner.on_batch_success(message)

    def on_warning(self, message: str) -> None:
        self._remember(message)
        self.inner.on_warning(message)

    def on_error(self, message: str) -> None:
        self._remember(message)
        self.inner.on_error(message)

    def save(self, path: str | Path) -> None:
        if self.last_event is None and not self.messages:
            return
        lines: list[str] = []
        if self.last_event is not None:
            ev = self.last_event
            lines.append(f"Progress: {ev.current}/{ev.total} ({ev.percentage}%)")
            lines.append("")
        lines.append("Messages:")
        lines.extend(self.messages)
        Path(path).write_text("\n".join(lines) + "\n", encoding="utf-8")


class ThoughtsLog:
    """Append-only transcript of reasoning output, one section per batch attempt."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def append(self, thoughts: str, batch_number: int, retry: int = 0) -> None:
        if retry > 0:
            header = f"Batch {batch_number}.{retry} thoughts (retry):"
        else:
            header = f"Batch {batch_number} thoughts:"
        rule = "=" * 80
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(f"\n{rule}\n\n{header}\n\n{rule}\n\n{thoughts}\n\n")
