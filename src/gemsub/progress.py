from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from loguru import logger


@dataclass(frozen=True)
class ProgressState:
    line: int
    input_file: str

    def to_dict(self) -> dict[str, object]:
        return {"line": self.line, "inputFile": self.input_file}


def progress_path_for(input_file: str | Path) -> Path:
    p = Path(input_file)
    return p.parent / f".{p.name}.progress"


class ProgressStore:
    """Resumable cursor stored next to the input file as `.<name>.progress`."""

    def __init__(self, input_file: str | Path):
        self.input_file = str(input_file)
        self.path = progress_path_for(input_file)

    def load(self, input_file: str | Path | None = None) -> ProgressState | None:
        wanted = str(input_file) if input_file is not None else self.input_file
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            line = int(data["line"])
            recorded = str(data["inputFile"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning(f"进度文件无效，已忽略: {self.path} ({exc})")
            return None
        if recorded != wanted:
            logger.warning(f"进度文件属于其他输入，已忽略: {recorded}")
            return None
        if line < 1:
            return None
        return ProgressState(line=line, input_file=recorded)

    def save(self, state: ProgressState) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, ensure_ascii=False)
        os.replace(tmp, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def resolve_start_line(store: ProgressStore, requested: int | None) -> tuple[int, ProgressState | None]:
    """Pick the first line to translate.

    An explicit start line always wins; otherwise a saved record for the same input is offered.
    Returns (start_line, saved_state_or_None); the caller decides whether to accept the saved state.
    """
    if requested is not None:
        return max(1, int(requested)), None
    saved = store.load()
    return 1, saved
