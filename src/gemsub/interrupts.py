from __future__ import annotations

import os
import signal
import sys
import threading
import time
from contextlib import contextmanager
from typing import Iterator

from loguru import logger


class CancelledByUser(BaseException):
    """Raised when user requests cancellation (Ctrl+C / SIGTERM)."""

    def __init__(self, reason: str | None = None):
        super().__init__(reason or "cancelled")
        self.reason = reason or "cancelled"


class CancelToken:
    """Cancellation flag shared by one translation run and its signal handlers."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def request_cancel(self, reason: str | None = None) -> None:
        """Mark the run as cancelled (idempotent)."""
        if self._event.is_set():
            return
        self._reason = (reason or "cancelled").strip() or "cancelled"
        self._event.set()
        try:
            logger.warning(f"已请求取消: {self._reason}")
        except Exception:
            # Logging must never block cancellation.
            pass

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def reset(self) -> None:
        self._event.clear()
        self._reason = None

    def check(self) -> None:
        """Raise CancelledByUser if cancellation has been requested."""
        if self._event.is_set():
            raise CancelledByUser(self._reason)


def sleep_with_cancel(token: CancelToken | None, seconds: float, step: float = 0.2) -> None:
    """Sleep but remain responsive to cancellation."""
    end = time.monotonic() + max(0.0, float(seconds))
    while True:
        if token is not None:
            token.check()
        now = time.monotonic()
        if now >= end:
            return
        time.sleep(min(float(step), end - now))


@contextmanager
def ignore_signals_during_shutdown() -> Iterator[None]:
    """Ignore SIGINT/SIGTERM while flushing output (prevents double Ctrl+C crashes)."""
    old: dict[int, object] = {}
    for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)):
        if sig is None:
            continue
        try:
            old[int(sig)] = signal.getsignal(sig)  # type: ignore[arg-type]
            signal.signal(sig, signal.SIG_IGN)  # type: ignore[arg-type]
        except (ValueError, OSError):
            # Not in the main thread.
            pass
    try:
        yield
    finally:
        for sig, handler in old.items():
            try:
                signal.signal(sig, handler)  # type: ignore[arg-type]
            except (ValueError, OSError):
                pass


def install_signal_handlers(token: CancelToken) -> None:
    """Route SIGINT/SIGTERM into `token`.

    The previous handler is still chained so the default SIGINT behavior (KeyboardInterrupt)
    interrupts a blocking network call. A second Ctrl+C exits immediately.
    """
    sigint = signal.SIGINT
    sigterm = signal.SIGTERM

    prev_int = signal.getsignal(sigint)
    prev_term = signal.getsignal(sigterm)
    sigint_count = 0

    def _handler(signum: int, frame) -> None:  # noqa: ARG001
        nonlocal sigint_count
        name = "SIGINT" if signum == sigint else "SIGTERM" if signum == sigterm else str(signum)

        if signum == sigint:
            sigint_count += 1
            if sigint_count >= 2:
                try:
                    logger.warning("第二次 Ctrl+C，强制退出")
                    sys.stderr.flush()
                except Exception:
                    pass
                os._exit(130)

        token.request_cancel(name)

        prev = prev_int if signum == sigint else prev_term
        if callable(prev):
            prev(signum, frame)
            return
        if prev == signal.SIG_DFL:
            if signum == sigint:
                raise KeyboardInterrupt
            raise SystemExit(128 + int(signum))

    try:
        signal.signal(sigint, _handler)
        signal.signal(sigterm, _handler)
    except ValueError:
        logger.warning("无法安装信号处理器（非主线程）")
