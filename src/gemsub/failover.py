from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from .interrupts import CancelToken, sleep_with_cancel


@dataclass(frozen=True)
class CredentialPair:
    primary: str
    secondary: Optional[str] = None


class FailoverState(enum.Enum):
    USING_PRIMARY = "using_primary"
    USING_SECONDARY = "using_secondary"
    EXHAUSTED = "exhausted"


class ApiKeyFailover:
    """Switch between two API keys when one of them runs out of quota.

    With two keys a quota error flips to the other key, and back again on the next one.
    With a single key there is nowhere to go, so we wait `cooldown_s` on the same key and carry on.
    """

    def __init__(
        self,
        credentials: CredentialPair,
        cooldown_s: float = 60.0,
        cancel_token: CancelToken | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.credentials = credentials
        self.cooldown_s = float(cooldown_s)
        self.cancel_token = cancel_token
        self._sleep = sleep or (lambda s: sleep_with_cancel(self.cancel_token, s))
        self.active_slot = 1
        self.state = FailoverState.USING_PRIMARY

    @property
    def active_key(self) -> str:
        if self.active_slot == 2 and self.credentials.secondary:
            return self.credentials.secondary
        return self.credentials.primary

    @property
    def has_secondary(self) -> bool:
        return bool(self.credentials.secondary)

    def on_quota_error(self) -> FailoverState:
        """Apply one quota/rate-limit error and return the resulting state."""
        if self.has_secondary:
            if self.active_slot == 1:
                self.active_slot = 2
                self.state = FailoverState.USING_SECONDARY
                logger.info("API 1 配额耗尽，切换到 API 2")
            else:
                self.active_slot = 1
                self.state = FailoverState.USING_PRIMARY
                logger.info("API 2 配额耗尽，切换回 API 1")
            return self.state

        self.state = FailoverState.EXHAUSTED
        self._cooldown()
        # Cooldown is a recoverable wait; resume normal processing on the same key.
        self.state = FailoverState.USING_PRIMARY
        return FailoverState.EXHAUSTED

    def _cooldown(self) -> None:
        logger.warning(f"所有 API 配额已耗尽，等待 {self.cooldown_s:.0f} 秒后重试...")
        self._sleep(self.cooldown_s)
