from __future__ import annotations

from dataclasses import dataclass

from tenacity import RetryCallState

DEFAULT_BASE_RECONNECT_DELAY_MS = 1000
DEFAULT_MAX_RECONNECT_DELAY_MS = 30_000
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10


@dataclass(frozen=True)
class ReconnectPolicy:
    base_delay_ms: int = DEFAULT_BASE_RECONNECT_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_RECONNECT_DELAY_MS
    max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS

    def delay_ms(self, attempt: int) -> int:
        """Delay before the 0-based reconnect ``attempt``."""
        return min(self.base_delay_ms * 2 ** max(0, attempt), self.max_delay_ms)

    def delay_seconds(self, attempt: int) -> float:
        return self.delay_ms(attempt) / 1000

    def wait(self, retry_state: RetryCallState) -> float:
        # tenacity numbers attempts from 1 and sleeps after a failure, so the
        # sleep that follows attempt N precedes 0-based attempt N.
        return self.delay_seconds(retry_state.attempt_number)
