"""Linear backoff policy for connection attempts."""

from __future__ import annotations

from dataclasses import dataclass

from mail_monitor.config.settings import SyncSettings


@dataclass(frozen=True)
class RetryPolicy:
    """Pure retry schedule: after failed attempt ``n`` wait ``n * base_delay_s``.

    Attributes:
        max_retries: Attempts per `connect()` call before giving up.
        base_delay_s: Delay unit in seconds.
        max_delay_s: Upper bound of any single delay.
    """

    max_retries: int = 5
    base_delay_s: float = 2.0
    max_delay_s: float = 60.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> RetryPolicy:
        """Build a policy from sync settings."""
        return cls(
            max_retries=settings.max_retries,
            base_delay_s=settings.retry_base_delay_s,
            max_delay_s=settings.retry_max_delay_s,
        )

    def delay_for(self, attempt: int) -> float:
        """Return the wait after failed attempt number `attempt` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.max_delay_s, attempt * self.base_delay_s)

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt is allowed after `attempt` failed."""
        return attempt < self.max_retries
