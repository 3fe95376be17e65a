from __future__ import annotations

from dataclasses import dataclass

MAX_RETRY_DELAY_MS = 60_000
RETRY_STRATEGIES = frozenset({"fixed", "exponential"})


def next_delay_ms(
    attempt: int,
    strategy: str,
    base_delay_ms: int,
    max_delay_ms: int = MAX_RETRY_DELAY_MS,
) -> int:
    normalized_attempt = max(attempt, 1)
    normalized_base = max(base_delay_ms, 0)
    if strategy == "fixed":
        return min(normalized_base, max_delay_ms)
    if strategy != "exponential":
        raise ValueError(f"Unknown retry strategy: {strategy}")

    exponent = min(normalized_attempt - 1, 32)
    return min(normalized_base * (2**exponent), max_delay_ms)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    strategy: str = "exponential"
    base_delay_ms: int = 1000
    max_delay_ms: int = MAX_RETRY_DELAY_MS

    @property
    def max_attempts(self) -> int:
        return max(self.max_retries, 1)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay_ms(self, attempt: int) -> int:
        return next_delay_ms(
            attempt,
            self.strategy,
            self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
        )

    def delay_seconds(self, attempt: int) -> float:
        return self.delay_ms(attempt) / 1000
