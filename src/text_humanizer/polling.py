import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from text_humanizer.config import settings
from text_humanizer.humanizer_client import DocumentStatus, PollFailed

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def output_ready(status: DocumentStatus) -> bool:
    return status.done


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 12
    interval_sec: float = 5.0
    is_done: Callable[[DocumentStatus], bool] = field(default=output_ready)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.interval_sec < 0:
            raise ValueError("interval_sec must be >= 0")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(max_attempts=settings.poll_max_attempts, interval_sec=settings.poll_interval_sec)

    @property
    def budget_sec(self) -> float:
        return self.interval_sec * self.max_attempts


@dataclass(frozen=True)
class PollOutcome:
    output: str | None
    attempts: int

    @property
    def succeeded(self) -> bool:
        return self.output is not None


async def poll_until_done(
    fetch: Callable[[], Awaitable[DocumentStatus]],
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
) -> PollOutcome:
    for attempt in range(1, policy.max_attempts + 1):
        try:
            status = await fetch()
        except PollFailed as exc:
            logger.warning("Poll attempt %s/%s failed: %s", attempt, policy.max_attempts, exc)
        else:
            if policy.is_done(status):
                return PollOutcome(output=status.output, attempts=attempt)

        if attempt < policy.max_attempts:
            await sleep(policy.interval_sec)

    return PollOutcome(output=None, attempts=policy.max_attempts)
