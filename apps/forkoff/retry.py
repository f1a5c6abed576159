from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from .errors import CrawlFailed, RpcTransportError
from .metrics import RPC_RETRIES_TOTAL

LOGGER = logging.getLogger('forkoff.retry')

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError('retry delays must be >= 0')
        if self.multiplier < 1:
            raise ValueError('multiplier must be >= 1')

    def start(self) -> RetryState:
        return RetryState(policy=self)


@dataclass
class RetryState:
    policy: RetryPolicy
    attempts: int = 0
    next_delay: float = field(init=False)

    def __post_init__(self) -> None:
        self.next_delay = min(self.policy.base_delay_seconds, self.policy.max_delay_seconds)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.policy.max_attempts

    def record_failure(self) -> float | None:
        """Count one failed attempt and return the wait before the next one, or None when done."""
        self.attempts += 1
        if self.exhausted:
            return None
        delay = self.next_delay
        self.next_delay = min(self.next_delay * self.policy.multiplier, self.policy.max_delay_seconds)
        return delay


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    label: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    state = policy.start()
    while True:
        try:
            return await operation()
        except RpcTransportError as exc:
            delay = state.record_failure()
            if delay is None:
                raise CrawlFailed(
                    f'{label} failed after {state.attempts} attempts: {exc}'
                ) from exc
            RPC_RETRIES_TOTAL.labels(method=exc.method).inc()
            LOGGER.warning(
                'rpc retry label=%s attempt=%s/%s delay=%.2fs error=%s',
                label,
                state.attempts,
                policy.max_attempts,
                delay,
                exc
            )
            await sleep(delay)
