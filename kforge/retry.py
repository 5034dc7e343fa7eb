"""Bounded retry with linear backoff for network-dependent actions.

Clones, fetches and remote setup scripts are wrapped in a
:class:`RetryExecutor`.  The executor only sees success or failure; the
action itself must be safe to repeat because nothing is rolled back between
attempts.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from kforge.utils import console

Action = Callable[[], Awaitable[bool]]
Sleeper = Callable[[float], Awaitable[None]]


class RetryExecutor:
    """Invoke an action until it succeeds or ``max_attempts`` is exhausted.

    After failed attempt *k* (1-based) the executor waits ``k * delay``
    seconds before trying again, so elapsed time grows with each failure.
    No wait follows the final attempt.

    Attributes:
        max_attempts: Total invocations allowed (>= 1).
        delay: Backoff unit in seconds.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay: float = 1.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.delay = delay
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt*."""
        return attempt * self.delay

    async def run(self, action: Action, description: str = "") -> bool:
        """Run *action* with retries.

        Args:
            action: Zero-argument coroutine function returning ``True`` on
                success.
            description: Label used in the retry messages.

        Returns:
            ``True`` if any attempt succeeded.
        """
        label = description or getattr(action, "__name__", "action")
        for attempt in range(1, self.max_attempts + 1):
            if await action():
                return True
            if attempt < self.max_attempts:
                wait = self.backoff(attempt)
                console.print(
                    f"[yellow]  {label} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {wait:g}s...[/yellow]"
                )
                await self._sleep(wait)

        console.print(
            f"[red]  {label} failed after {self.max_attempts} attempt(s)[/red]"
        )
        return False
