"""
Retry policy — bounded retries with exponential backoff and jitter.

Passed into the executor as an explicit object so tests can swap in a
zero-delay policy with a fake sleep and clock.

Two uses:
    call()        retry a provider call on transient ProviderError
    wait_until()  poll until the provider reports a resource ready
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from converge.core.errors import ProviderError
from converge.core.models.project import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How hard to try before an operation is declared failed.

    Args:
        max_attempts: Attempts per provider call (first try included).
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for a single backoff delay.
        multiplier: Growth factor between consecutive delays.
        jitter: Random extra delay, as a fraction of the computed delay.
        max_polls: Readiness polls before giving up.
        timeout: Overall deadline for one call or one wait, in seconds.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.3
    max_polls: int = 30
    timeout: float = 600.0

    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            max_polls=settings.max_polls,
            timeout=settings.timeout,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        if self.jitter and delay:
            delay += random.uniform(0, delay * self.jitter)
        return min(delay, self.max_delay)

    def call(self, fn: Callable[[], T], description: str = "provider call") -> T:
        """Run ``fn``, retrying transient ProviderErrors.

        Raises:
            ProviderError: permanent errors immediately; the last
                transient error, as permanent, once attempts or the
                deadline run out.
        """
        deadline = self.clock() + self.timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except ProviderError as e:
                if not e.transient:
                    raise
                if attempt >= self.max_attempts:
                    raise ProviderError(
                        f"{description} failed after {attempt} attempts: {e}",
                        transient=False,
                        resource=e.resource,
                    ) from e
                delay = self.delay_for(attempt)
                if self.clock() + delay > deadline:
                    raise ProviderError(
                        f"{description} timed out after {self.timeout:.0f}s: {e}",
                        transient=False,
                        resource=e.resource,
                    ) from e
                logger.info(
                    "%s: transient error (%s), retry %d/%d in %.1fs",
                    description,
                    e,
                    attempt,
                    self.max_attempts - 1,
                    delay,
                )
                self.sleep(delay)

    def wait_until(
        self,
        probe: Callable[[], T],
        ready: Callable[[T], bool],
        description: str = "resource",
    ) -> T:
        """Poll ``probe`` until ``ready(result)`` holds.

        Transient errors from the probe count as "not ready yet".

        Raises:
            ProviderError: when polls or the deadline run out, or the
                probe raises a permanent error.
        """
        deadline = self.clock() + self.timeout
        last_error: ProviderError | None = None
        for poll in range(1, self.max_polls + 1):
            try:
                result = probe()
                if ready(result):
                    if poll > 1:
                        logger.debug("%s ready after %d polls", description, poll)
                    return result
            except ProviderError as e:
                if not e.transient:
                    raise
                last_error = e

            if poll == self.max_polls:
                break
            delay = self.delay_for(poll)
            if self.clock() + delay > deadline:
                raise ProviderError(
                    f"Timed out after {self.timeout:.0f}s waiting for {description}",
                    transient=False,
                )
            self.sleep(delay)

        detail = f" (last error: {last_error})" if last_error else ""
        raise ProviderError(
            f"Gave up waiting for {description} after {self.max_polls} polls{detail}",
            transient=False,
        )


def immediate_policy(max_attempts: int = 3, max_polls: int = 5) -> RetryPolicy:
    """A policy that never sleeps — for tests and mock runs."""
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay=0.0,
        max_delay=0.0,
        jitter=0.0,
        max_polls=max_polls,
        sleep=lambda _s: None,
    )
