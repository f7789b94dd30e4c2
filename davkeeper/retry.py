# Davkeeper
# Copyright (C) 2026 Davkeeper developers
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; version 3
# of the License or (at your option) any later version of
# the License.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston,
# MA  02110-1301, USA.

"""Bounded retry with exponential backoff and jitter."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp

from .errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_TIMEOUT = 30.0

RETRYABLE_EXCEPTIONS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
)


class RetryExecutor:
    """Run remote operations, retrying transport failures.

    Only transport-level failures (connection errors, timeouts) are retried.
    Anything the server actually answered, including precondition failures,
    is returned to the caller on the first attempt.
    """

    def __init__(self, attempts: int = DEFAULT_ATTEMPTS,
                 base_delay: float = DEFAULT_BASE_DELAY,
                 max_delay: float = DEFAULT_MAX_DELAY,
                 jitter: bool = True,
                 timeout: Optional[float] = DEFAULT_TIMEOUT,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rng: Optional[random.Random] = None) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.timeout = timeout
        self._sleep = sleep
        self._rng = rng or random.Random()

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + self._rng.random() * 0.5
        return delay

    async def run(self, fn: Callable[[], Awaitable[T]],
                  description: str = "remote operation") -> T:
        """Run fn until it succeeds or the attempt budget is exhausted.

        Args:
          fn: Zero-argument callable returning an awaitable
          description: Human readable name used in logs and errors
        Raises:
          NetworkError: if every attempt failed with a transport error
        Returns: whatever fn returned
        """
        for attempt in range(1, self.attempts + 1):
            try:
                if self.timeout is not None:
                    return await asyncio.wait_for(fn(), self.timeout)
                return await fn()
            except RETRYABLE_EXCEPTIONS as exc:
                if attempt == self.attempts:
                    raise NetworkError(
                        f"{description} failed after {attempt} attempt(s): "
                        f"{exc or type(exc).__name__}",
                        attempts=attempt) from exc
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %r",
                    description, attempt, self.attempts, delay, exc)
                await self._sleep(delay)
        raise AssertionError("unreachable")
