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

import asyncio
import random
import unittest

import aiohttp

from davkeeper.errors import NetworkError
from davkeeper.retry import RetryExecutor


class Flaky:

    def __init__(self, failures, exc=ConnectionResetError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("connection reset")
        return "ok"


class RetryExecutorTests(unittest.TestCase):

    def setUp(self):
        self.delays = []

    async def _sleep(self, delay):
        self.delays.append(delay)

    def executor(self, **kwargs):
        kwargs.setdefault("jitter", False)
        return RetryExecutor(sleep=self._sleep, **kwargs)

    def test_delays(self):
        executor = self.executor()
        self.assertEqual(
            [1.0, 2.0, 4.0, 8.0, 10.0, 10.0],
            [executor.delay_for(i) for i in range(1, 7)])

    def test_jitter_bounds(self):
        executor = RetryExecutor(rng=random.Random(42))
        for attempt in range(1, 6):
            plain = min(2 ** (attempt - 1), 10.0)
            delay = executor.delay_for(attempt)
            self.assertGreaterEqual(delay, plain * 0.5)
            self.assertLessEqual(delay, plain)

    def test_invalid_attempts(self):
        self.assertRaises(ValueError, RetryExecutor, attempts=0)

    def test_success(self):
        fn = Flaky(0)
        self.assertEqual("ok", asyncio.run(self.executor().run(fn)))
        self.assertEqual(1, fn.calls)
        self.assertEqual([], self.delays)

    def test_transient_failure(self):
        fn = Flaky(2)
        self.assertEqual("ok", asyncio.run(self.executor().run(fn)))
        self.assertEqual(3, fn.calls)
        self.assertEqual([1.0, 2.0], self.delays)

    def test_client_error_retried(self):
        fn = Flaky(1, aiohttp.ClientConnectionError)
        self.assertEqual("ok", asyncio.run(self.executor().run(fn)))
        self.assertEqual(2, fn.calls)

    def test_exhausted(self):
        fn = Flaky(5)
        with self.assertRaises(NetworkError) as cm:
            asyncio.run(self.executor(attempts=3).run(fn, "fetch calendar"))
        self.assertEqual(3, cm.exception.attempts)
        self.assertEqual(3, fn.calls)
        self.assertIn("fetch calendar", cm.exception.message)
        self.assertIsInstance(cm.exception.__cause__, ConnectionResetError)
        self.assertEqual([1.0, 2.0], self.delays)

    def test_other_errors_not_retried(self):
        fn = Flaky(1, KeyError)
        self.assertRaises(KeyError, asyncio.run, self.executor().run(fn))
        self.assertEqual(1, fn.calls)

    def test_timeout(self):
        calls = []

        async def hang():
            calls.append(1)
            await asyncio.sleep(10)

        executor = self.executor(attempts=2, timeout=0.01)
        self.assertRaises(NetworkError, asyncio.run, executor.run(hang))
        self.assertEqual(2, len(calls))
