#!/usr/bin/env python3
#
# tests/test_retry.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

import pytest

from certwarden.core.retry import RetryPolicy, call_with_retry


class Flaky:
	def __init__(self, failures, exc_type=ConnectionError):
		self.failures = failures
		self.exc_type = exc_type
		self.calls = 0

	async def __call__(self):
		self.calls += 1
		if self.calls <= self.failures:
			raise self.exc_type(f"failure {self.calls}")
		return "done"


def test_delays_strictly_increase():
	delays = RetryPolicy(max_attempts=6, base_delay=2.0, multiplier=1.5).delays()
	assert len(delays) == 5
	assert delays[0] == 2.0
	assert all(b > a for a, b in zip(delays, delays[1:]))


@pytest.mark.parametrize(
	"kwargs",
	[{"max_attempts": 0}, {"base_delay": 0}, {"multiplier": 1.0}],
)
def test_invalid_policy(kwargs):
	with pytest.raises(ValueError):
		RetryPolicy(**kwargs)


@pytest.mark.asyncio
async def test_succeeds_after_retries():
	sleeps = []

	async def fake_sleep(delay):
		sleeps.append(delay)

	func = Flaky(failures=2)
	result = await call_with_retry(func, RetryPolicy(), retry_on=(ConnectionError,), sleep=fake_sleep)

	assert result == "done"
	assert func.calls == 3
	assert sleeps == [5.0, 10.0]


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
	sleeps = []

	async def fake_sleep(delay):
		sleeps.append(delay)

	func = Flaky(failures=10)
	with pytest.raises(ConnectionError, match="failure 4"):
		await call_with_retry(
			func,
			RetryPolicy(max_attempts=4, base_delay=1.0, multiplier=2.0),
			retry_on=(ConnectionError,),
			sleep=fake_sleep,
		)
	assert func.calls == 4
	assert sleeps == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_non_retryable_propagates_immediately():
	async def fake_sleep(delay):
		raise AssertionError("must not sleep")

	func = Flaky(failures=1, exc_type=KeyError)
	with pytest.raises(KeyError):
		await call_with_retry(func, RetryPolicy(), retry_on=(ConnectionError,), sleep=fake_sleep)
	assert func.calls == 1
