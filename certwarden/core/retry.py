#!/usr/bin/env python3
#
# certwarden/core/retry.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Bounded exponential back-off for calls that may fail transiently."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

_log = logging.getLogger(__name__)

__all__ = ["RetryPolicy", "call_with_retry"]

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
	"""At most ``max_attempts`` calls; waits ``base_delay * multiplier**n`` between them.

	With ``multiplier > 1`` every wait is strictly longer than the previous
	one, and there is no cap that could flatten the sequence.
	"""
	max_attempts: int = 3
	base_delay: float = 5.0
	multiplier: float = 2.0

	def __post_init__(self) -> None:
		if self.max_attempts < 1:
			raise ValueError(f"max_attempts must be ≥ 1, got {self.max_attempts}")
		if self.base_delay <= 0:
			raise ValueError(f"base_delay must be > 0, got {self.base_delay}")
		if self.multiplier <= 1:
			raise ValueError(f"multiplier must be > 1, got {self.multiplier}")

	def delays(self) -> list[float]:
		"""Waits between consecutive attempts (``max_attempts - 1`` entries)."""
		return [self.base_delay * self.multiplier ** n for n in range(self.max_attempts - 1)]


async def call_with_retry(
	func: Callable[[], Awaitable[T]],
	policy: RetryPolicy,
	*,
	retry_on: tuple[type[BaseException], ...],
	sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	label: str = "call",
) -> T:
	"""Await ``func()`` until it succeeds or the policy is exhausted.

	Only exceptions listed in ``retry_on`` are retried; anything else
	propagates on the first occurrence. The last retryable exception is
	re-raised once all attempts are used.
	"""
	delays = policy.delays()
	attempt = 0
	while True:
		attempt += 1
		try:
			return await func()
		except retry_on as exc:
			if attempt >= policy.max_attempts:
				_log.warning("RETRY %s giving up after %d attempts: %s", label, attempt, exc)
				raise
			delay = delays[attempt - 1]
			_log.warning(
				"RETRY %s attempt %d/%d failed (%s), retrying in %.1fs",
				label, attempt, policy.max_attempts, exc, delay,
			)
			await sleep(delay)
