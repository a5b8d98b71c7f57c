#!/usr/bin/env python3
#
# certwarden/utils/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight async background scheduler for periodic tasks."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, TypedDict

_log = logging.getLogger(__name__)

__all__ = ["Scheduler", "JobStatus"]

# Minimum allowed interval to prevent CPU-pinning tight loops
_MIN_INTERVAL = 1.0
_MAX_BACKOFF = 300.0  # 5 minutes


class JobStatus(TypedDict):
	"""Status information for a scheduled job."""
	name: str
	interval_seconds: float
	last_success: str | None  # ISO timestamp of last successful run
	last_attempt: str | None  # ISO timestamp of last attempt (success or failure)
	next_run: str | None  # ISO timestamp of the next planned run
	is_running: bool  # Loop task is alive
	is_executing: bool  # Job body is running right now
	run_count: int
	fail_count: int


@dataclass
class _Job:
	"""A scheduled repeating job (internal implementation detail)."""
	name: str
	interval_seconds: float
	func: Callable[[], Awaitable[None]]
	run_on_start: bool = False
	initial_delay: float = 0.0
	timeout: float | None = None  # Per-job execution timeout (None = no limit)
	jitter_pct: float = 0.0
	last_success: datetime | None = None
	last_attempt: datetime | None = None
	next_run: datetime | None = None
	run_count: int = 0
	fail_count: int = 0
	executing: bool = False
	wake: asyncio.Event = field(default_factory=asyncio.Event)


class Scheduler:
	"""Simple async scheduler that runs jobs at fixed intervals.

	Usage::

		scheduler = Scheduler()
		scheduler.add("certificate-renewal", 43200, renew, run_on_start=True, jitter_pct=0.05)

		# In lifespan:
		await scheduler.start()   # on startup (async)
		scheduler.run_now("certificate-renewal")  # operator trigger
		await scheduler.stop_graceful()  # on shutdown (async)

	Each job has exactly one loop task, so runs of the same job never
	overlap; a :meth:`run_now` during a run is served right after it.
	"""

	def __init__(self, *, rng: random.Random | None = None) -> None:
		self._jobs: dict[str, _Job] = {}
		self._tasks: dict[str, asyncio.Task] = {}
		self._stop_event: asyncio.Event | None = None
		self._started = False
		self._rng = rng or random.Random()

	@property
	def started(self) -> bool:
		return self._started

	def add(
		self,
		name: str,
		interval_seconds: float,
		func: Callable[[], Awaitable[None]],
		*,
		run_on_start: bool = False,
		initial_delay: float = 0.0,
		timeout: float | None = None,
		jitter_pct: float = 0.0,
	) -> None:
		"""Register a periodic job.

		Args:
			name: Unique identifier for the job
			interval_seconds: Seconds between executions (minimum 1.0)
			func: Async callable to execute
			run_on_start: Execute once immediately on start (after initial_delay)
			initial_delay: Seconds to wait before first execution (requires run_on_start=True)
			timeout: Per-execution timeout in seconds (None = no limit)
			jitter_pct: Spread each interval by up to ±this fraction (0 ≤ x < 1)

		Raises:
			RuntimeError: If scheduler is already running
			ValueError: If name is duplicate or an argument is out of range
		"""
		if self._started:
			raise RuntimeError(f"Cannot add job {name!r} while scheduler is running")
		if name in self._jobs:
			raise ValueError(f"Job {name!r} is already registered")
		if interval_seconds < _MIN_INTERVAL:
			raise ValueError(f"interval_seconds must be ≥ {_MIN_INTERVAL}, got {interval_seconds}")
		if initial_delay < 0:
			raise ValueError(f"initial_delay must be ≥ 0, got {initial_delay}")
		if initial_delay > 0 and not run_on_start:
			raise ValueError("initial_delay requires run_on_start=True")
		if not 0.0 <= jitter_pct < 1.0:
			raise ValueError(f"jitter_pct must be in [0, 1), got {jitter_pct}")
		if timeout is not None and timeout <= 0:
			raise ValueError(f"timeout must be > 0, got {timeout}")

		self._jobs[name] = _Job(
			name=name,
			interval_seconds=interval_seconds,
			func=func,
			run_on_start=run_on_start,
			initial_delay=initial_delay,
			timeout=timeout,
			jitter_pct=jitter_pct,
		)

	def run_now(self, name: str) -> None:
		"""Wake a job so it runs as soon as it is not already running.

		Raises:
			KeyError: If job does not exist
			RuntimeError: If scheduler is not running
		"""
		if name not in self._jobs:
			raise KeyError(f"Job {name!r} not found")
		if not self._started:
			raise RuntimeError("Scheduler is not running")
		self._jobs[name].wake.set()
		_log.info("SCHEDULER job=%s triggered", name)

	async def start(self) -> None:
		"""Start all registered jobs as background tasks.

		Must be called from within an async context (running event loop).
		"""
		if self._started:
			return

		self._started = True
		self._stop_event = asyncio.Event()

		for job in self._jobs.values():
			# Events bind to the running loop; recreate after a restart
			job.wake = asyncio.Event()
			self._tasks[job.name] = asyncio.create_task(self._run_loop(job), name=f"scheduler-{job.name}")
			_log.info("SCHEDULER job=%s interval=%ds started", job.name, job.interval_seconds)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Gracefully stop all jobs, waiting up to timeout for clean exit.

		Phase 1: Set stop event and wait for tasks to finish gracefully.
		Phase 2: Cancel any stubborn tasks that didn't stop in time.
		"""
		if not self._started:
			return

		self._started = False
		if self._stop_event is not None:
			self._stop_event.set()

		pending = [t for t in self._tasks.values() if not t.done()]
		if pending:
			_log.info("SCHEDULER waiting for %d tasks to finish gracefully", len(pending))
			_, not_done = await asyncio.wait(pending, timeout=timeout)
			if not_done:
				_log.warning("SCHEDULER %d tasks did not stop gracefully, forcing cancel", len(not_done))
				for task in not_done:
					task.cancel()
				# Await cancelled tasks to prevent 'Task was destroyed' warnings
				await asyncio.gather(*not_done, return_exceptions=True)

		self._tasks.clear()
		_log.info("SCHEDULER stopped")

	def _interval(self, job: _Job) -> float:
		if job.jitter_pct <= 0:
			return job.interval_seconds
		spread = job.interval_seconds * job.jitter_pct
		return max(_MIN_INTERVAL, job.interval_seconds + self._rng.uniform(-spread, spread))

	async def _sleep_until_due(self, job: _Job, delay: float) -> bool:
		"""Wait ``delay`` seconds, a wake-up, or stop. Returns False on stop."""
		assert self._stop_event is not None, "Bug: _sleep_until_due called without start()"
		job.next_run = datetime.now(timezone.utc) + timedelta(seconds=delay)
		stop_wait = asyncio.ensure_future(self._stop_event.wait())
		wake_wait = asyncio.ensure_future(job.wake.wait())
		try:
			await asyncio.wait(
				{stop_wait, wake_wait},
				timeout=max(0.0, delay),
				return_when=asyncio.FIRST_COMPLETED,
			)
		finally:
			for waiter in (stop_wait, wake_wait):
				if not waiter.done():
					waiter.cancel()
			await asyncio.gather(stop_wait, wake_wait, return_exceptions=True)
		job.wake.clear()
		return self._started and not self._stop_event.is_set()

	async def _run_loop(self, job: _Job) -> None:
		"""Run ``job`` forever: wait, execute, back off exponentially on failure."""
		consecutive_failures = 0
		delay = job.initial_delay if job.run_on_start else self._interval(job)
		try:
			while await self._sleep_until_due(job, delay):
				if await self._execute(job):
					consecutive_failures = 0
					delay = self._interval(job)
					continue
				consecutive_failures += 1
				backoff = min(2.0 ** consecutive_failures, _MAX_BACKOFF)
				_log.error(
					"SCHEDULER job=%s failed (%d consecutive), backing off %.0fs",
					job.name, consecutive_failures, backoff,
				)
				delay = min(backoff, self._interval(job))
		except asyncio.CancelledError:
			_log.debug("SCHEDULER job=%s cancelled", job.name)
			raise
		except Exception:
			_log.exception("SCHEDULER job=%s fatal error in run loop", job.name)
		finally:
			job.next_run = None

	async def _execute(self, job: _Job) -> bool:
		"""Execute a single job with error handling and optional timeout.

		Returns:
			True if execution succeeded, False if it failed or timed out
		"""
		job.executing = True
		try:
			_log.debug("SCHEDULER job=%s executing", job.name)
			if job.timeout is not None:
				await asyncio.wait_for(job.func(), timeout=job.timeout)
			else:
				await job.func()

			now = datetime.now(timezone.utc)
			job.last_success = now
			job.last_attempt = now
			job.run_count += 1
			_log.info("SCHEDULER job=%s completed (run #%d)", job.name, job.run_count)
			return True
		except asyncio.TimeoutError:
			job.last_attempt = datetime.now(timezone.utc)
			job.fail_count += 1
			_log.error("SCHEDULER job=%s timed out after %.1fs (fail #%d)", job.name, job.timeout, job.fail_count)
			return False
		except Exception:
			job.last_attempt = datetime.now(timezone.utc)
			job.fail_count += 1
			_log.exception("SCHEDULER job=%s failed (fail #%d)", job.name, job.fail_count)
			return False
		finally:
			job.executing = False

	def get_status(self) -> list[JobStatus]:
		"""Return status of all jobs (for monitoring/API).

		Safe to call from any context. Does not access async task state.
		"""
		return [
			{
				"name": job.name,
				"interval_seconds": job.interval_seconds,
				"last_success": job.last_success.isoformat() if job.last_success else None,
				"last_attempt": job.last_attempt.isoformat() if job.last_attempt else None,
				"next_run": job.next_run.isoformat() if job.next_run else None,
				"is_running": job.name in self._tasks and not self._tasks[job.name].done(),
				"is_executing": job.executing,
				"run_count": job.run_count,
				"fail_count": job.fail_count,
			}
			for job in self._jobs.values()
		]
