#!/usr/bin/env python3
#
# certwarden/core/daemon.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Periodic renewal daemon: drives orchestrator ticks from the scheduler."""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..models.state import OrchestratorState, TickResult
from ..proxy.nginx_process import NginxController
from ..proxy.switcher import ProxyConfigSwitcher
from ..runtime.compose import ServiceHealth
from ..utils.scheduler import Scheduler
from .orchestrator import Orchestrator
from .readiness import ReadinessTimeoutError, wait_until_ready

_log = logging.getLogger(__name__)

__all__ = ["RenewalDaemon", "TickFailedError"]

JOB_NAME = "certificate-renewal"


class TickFailedError(Exception):
	"""A tick ended in FAILED without a CA hold; lets the scheduler back off."""


class RenewalDaemon:
	"""Owns the ``certificate-renewal`` job and nothing else.

	A failed tick without a hold (proxy unreachable, transient CA error,
	store or switch failure) is reported to the scheduler as a job failure,
	which retries with exponential back-off instead of waiting a full
	interval. Held and blocked ticks wait for the regular interval.
	"""

	def __init__(
		self,
		orchestrator: Orchestrator,
		switcher: ProxyConfigSwitcher,
		*,
		interval: float = 43200.0,
		tick_timeout: float = 900.0,
		initial_delay: float = 5.0,
		jitter_pct: float = 0.0,
		confirm_timeout: float = 30.0,
		confirm_poll_interval: float = 1.0,
		proxy: Optional[NginxController] = None,
		proxy_start_timeout: float = 60.0,
		scheduler: Optional[Scheduler] = None,
	) -> None:
		self.orchestrator = orchestrator
		self.switcher = switcher
		self.confirm_timeout = confirm_timeout
		self.confirm_poll_interval = confirm_poll_interval
		self.proxy = proxy
		self.proxy_start_timeout = proxy_start_timeout
		self.last_result: Optional[TickResult] = None
		self.scheduler = scheduler or Scheduler()
		self.scheduler.add(
			JOB_NAME,
			interval,
			self._job,
			run_on_start=True,
			initial_delay=initial_delay,
			timeout=tick_timeout,
			jitter_pct=jitter_pct,
		)

	@property
	def running(self) -> bool:
		return self.scheduler.started

	async def _proxy_healthy(self) -> bool:
		assert self.proxy is not None
		return await self.proxy.health() is ServiceHealth.HEALTHY

	async def wait_for_proxy(self) -> None:
		"""Bounded wait for the proxy container; ticks cope if it never comes up."""
		assert self.proxy is not None
		ok, msg = await self.proxy.ensure_running()
		if not ok:
			_log.warning("DAEMON proxy not started: %s", msg)
			return
		try:
			await wait_until_ready(
				self._proxy_healthy,
				self.proxy_start_timeout,
				2.0,
				label=f"proxy-container[{self.proxy.service}]",
			)
		except ReadinessTimeoutError as exc:
			_log.warning("DAEMON %s", exc)

	async def start(self) -> None:
		if self.proxy is not None:
			await self.wait_for_proxy()
		await self.scheduler.start()
		_log.info("DAEMON started for %s", self.orchestrator.domain_set)

	async def stop(self, timeout: float = 5.0) -> None:
		await self.scheduler.stop_graceful(timeout=timeout)
		_log.info("DAEMON stopped")

	async def run_once(self) -> TickResult:
		"""One tick plus reload confirmation; shared by the job, the API and the CLI."""
		result = await self.orchestrator.tick()
		self.last_result = result
		if result.profile_changed:
			try:
				await self.switcher.confirm(self.confirm_timeout, self.confirm_poll_interval)
			except ReadinessTimeoutError as exc:
				_log.warning("DAEMON reload not confirmed: %s", exc)
		if result.skipped:
			_log.info("DAEMON tick skipped, another process is orchestrating")
		elif result.ok:
			_log.info("DAEMON tick ok state=%s ca_calls=%d", result.state.value, result.ca_calls)
		else:
			reason = result.failure.reason.value if result.failure else "-"
			_log.warning("DAEMON tick ended in %s reason=%s", result.state.value, reason)
		return result

	async def _job(self) -> None:
		result = await self.run_once()
		if (
			result.state is OrchestratorState.FAILED
			and result.failure is not None
			and result.failure.retry_after is None
		):
			raise TickFailedError(f"{result.failure.reason.value}: {result.failure.detail}")

	def trigger(self) -> None:
		"""Run the renewal job now (after the current run, if one is active)."""
		self.scheduler.run_now(JOB_NAME)

	def status(self) -> dict[str, Any]:
		job = next((s for s in self.scheduler.get_status() if s["name"] == JOB_NAME), None)
		return {
			"running": self.running,
			"job": job,
			"last_result": self.last_result.to_dict() if self.last_result else None,
		}
