#!/usr/bin/env python3
#
# certwarden/proxy/switcher.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Atomic proxy profile switching with validate-then-reload and rollback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Optional, Protocol

import httpx

from ..core.readiness import http_alive, wait_until_ready
from ..models.profiles import ProxyProfile, parse_marker
from ..utils.files import atomic_write_bytes, atomic_write_text

_log = logging.getLogger(__name__)

__all__ = [
	"ProxyConfigSwitcher",
	"ProxyController",
	"ProxyReloadError",
	"ProxyValidationError",
	"SwitchError",
]


class SwitchError(Exception):
	"""The proxy could not be moved to the requested profile."""


class ProxyValidationError(SwitchError):
	"""The rendered config was rejected by the config test; nothing was reloaded."""


class ProxyReloadError(SwitchError):
	"""The config passed the test but the reload failed; the previous config was restored."""


class ProxyController(Protocol):
	async def validate(self) -> tuple[bool, str]:
		...

	async def reload(self) -> tuple[bool, str]:
		...

	async def restart(self) -> tuple[bool, str]:
		...


class ProxyConfigSwitcher:
	"""Owns the one config file through which CertWarden drives the proxy.

	The first line of the file is a profile marker, so :attr:`active`
	survives restarts of this process.
	"""

	def __init__(
		self,
		conf_path: Path,
		renderer: Callable[[ProxyProfile], str],
		controller: ProxyController,
		*,
		health_url: str = "",
		health_transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self.conf_path = conf_path
		self.renderer = renderer
		self.controller = controller
		self.health_url = health_url
		self._health_transport = health_transport
		self._lock = asyncio.Lock()
		self._active = self._read_active()
		if self._active is not None:
			_log.info("PROXY_INIT active=%s domains=%s", self._active.kind, self._active.domain_set)

	@property
	def active(self) -> Optional[ProxyProfile]:
		return self._active

	def _read_active(self) -> Optional[ProxyProfile]:
		try:
			with self.conf_path.open("r", encoding="utf-8") as f:
				first_line = f.readline()
		except FileNotFoundError:
			return None
		except (OSError, UnicodeDecodeError) as exc:
			_log.warning("PROXY_INIT cannot read %s: %s", self.conf_path, exc)
			return None
		return parse_marker(first_line)

	def _restore(self, previous: Optional[bytes]) -> None:
		try:
			if previous is None:
				self.conf_path.unlink(missing_ok=True)
			else:
				atomic_write_bytes(self.conf_path, previous, mode=0o644)
		except OSError as exc:
			_log.error("PROXY_ROLLBACK failed to restore %s: %s", self.conf_path, exc)
			raise SwitchError(f"Failed to restore previous proxy config: {exc}") from exc
		_log.warning("PROXY_ROLLBACK restored previous config")

	async def activate(self, profile: ProxyProfile) -> None:
		"""Make ``profile`` the live proxy configuration.

		Returns once the proxy has accepted the new config. On failure the
		previous file content is back in place before the error is raised.

		Raises:
			ProxyValidationError: Config test failed, nothing was reloaded.
			ProxyReloadError: Reload failed, previous config restored and reloaded.
			SwitchError: Rendering or writing the config failed.
		"""
		async with self._lock:
			try:
				content = self.renderer(profile)
			except (TypeError, ValueError) as exc:
				raise SwitchError(f"Cannot render {profile.kind} profile: {exc}") from exc

			try:
				previous = self.conf_path.read_bytes() if self.conf_path.exists() else None
				atomic_write_text(self.conf_path, content, mode=0o644)
			except OSError as exc:
				raise SwitchError(f"Failed to write proxy config {self.conf_path}: {exc}") from exc

			try:
				ok, msg = await self.controller.validate()
				if not ok:
					self._restore(previous)
					raise ProxyValidationError(msg)

				ok, msg = await self.controller.reload()
				if not ok:
					self._restore(previous)
					rok, rmsg = await self.controller.reload()
					if not rok:
						_log.error("PROXY_ROLLBACK reload of restored config failed: %s", rmsg)
						rok, rmsg = await self.controller.restart()
						if not rok:
							_log.error("PROXY_ROLLBACK restart failed: %s", rmsg)
					raise ProxyReloadError(msg)
			except asyncio.CancelledError:
				self._restore(previous)
				raise

			self._active = profile
			_log.info("PROXY_SWITCH active=%s domains=%s", profile.kind, profile.domain_set)

	async def confirm(self, timeout: float, poll_interval: float) -> None:
		"""Wait until the proxy answers on its health URL after a reload.

		Raises:
			ReadinessTimeoutError: The proxy stayed unreachable.
		"""
		if not self.health_url:
			return
		await wait_until_ready(
			lambda: http_alive(self.health_url, transport=self._health_transport),
			timeout,
			poll_interval,
			label=f"proxy[{self.health_url}]",
		)
		_log.info("PROXY_CONFIRM %s answering", self.health_url)
