#!/usr/bin/env python3
#
# certwarden/proxy/nginx_process.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Nginx process control (config test, reload) through a container runtime."""

from __future__ import annotations

import logging

from ..runtime.compose import ContainerRuntime, ServiceHealth

_log = logging.getLogger(__name__)

__all__ = ["NginxController"]

_NGINX_TEST_TIMEOUT = 30.0  # seconds
_NGINX_RELOAD_TIMEOUT = 15.0  # seconds


def _last_line(text: str, fallback: str) -> str:
	text = text.strip()
	return text.splitlines()[-1][:200] if text else fallback


class NginxController:
	"""Runs ``nginx -t`` and ``nginx -s reload`` where the proxy lives."""

	def __init__(self, runtime: ContainerRuntime, *, service: str = "nginx", binary: str = "nginx") -> None:
		self.runtime = runtime
		self.service = service
		self.binary = binary

	async def validate(self) -> tuple[bool, str]:
		"""Check the on-disk config without touching the running proxy."""
		code, stdout, stderr = await self.runtime.exec(
			self.service, self.binary, "-t", timeout=_NGINX_TEST_TIMEOUT,
		)
		if code != 0:
			# nginx -t reports everything on stderr, the error is the last-but-one line
			lines = [line for line in stderr.strip().splitlines() if "emerg" in line or "error" in line]
			msg = lines[-1][:200] if lines else _last_line(stderr or stdout, f"exit code {code}")
			_log.error("PROXY_VALIDATE config test failed: %s", msg)
			return False, f"Config validation failed: {msg}"
		return True, "Configuration is valid"

	async def reload(self) -> tuple[bool, str]:
		"""Ask the master process to re-read its config (graceful, no dropped connections)."""
		code, stdout, stderr = await self.runtime.exec(
			self.service, self.binary, "-s", "reload", timeout=_NGINX_RELOAD_TIMEOUT,
		)
		if code != 0:
			msg = _last_line(stderr or stdout, f"exit code {code}")
			_log.error("PROXY_RELOAD reload failed: %s", msg)
			return False, f"Reload failed: {msg}"
		_log.info("PROXY_RELOAD configuration reloaded (%s)", self.runtime.name)
		return True, "Configuration reloaded"

	async def restart(self) -> tuple[bool, str]:
		return await self.runtime.restart(self.service)

	async def ensure_running(self) -> tuple[bool, str]:
		return await self.runtime.up(self.service)

	async def health(self) -> ServiceHealth:
		return await self.runtime.health(self.service)
