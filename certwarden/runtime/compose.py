#!/usr/bin/env python3
#
# certwarden/runtime/compose.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Container runtime: run proxy and certbot commands locally or via docker compose."""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from ..utils.process import EXEC_TIMEOUT, run_exec

_log = logging.getLogger(__name__)

__all__ = [
	"ComposeRuntime",
	"ContainerRuntime",
	"LocalRuntime",
	"ServiceHealth",
]

# docker compose up/pull can be slow on a cold host
_COMPOSE_UP_TIMEOUT = 180.0  # seconds


class ServiceHealth(str, Enum):
	HEALTHY = "healthy"
	UNHEALTHY = "unhealthy"
	STARTING = "starting"
	UNKNOWN = "unknown"


class ContainerRuntime(Protocol):
	"""Where proxy and certbot commands execute."""

	name: str

	async def exec(self, service: str, *cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
		...

	async def run(self, service: str, *cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
		...

	async def up(self, service: str) -> tuple[bool, str]:
		...

	async def restart(self, service: str) -> tuple[bool, str]:
		...

	async def health(self, service: str) -> ServiceHealth:
		...


class LocalRuntime:
	"""Commands run on this host; ``service`` is informational only."""

	name = "local"

	async def exec(self, service: str, *cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
		return await run_exec(*cmd, timeout=timeout)

	async def run(self, service: str, *cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
		return await run_exec(*cmd, timeout=timeout)

	async def up(self, service: str) -> tuple[bool, str]:
		return True, f"{service} is managed outside CertWarden"

	async def restart(self, service: str) -> tuple[bool, str]:
		return False, f"Cannot restart {service}: not running under compose"

	async def health(self, service: str) -> ServiceHealth:
		return ServiceHealth.UNKNOWN


def _parse_ps_output(stdout: str) -> list[dict]:
	"""``docker compose ps --format json`` prints an array (v2.0-2.20) or one object per line."""
	text = stdout.strip()
	if not text:
		return []
	if text.startswith("["):
		data = json.loads(text)
		return [item for item in data if isinstance(item, dict)]
	entries = []
	for line in text.splitlines():
		line = line.strip()
		if line:
			item = json.loads(line)
			if isinstance(item, dict):
				entries.append(item)
	return entries


def health_from_ps(entries: list[dict]) -> ServiceHealth:
	"""Fold the ps entries of one service into a single health value."""
	if not entries:
		return ServiceHealth.UNKNOWN
	results = []
	for entry in entries:
		state = str(entry.get("State", "")).lower()
		health = str(entry.get("Health", "")).lower()
		if state != "running":
			results.append(ServiceHealth.UNHEALTHY)
		elif health in ("", "healthy"):
			# A running container without a healthcheck counts as healthy
			results.append(ServiceHealth.HEALTHY)
		elif health == "starting":
			results.append(ServiceHealth.STARTING)
		else:
			results.append(ServiceHealth.UNHEALTHY)
	for value in (ServiceHealth.UNHEALTHY, ServiceHealth.STARTING):
		if value in results:
			return value
	return ServiceHealth.HEALTHY


class ComposeRuntime:
	"""``docker compose`` against the production stack file."""

	name = "compose"

	def __init__(
		self,
		compose_file: Path,
		*,
		env_file: Optional[Path] = None,
		project_dir: Optional[Path] = None,
		docker: str = "docker",
	) -> None:
		self.compose_file = compose_file
		self.env_file = env_file
		self.project_dir = project_dir
		self.docker = docker

	def base_command(self) -> list[str]:
		cmd = [self.docker, "compose", "-f", str(self.compose_file)]
		if self.env_file is not None and self.env_file.exists():
			cmd += ["--env-file", str(self.env_file)]
		if self.project_dir is not None:
			cmd += ["--project-directory", str(self.project_dir)]
		return cmd

	async def _compose(self, *args: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
		return await run_exec(*self.base_command(), *args, timeout=timeout)

	async def exec(self, service: str, *cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
		return await self._compose("exec", "-T", service, *cmd, timeout=timeout)

	async def run(self, service: str, *cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
		return await self._compose("run", "--rm", "-T", service, *cmd, timeout=timeout)

	async def up(self, service: str) -> tuple[bool, str]:
		code, _, stderr = await self._compose("up", "-d", service, timeout=_COMPOSE_UP_TIMEOUT)
		if code != 0:
			msg = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {code}"
			_log.error("COMPOSE_UP %s failed: %s", service, msg)
			return False, f"Failed to start {service}: {msg[:200]}"
		_log.info("COMPOSE_UP %s started", service)
		return True, f"{service} started"

	async def restart(self, service: str) -> tuple[bool, str]:
		code, _, stderr = await self._compose("restart", service, timeout=_COMPOSE_UP_TIMEOUT)
		if code != 0:
			msg = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {code}"
			_log.error("COMPOSE_RESTART %s failed: %s", service, msg)
			return False, f"Failed to restart {service}: {msg[:200]}"
		_log.info("COMPOSE_RESTART %s restarted", service)
		return True, f"{service} restarted"

	async def health(self, service: str) -> ServiceHealth:
		code, stdout, stderr = await self._compose("ps", "--format", "json", service)
		if code != 0:
			_log.debug("COMPOSE_PS %s failed: %s", service, stderr.strip())
			return ServiceHealth.UNKNOWN
		try:
			return health_from_ps(_parse_ps_output(stdout))
		except ValueError as exc:
			_log.warning("COMPOSE_PS unparseable output for %s: %s", service, exc)
			return ServiceHealth.UNKNOWN
