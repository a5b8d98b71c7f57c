#!/usr/bin/env python3
#
# certwarden/core/readiness.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Bounded readiness polling for the proxy, the ACME path and containers."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import secrets
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Optional, Union

import httpx

from ..ca.base import ACME_CHALLENGE_PATH, challenge_dir
from ..models.certificates import DomainSet

_log = logging.getLogger(__name__)

__all__ = [
	"ChallengeReadiness",
	"ReadinessTimeoutError",
	"http_alive",
	"wait_until_ready",
]

Check = Callable[[], Union[bool, Awaitable[bool]]]


class ReadinessTimeoutError(TimeoutError):
	"""A dependency did not become ready within its timeout."""


async def wait_until_ready(
	check: Check,
	timeout: float,
	poll_interval: float,
	*,
	label: str = "dependency",
	sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	clock: Callable[[], float] = time.monotonic,
) -> None:
	"""Poll ``check`` every ``poll_interval`` seconds until it returns True.

	``check`` may be sync or async. An exception raised by the check counts
	as "not ready yet"; the last one is included in the timeout message.

	Raises:
		ReadinessTimeoutError: ``timeout`` elapsed without a successful check.
	"""
	if timeout <= 0 or poll_interval <= 0:
		raise ValueError("timeout and poll_interval must be > 0")
	deadline = clock() + timeout
	attempts = 0
	last_error: Optional[BaseException] = None
	while True:
		attempts += 1
		try:
			result = check()
			if inspect.isawaitable(result):
				result = await result
			if result:
				if attempts > 1:
					_log.info("READY %s after %d checks", label, attempts)
				return
		except Exception as exc:
			last_error = exc
			_log.debug("READY %s check raised: %s", label, exc)
		remaining = deadline - clock()
		if remaining <= 0:
			detail = f" (last error: {last_error})" if last_error else ""
			raise ReadinessTimeoutError(
				f"{label} not ready after {timeout:.0f}s and {attempts} checks{detail}"
			)
		await sleep(min(poll_interval, remaining))


async def http_alive(url: str, *, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None) -> bool:
	"""True when ``url`` answers with any HTTP response (redirects and 404 count)."""
	try:
		async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
			await client.get(url)
		return True
	except httpx.HTTPError as exc:
		_log.debug("READY %s unreachable: %s", url, exc)
		return False


class ChallengeReadiness:
	"""Confirms every name of a DomainSet serves files from the ACME webroot.

	A random probe file is published under ``.well-known/acme-challenge/``
	and fetched over plain HTTP the way the CA will fetch the real token.
	With ``probe_base_url`` set (e.g. ``http://nginx``) requests go there
	with the name in the ``Host`` header, which avoids depending on public
	DNS from inside the container network.
	"""

	def __init__(
		self,
		webroot: Path,
		domain_set: DomainSet,
		*,
		probe_base_url: str = "",
		request_timeout: float = 5.0,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self.webroot = webroot
		self.domain_set = domain_set
		self.probe_base_url = probe_base_url.rstrip("/")
		self.request_timeout = request_timeout
		self._transport = transport

	def probe_url(self, name: str, token: str) -> str:
		base = self.probe_base_url or f"http://{name}"
		return f"{base}{ACME_CHALLENGE_PATH}{token}"

	@contextlib.asynccontextmanager
	async def published_probe(self) -> AsyncIterator[tuple[str, str]]:
		"""Write a probe token into the webroot for the duration of the block."""
		token = f"certwarden-probe-{secrets.token_urlsafe(12)}"
		value = secrets.token_urlsafe(24)
		directory = challenge_dir(self.webroot)
		directory.mkdir(parents=True, exist_ok=True)
		path = directory / token
		path.write_text(value, encoding="ascii")
		path.chmod(0o644)
		try:
			yield token, value
		finally:
			path.unlink(missing_ok=True)

	async def _serves_probe(self, client: httpx.AsyncClient, token: str, value: str) -> bool:
		for name in self.domain_set:
			url = self.probe_url(name, token)
			try:
				resp = await client.get(url, headers={"Host": name})
			except httpx.HTTPError as exc:
				_log.debug("READY probe %s failed: %s", url, exc)
				return False
			if resp.status_code != 200 or resp.text.strip() != value:
				_log.debug("READY probe %s answered %d", url, resp.status_code)
				return False
		return True

	async def wait(self, timeout: float, poll_interval: float) -> None:
		"""Block until all names serve the probe, or raise ReadinessTimeoutError."""
		async with self.published_probe() as (token, value):
			async with httpx.AsyncClient(timeout=self.request_timeout, transport=self._transport) as client:
				await wait_until_ready(
					lambda: self._serves_probe(client, token, value),
					timeout,
					poll_interval,
					label=f"acme-challenge-path[{self.domain_set}]",
				)
