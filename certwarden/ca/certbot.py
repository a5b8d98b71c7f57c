#!/usr/bin/env python3
#
# certwarden/ca/certbot.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate authority backend that shells out to certbot (webroot mode)."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import timedelta
from pathlib import Path
from typing import Optional

from ..models.certificates import CertificateRecord, DomainSet
from ..runtime.compose import ContainerRuntime
from ..utils.time import parse_utc, utcnow
from .base import (
	DEFAULT_RATE_LIMIT_RETRY,
	CaError,
	InvalidRequestError,
	RateLimitedError,
	TransientCaError,
	ValidationFailedError,
)

_log = logging.getLogger(__name__)

__all__ = ["CertbotCertificateAuthority", "classify_certbot_failure"]

# Issuance waits for the CA to validate every name
_CERTBOT_TIMEOUT = 600.0  # seconds

_RETRY_AFTER_RE = re.compile(r"retry after (\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2})", re.IGNORECASE)

_RATE_LIMIT_MARKERS = ("too many certificates", "ratelimited", "rate limit")
_VALIDATION_MARKERS = (
	"some challenges have failed",
	"challenge failed",
	"urn:ietf:params:acme:error:unauthorized",
	"urn:ietf:params:acme:error:connection",
	"urn:ietf:params:acme:error:dns",
	"urn:ietf:params:acme:error:caa",
	"invalid response from",
	"timeout during connect",
	"dns problem",
)
_INVALID_MARKERS = (
	"urn:ietf:params:acme:error:rejectedidentifier",
	"urn:ietf:params:acme:error:malformed",
	"urn:ietf:params:acme:error:invalidcontact",
	"not a valid email",
	"invalid email",
	"requested name",
	"policy forbids issuing",
	"unrecognized arguments",
)


def _last_lines(text: str, count: int = 3) -> str:
	lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
	return " | ".join(lines[-count:])[:400]


def _retry_after(output: str) -> timedelta:
	match = _RETRY_AFTER_RE.search(output)
	if not match:
		return DEFAULT_RATE_LIMIT_RETRY
	when = parse_utc(match.group(1).replace(" ", "T") + "+00:00")
	if when is None:
		return DEFAULT_RATE_LIMIT_RETRY
	return max(when - utcnow(), timedelta(0))


def classify_certbot_failure(code: int, output: str) -> CaError:
	"""Map a failed certbot run onto the CaError taxonomy by its output."""
	lowered = output.lower()
	summary = _last_lines(output) or f"certbot exited with code {code}"
	if code < 0:
		return TransientCaError(f"certbot did not complete: {summary}")
	if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
		return RateLimitedError(f"certbot rate limited: {summary}", _retry_after(output))
	if any(marker in lowered for marker in _VALIDATION_MARKERS):
		return ValidationFailedError(f"certbot validation failed: {summary}")
	if any(marker in lowered for marker in _INVALID_MARKERS):
		return InvalidRequestError(f"certbot rejected request: {summary}")
	return TransientCaError(f"certbot failed: {summary}")


class CertbotCertificateAuthority:
	"""Issues certificates with ``certbot certonly --webroot``.

	``config_dir`` is where this process reads ``live/<primary>/`` from.
	Under compose the certbot container sees other paths, passed as
	``certbot_config_dir`` and ``certbot_webroot``; its image entrypoint is
	certbot itself, so ``entrypoint`` is empty there.
	"""

	def __init__(
		self,
		runtime: ContainerRuntime,
		config_dir: Path,
		*,
		service: str = "certbot",
		entrypoint: tuple[str, ...] = ("certbot",),
		certbot_config_dir: Optional[str] = None,
		certbot_webroot: Optional[str] = None,
		staging: bool = False,
		timeout: float = _CERTBOT_TIMEOUT,
	) -> None:
		self.runtime = runtime
		self.config_dir = config_dir
		self.service = service
		self.entrypoint = entrypoint
		self.certbot_config_dir = certbot_config_dir
		self.certbot_webroot = certbot_webroot
		self.staging = staging
		self.timeout = timeout

	def build_command(self, domain_set: DomainSet, contact_email: str, validation_webroot: Path) -> list[str]:
		cmd = [
			*self.entrypoint,
			"certonly",
			"--webroot",
			"-w", self.certbot_webroot or str(validation_webroot),
			"--email", contact_email,
			"--agree-tos",
			"--no-eff-email",
			"--non-interactive",
			"--force-renewal",
			"--cert-name", domain_set.primary,
			"--config-dir", self.certbot_config_dir or str(self.config_dir),
		]
		if self.staging:
			cmd.append("--staging")
		for name in domain_set:
			cmd += ["-d", name]
		return cmd

	def _read_issued(self, domain_set: DomainSet) -> CertificateRecord:
		live = self.config_dir / "live" / domain_set.primary
		chain = (live / "fullchain.pem").read_bytes()
		key = (live / "privkey.pem").read_bytes()
		return CertificateRecord.from_pem(domain_set, chain, key, f"certbot:{self.config_dir}")

	async def request_certificate(
		self,
		domain_set: DomainSet,
		contact_email: str,
		validation_webroot: Path,
	) -> CertificateRecord:
		cmd = self.build_command(domain_set, contact_email, validation_webroot)
		_log.info("CERTBOT_RUN domains=%s runtime=%s", domain_set, self.runtime.name)
		code, stdout, stderr = await self.runtime.run(self.service, *cmd, timeout=self.timeout)
		if code != 0:
			error = classify_certbot_failure(code, f"{stdout}\n{stderr}")
			_log.error("CERTBOT_FAILED domains=%s code=%d: %s", domain_set, code, error)
			raise error
		try:
			record = await asyncio.to_thread(self._read_issued, domain_set)
		except OSError as exc:
			raise TransientCaError(f"certbot succeeded but material is unreadable: {exc}") from exc
		except ValueError as exc:
			raise TransientCaError(f"certbot produced an unusable certificate: {exc}") from exc
		_log.info("CERTBOT_ISSUED domains=%s expires=%s", domain_set, record.expires_at.isoformat())
		return record
