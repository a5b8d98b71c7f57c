#!/usr/bin/env python3
#
# certwarden/ca/base.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate authority contract and error taxonomy."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Protocol

from ..models.certificates import CertificateRecord, DomainSet

ACME_CHALLENGE_PATH = "/.well-known/acme-challenge/"

# Let's Encrypt rate limits reset on hourly windows; used when the CA
# does not say when to come back.
DEFAULT_RATE_LIMIT_RETRY = timedelta(hours=1)


def challenge_dir(webroot: Path) -> Path:
	"""Directory under the webroot that the proxy serves as the ACME path."""
	return webroot / ".well-known" / "acme-challenge"


class CaError(Exception):
	"""Base class for certificate authority failures."""


class RateLimitedError(CaError):
	"""The CA refused the request because of a rate limit."""

	def __init__(self, message: str, retry_after: timedelta = DEFAULT_RATE_LIMIT_RETRY) -> None:
		super().__init__(message)
		self.retry_after = retry_after


class ValidationFailedError(CaError):
	"""Domain validation failed (DNS, firewall, proxy misrouting)."""


class TransientCaError(CaError):
	"""Network or CA-side failure worth retrying with back-off."""


class InvalidRequestError(CaError):
	"""Malformed domain or contact; retrying unchanged cannot succeed."""


class CertificateAuthority(Protocol):
	"""Issues one certificate covering every name of a DomainSet.

	Implementations either return a record for the full set or raise a
	:class:`CaError`; partial issuance is never returned.
	"""

	async def request_certificate(
		self,
		domain_set: DomainSet,
		contact_email: str,
		validation_webroot: Path,
	) -> CertificateRecord:
		...
