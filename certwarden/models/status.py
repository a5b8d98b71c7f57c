#!/usr/bin/env python3
#
# certwarden/models/status.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Pydantic models for the operator status API."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from .certificates import CertificateRecord


class CertificateInfo(BaseModel):
	"""Public view of a stored certificate (never includes the key)."""
	primary: str
	names: list[str]
	issued_at: Optional[str] = None
	expires_at: Optional[str] = None
	issuer: Optional[str] = None
	serial: Optional[str] = None
	days_until_expiry: Optional[int] = None
	needs_renewal: bool = False

	@classmethod
	def from_record(
		cls,
		record: CertificateRecord,
		*,
		now: datetime,
		renewal_threshold: timedelta,
	) -> CertificateInfo:
		remaining = record.expires_at - now
		try:
			issuer: Optional[str] = record.issuer_name()
			serial: Optional[str] = record.serial_hex()
		except ValueError:
			issuer, serial = None, None
		return cls(
			primary=record.domain_set.primary,
			names=list(record.domain_set.names),
			issued_at=record.issued_at.isoformat(),
			expires_at=record.expires_at.isoformat(),
			issuer=issuer,
			serial=serial,
			days_until_expiry=remaining.days,
			# timedelta comparison avoids day-rounding at the threshold
			needs_renewal=remaining < renewal_threshold,
		)


class RenewRequest(BaseModel):
	"""Body of ``POST /certificates/renew``."""
	wait: bool = Field(default=True, description="Run the tick inline and return its result")
