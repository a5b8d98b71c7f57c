#!/usr/bin/env python3
#
# certwarden/models/state.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Orchestrator states, failure reasons and tick results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from .certificates import DomainSet
from ..utils.time import isoformat_utc


class OrchestratorState(str, Enum):
	UNINITIALIZED = "uninitialized"
	AWAITING_CHALLENGE_SERVING = "awaiting_challenge_serving"
	REQUESTING_CERTIFICATE = "requesting_certificate"
	ISSUED = "issued"
	STEADY_STATE = "steady_state"
	RENEWAL_DUE = "renewal_due"
	FAILED = "failed"
	# InvalidRequest seen: no CA calls until unblocked or reconfigured
	BLOCKED = "blocked"


class FailureReason(str, Enum):
	PROXY_UNREACHABLE = "proxy_unreachable"
	RATE_LIMITED = "rate_limited"
	VALIDATION_FAILED = "validation_failed"
	TRANSIENT = "transient"
	INVALID_REQUEST = "invalid_request"
	SWITCH_FAILED = "switch_failed"
	STORE_FAILED = "store_failed"
	INCOMPLETE_CERTIFICATE = "incomplete_certificate"


@dataclass(frozen=True)
class Failure:
	"""Why the last attempt ended in ``FAILED`` (or ``BLOCKED``)."""
	reason: FailureReason
	detail: str
	at: datetime
	domain_set: DomainSet
	retry_after: Optional[datetime] = None

	def to_dict(self) -> dict[str, Any]:
		return {
			"reason": self.reason.value,
			"detail": self.detail,
			"at": isoformat_utc(self.at),
			"domains": list(self.domain_set.names),
			"retry_after": isoformat_utc(self.retry_after),
		}


@dataclass(frozen=True)
class StateTransition:
	at: datetime
	state: OrchestratorState

	def to_dict(self) -> dict[str, Any]:
		return {"at": isoformat_utc(self.at), "state": self.state.value}


@dataclass(frozen=True)
class TickResult:
	"""Outcome of one orchestrator tick."""
	state: OrchestratorState
	failure: Optional[Failure] = None
	profile_changed: bool = False
	ca_calls: int = 0
	expires_in: Optional[timedelta] = None
	skipped: bool = False

	@property
	def ok(self) -> bool:
		return self.state is OrchestratorState.STEADY_STATE

	def to_dict(self) -> dict[str, Any]:
		return {
			"state": self.state.value,
			"ok": self.ok,
			"failure": self.failure.to_dict() if self.failure else None,
			"profile_changed": self.profile_changed,
			"ca_calls": self.ca_calls,
			"expires_in_seconds": int(self.expires_in.total_seconds()) if self.expires_in is not None else None,
			"skipped": self.skipped,
		}
