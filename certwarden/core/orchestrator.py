#!/usr/bin/env python3
#
# certwarden/core/orchestrator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate bootstrap and renewal state machine.

One :meth:`Orchestrator.tick` walks the lifecycle as far as it can::

	UNINITIALIZED ──lookup──┬─ valid, outside threshold ─→ STEADY_STATE
	                        ├─ within threshold ─→ RENEWAL_DUE ─→ (CA) ─→ STEADY_STATE
	                        └─ none ─→ AWAITING_CHALLENGE_SERVING ─→ REQUESTING_CERTIFICATE
	                                   ─→ ISSUED ─→ STEADY_STATE

Every collaborator error ends the tick in ``FAILED`` (or ``BLOCKED`` for a
request the CA will never accept). The next tick starts over from the
store lookup.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Protocol

from ..ca.base import (
	CaError,
	CertificateAuthority,
	InvalidRequestError,
	RateLimitedError,
	TransientCaError,
	ValidationFailedError,
)
from ..models.certificates import CertificateRecord, DomainSet
from ..models.profiles import ChallengeOnly, Secure
from ..models.state import (
	Failure,
	FailureReason,
	OrchestratorState,
	StateTransition,
	TickResult,
)
from ..proxy.switcher import ProxyConfigSwitcher, SwitchError
from ..store.cert_store import FileCertificateStore, StoreError
from ..utils.config import Config
from ..utils.time import isoformat_utc, utcnow
from .readiness import ReadinessTimeoutError
from .retry import RetryPolicy, call_with_retry

_log = logging.getLogger(__name__)

__all__ = ["Orchestrator", "OrchestratorSettings", "ReadinessGate"]

_MAX_VALIDATION_HOLD = timedelta(hours=24)


class ReadinessGate(Protocol):
	async def wait(self, timeout: float, poll_interval: float) -> None:
		...


@dataclass(frozen=True)
class OrchestratorSettings:
	"""Everything the state machine needs, resolved once at construction."""
	domain_set: DomainSet
	contact_email: str
	webroot: Path
	proxy_cert_root: str
	renewal_threshold: timedelta = timedelta(days=30)
	retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
	readiness_timeout: float = 120.0
	readiness_poll_interval: float = 2.0
	validation_hold: timedelta = timedelta(hours=1)
	history_size: int = 50

	@classmethod
	def from_config(cls, cfg: Config) -> OrchestratorSettings:
		return cls(
			domain_set=cfg.domain_set,
			contact_email=cfg.contact_email,
			webroot=cfg.webroot,
			proxy_cert_root=cfg.proxy_cert_root,
			renewal_threshold=timedelta(days=cfg.renewal_threshold_days),
			retry_policy=RetryPolicy(
				max_attempts=cfg.retry_attempts,
				base_delay=cfg.retry_base_delay,
				multiplier=cfg.retry_multiplier,
			),
			readiness_timeout=cfg.readiness_timeout,
			readiness_poll_interval=cfg.readiness_poll_interval,
			validation_hold=timedelta(seconds=cfg.validation_hold),
		)

	def secure_profile(self) -> Secure:
		base = f"{self.proxy_cert_root.rstrip('/')}/{self.domain_set.primary}"
		return Secure(self.domain_set, f"{base}/fullchain.pem", f"{base}/privkey.pem")


@dataclass
class _TickContext:
	profile_changed: bool = False
	ca_calls: int = 0
	expires_in: Optional[timedelta] = None


class Orchestrator:
	"""Single writer of the certificate lifecycle state for one DomainSet."""

	def __init__(
		self,
		settings: OrchestratorSettings,
		store: FileCertificateStore,
		ca: CertificateAuthority,
		switcher: ProxyConfigSwitcher,
		readiness: ReadinessGate,
		*,
		clock: Callable[[], datetime] = utcnow,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	) -> None:
		self.settings = settings
		self.store = store
		self.ca = ca
		self.switcher = switcher
		self.readiness = readiness
		self._clock = clock
		self._sleep = sleep
		self._lock = asyncio.Lock()

		self._state = OrchestratorState.UNINITIALIZED
		self._failure: Optional[Failure] = None
		self._blocked: Optional[Failure] = None
		self._hold_until: Optional[datetime] = None
		self._validation_failures = 0
		self._failures: deque[Failure] = deque(maxlen=settings.history_size)
		self._transitions: deque[StateTransition] = deque(maxlen=settings.history_size)
		self._transitions.append(StateTransition(self._clock(), self._state))
		self._ctx = _TickContext()

	# ------------------------------------------------------------------
	# Read-only views
	# ------------------------------------------------------------------

	@property
	def domain_set(self) -> DomainSet:
		return self.settings.domain_set

	@property
	def state(self) -> OrchestratorState:
		return self._state

	@property
	def failure(self) -> Optional[Failure]:
		"""Failure of the most recent attempt; None once a tick succeeds."""
		return self._failure

	@property
	def hold_until(self) -> Optional[datetime]:
		return self._hold_until

	@property
	def blocked(self) -> bool:
		return self._blocked is not None

	@property
	def busy(self) -> bool:
		return self._lock.locked()

	def failures(self) -> list[Failure]:
		return list(self._failures)

	def transitions(self) -> list[StateTransition]:
		return list(self._transitions)

	def snapshot(self) -> dict[str, Any]:
		active = self.switcher.active
		return {
			"state": self._state.value,
			"domains": list(self.domain_set.names),
			"active_profile": active.to_dict() if active is not None else None,
			"failure": self._failure.to_dict() if self._failure else None,
			"blocked": self.blocked,
			"hold_until": isoformat_utc(self._hold_until),
			"busy": self.busy,
			"transitions": [t.to_dict() for t in self._transitions],
		}

	# ------------------------------------------------------------------
	# Operator controls
	# ------------------------------------------------------------------

	def unblock(self) -> bool:
		"""Clear ``BLOCKED`` and any CA hold. Returns True if anything was cleared."""
		cleared = self._blocked is not None or self._hold_until is not None
		self._blocked = None
		self._hold_until = None
		self._validation_failures = 0
		if cleared:
			_log.warning("CERT_UNBLOCK domains=%s cleared by operator", self.domain_set)
			if self._state is OrchestratorState.BLOCKED:
				self._set_state(OrchestratorState.UNINITIALIZED)
		return cleared

	# ------------------------------------------------------------------
	# Tick
	# ------------------------------------------------------------------

	async def tick(self) -> TickResult:
		"""Advance the lifecycle once. Never raises for collaborator failures."""
		async with self._lock:
			self._ctx = _TickContext()
			try:
				with self.store.lock(self.domain_set) as acquired:
					if not acquired:
						_log.info("CERT_SKIP domains=%s another process holds the lock", self.domain_set)
						return TickResult(state=self._state, failure=self._failure, skipped=True)
					return await self._evaluate()
			except StoreError as exc:
				return self._fail(FailureReason.STORE_FAILED, str(exc))
			except asyncio.CancelledError:
				self._fail(FailureReason.TRANSIENT, "Tick cancelled before completion")
				raise

	def _set_state(self, state: OrchestratorState) -> None:
		if state is self._state:
			return
		_log.debug("CERT_STATE %s -> %s", self._state.value, state.value)
		self._state = state
		self._transitions.append(StateTransition(self._clock(), state))

	def _result(self, state: OrchestratorState, failure: Optional[Failure] = None) -> TickResult:
		return TickResult(
			state=state,
			failure=failure,
			profile_changed=self._ctx.profile_changed,
			ca_calls=self._ctx.ca_calls,
			expires_in=self._ctx.expires_in,
		)

	def _fail(self, reason: FailureReason, detail: str, retry_after: Optional[datetime] = None) -> TickResult:
		failure = Failure(
			reason=reason,
			detail=detail,
			at=self._clock(),
			domain_set=self.domain_set,
			retry_after=retry_after,
		)
		self._failure = failure
		self._failures.append(failure)
		state = OrchestratorState.FAILED
		if reason is FailureReason.INVALID_REQUEST:
			self._blocked = failure
			state = OrchestratorState.BLOCKED
		self._set_state(state)
		_log.error(
			"CERT_FAILED reason=%s domains=%s at=%s retry_after=%s detail=%s",
			reason.value, self.domain_set, isoformat_utc(failure.at),
			isoformat_utc(retry_after) or "-", detail,
		)
		return self._result(state, failure)

	def _succeed(self) -> TickResult:
		if self._failure is not None:
			_log.info("CERT_RECOVERED domains=%s after %s", self.domain_set, self._failure.reason.value)
		self._failure = None
		self._hold_until = None
		self._validation_failures = 0
		self._set_state(OrchestratorState.STEADY_STATE)
		return self._result(OrchestratorState.STEADY_STATE)

	def _held(self) -> Optional[TickResult]:
		"""Result for a tick that must not contact the CA, else None."""
		if self._blocked is not None:
			_log.warning("CERT_BLOCKED domains=%s since %s: %s", self.domain_set, isoformat_utc(self._blocked.at), self._blocked.detail)
			self._set_state(OrchestratorState.BLOCKED)
			return self._result(OrchestratorState.BLOCKED, self._blocked)
		if self._hold_until is not None and self._clock() < self._hold_until:
			_log.info("CERT_HOLD domains=%s no CA calls until %s", self.domain_set, isoformat_utc(self._hold_until))
			self._set_state(OrchestratorState.FAILED)
			return self._result(OrchestratorState.FAILED, self._failure)
		return None

	async def _activate(self, profile: ChallengeOnly | Secure) -> Optional[TickResult]:
		try:
			await self.switcher.activate(profile)
		except SwitchError as exc:
			return self._fail(FailureReason.SWITCH_FAILED, f"Activating {profile.kind} profile failed: {exc}")
		self._ctx.profile_changed = True
		return None

	async def _evaluate(self) -> TickResult:
		try:
			record = await asyncio.to_thread(self.store.lookup, self.domain_set)
		except StoreError as exc:
			return self._fail(FailureReason.STORE_FAILED, str(exc))

		if record is None:
			return await self._issue()

		remaining = self.store.time_until_expiry(record, self._clock())
		self._ctx.expires_in = remaining
		if remaining < self.settings.renewal_threshold:
			return await self._renew(record)

		desired = self.settings.secure_profile()
		if self.switcher.active != desired:
			failed = await self._activate(desired)
			if failed:
				return failed
		return self._succeed()

	async def _issue(self) -> TickResult:
		held = self._held()
		if held:
			return held

		self._set_state(OrchestratorState.AWAITING_CHALLENGE_SERVING)
		challenge = ChallengeOnly(self.domain_set)
		if self.switcher.active != challenge:
			failed = await self._activate(challenge)
			if failed:
				return failed

		failed = await self._wait_for_challenge_path()
		if failed:
			return failed

		self._set_state(OrchestratorState.REQUESTING_CERTIFICATE)
		outcome = await self._request_and_store()
		if isinstance(outcome, TickResult):
			return outcome

		self._set_state(OrchestratorState.ISSUED)
		self._ctx.expires_in = self.store.time_until_expiry(outcome, self._clock())
		failed = await self._activate(self.settings.secure_profile())
		if failed:
			return failed
		_log.info("CERT_ISSUED domains=%s expires=%s", self.domain_set, isoformat_utc(outcome.expires_at))
		return self._succeed()

	async def _renew(self, current: CertificateRecord) -> TickResult:
		self._set_state(OrchestratorState.RENEWAL_DUE)
		_log.info(
			"CERT_RENEWAL_DUE domains=%s expires=%s",
			self.domain_set, isoformat_utc(current.expires_at),
		)
		desired = self.settings.secure_profile()
		expired = current.expires_at <= self._clock()
		if self.switcher.active != desired and not (expired and self.switcher.active == ChallengeOnly(self.domain_set)):
			# Serve the old certificate while it is valid; Secure also answers the ACME path
			failed = await self._activate(desired)
			if failed:
				return failed

		held = self._held()
		if held:
			return held

		failed = await self._wait_for_challenge_path()
		if failed:
			return failed

		outcome = await self._request_and_store()
		if isinstance(outcome, TickResult):
			return outcome

		self._ctx.expires_in = self.store.time_until_expiry(outcome, self._clock())
		# Reload even when the profile is unchanged so the proxy reads the new files
		failed = await self._activate(desired)
		if failed:
			return failed
		_log.info("CERT_RENEWED domains=%s expires=%s", self.domain_set, isoformat_utc(outcome.expires_at))
		return self._succeed()

	async def _wait_for_challenge_path(self) -> Optional[TickResult]:
		try:
			await self.readiness.wait(self.settings.readiness_timeout, self.settings.readiness_poll_interval)
		except ReadinessTimeoutError as exc:
			return self._fail(FailureReason.PROXY_UNREACHABLE, str(exc))
		except OSError as exc:
			return self._fail(FailureReason.PROXY_UNREACHABLE, f"Publishing challenge probe in {self.settings.webroot} failed: {exc}")
		except Exception as exc:
			_log.exception("CERT_READY unexpected error from readiness gate")
			return self._fail(FailureReason.PROXY_UNREACHABLE, f"Readiness check failed: {exc}")
		return None

	async def _call_ca(self) -> CertificateRecord:
		self._ctx.ca_calls += 1
		return await self.ca.request_certificate(
			self.domain_set,
			self.settings.contact_email,
			self.settings.webroot,
		)

	async def _request_and_store(self) -> CertificateRecord | TickResult:
		try:
			record = await call_with_retry(
				self._call_ca,
				self.settings.retry_policy,
				retry_on=(TransientCaError,),
				sleep=self._sleep,
				label=f"ca[{self.domain_set.primary}]",
			)
		except RateLimitedError as exc:
			self._hold_until = self._clock() + exc.retry_after
			return self._fail(FailureReason.RATE_LIMITED, str(exc), retry_after=self._hold_until)
		except ValidationFailedError as exc:
			self._validation_failures += 1
			hold = min(
				self.settings.validation_hold * 2 ** (self._validation_failures - 1),
				_MAX_VALIDATION_HOLD,
			)
			self._hold_until = self._clock() + hold
			return self._fail(FailureReason.VALIDATION_FAILED, str(exc), retry_after=self._hold_until)
		except InvalidRequestError as exc:
			return self._fail(FailureReason.INVALID_REQUEST, str(exc))
		except CaError as exc:
			return self._fail(FailureReason.TRANSIENT, str(exc))
		except Exception as exc:
			_log.exception("CERT_CA unexpected error from certificate authority")
			return self._fail(FailureReason.TRANSIENT, f"Unexpected CA client error: {exc}")

		if not record.domain_set.same_names(self.domain_set) or not record.covers(self.domain_set):
			missing = sorted(set(self.domain_set.names) - set(record.subject_names()))
			return self._fail(
				FailureReason.INCOMPLETE_CERTIFICATE,
				f"Issued certificate does not cover {', '.join(missing) or 'the requested names'}",
			)

		try:
			await asyncio.to_thread(self.store.put, record)
		except StoreError as exc:
			return self._fail(FailureReason.STORE_FAILED, str(exc))
		return record
