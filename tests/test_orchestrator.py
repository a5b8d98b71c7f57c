#!/usr/bin/env python3
#
# tests/test_orchestrator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

import logging
from datetime import timedelta

import pytest

from certwarden.ca.base import (
	InvalidRequestError,
	RateLimitedError,
	TransientCaError,
	ValidationFailedError,
)
from certwarden.core.readiness import ChallengeReadiness
from certwarden.core.retry import RetryPolicy
from certwarden.models.profiles import ChallengeOnly, Secure, parse_marker
from certwarden.models.state import FailureReason, OrchestratorState
from certwarden.store.cert_store import StoreError

from conftest import DOMAINS, make_record


def _secure(h):
	return h.orchestrator.settings.secure_profile()


@pytest.mark.asyncio
async def test_fresh_install_reaches_steady_state_in_one_tick(make_harness):
	h = make_harness()

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.STEADY_STATE
	assert result.ok
	assert result.profile_changed
	assert result.ca_calls == 1
	assert len(h.ca.calls) == 1
	assert len(h.store.puts) == 1
	secure_activations = [p for p in h.switcher.activations if isinstance(p, Secure)]
	assert secure_activations == [_secure(h)]
	assert h.switcher.activations[0] == ChallengeOnly(DOMAINS)
	assert h.readiness.calls == 1

	states = [t.state for t in h.orchestrator.transitions()]
	assert states == [
		OrchestratorState.UNINITIALIZED,
		OrchestratorState.AWAITING_CHALLENGE_SERVING,
		OrchestratorState.REQUESTING_CERTIFICATE,
		OrchestratorState.ISSUED,
		OrchestratorState.STEADY_STATE,
	]


@pytest.mark.asyncio
async def test_ca_receives_full_domain_set_email_and_webroot(make_harness, tmp_path):
	h = make_harness()
	await h.orchestrator.tick()

	domain_set, email, webroot = h.ca.calls[0]
	assert domain_set == DOMAINS
	assert email == "ops@example.test"
	assert webroot == tmp_path / "www"


@pytest.mark.asyncio
async def test_rendered_config_marks_secure_profile(make_harness):
	h = make_harness()
	await h.orchestrator.tick()

	first_line = h.switcher.conf_path.read_text().splitlines()[0]
	assert parse_marker(first_line) == _secure(h)


@pytest.mark.asyncio
@pytest.mark.parametrize("days_left", [30, 31, 40, 89])
async def test_valid_certificate_never_calls_ca(make_harness, days_left):
	h = make_harness()
	h.store.put(make_record(now=h.clock.now, days_left=days_left))

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.STEADY_STATE
	assert h.ca.calls == []
	assert result.ca_calls == 0


@pytest.mark.asyncio
async def test_forty_days_left_activates_secure_without_ca(make_harness):
	h = make_harness()
	h.store.put(make_record(now=h.clock.now, days_left=40))

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.STEADY_STATE
	assert h.ca.calls == []
	assert h.switcher.activations == [_secure(h)]
	assert result.expires_in is not None and result.expires_in > timedelta(days=39)


@pytest.mark.asyncio
async def test_second_steady_tick_is_a_no_op(make_harness):
	h = make_harness()
	await h.orchestrator.tick()
	activations = list(h.switcher.activations)
	controller_calls = list(h.controller.calls)

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.STEADY_STATE
	assert not result.profile_changed
	assert result.ca_calls == 0
	assert len(h.ca.calls) == 1
	assert h.switcher.activations == activations
	assert h.controller.calls == controller_calls


@pytest.mark.asyncio
async def test_renewal_due_reissues_and_updates_expiry(make_harness):
	h = make_harness()
	old = make_record(now=h.clock.now, days_left=5)
	h.store.put(old)
	await h.switcher.activate(_secure(h))
	h.switcher.activations.clear()

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.STEADY_STATE
	assert len(h.ca.calls) == 1
	assert OrchestratorState.RENEWAL_DUE in [t.state for t in h.orchestrator.transitions()]
	stored = h.store.lookup(DOMAINS)
	assert stored is not None
	assert stored.expires_at > old.expires_at
	# Renewal only reloads the secure profile, the site never drops to plain HTTP
	assert h.switcher.activations == [_secure(h)]


@pytest.mark.asyncio
async def test_renewal_failure_keeps_secure_profile(make_harness):
	h = make_harness([ValidationFailedError("connection refused")])
	h.store.put(make_record(now=h.clock.now, days_left=5))
	await h.switcher.activate(_secure(h))
	h.switcher.activations.clear()

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.VALIDATION_FAILED
	assert h.switcher.active == _secure(h)
	assert h.switcher.activations == []


@pytest.mark.asyncio
async def test_transient_errors_retry_with_increasing_backoff(make_harness):
	h = make_harness([TransientCaError("503"), TransientCaError("503"), TransientCaError("503")])

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.TRANSIENT
	assert len(h.ca.calls) == 3
	assert h.sleeps == [5.0, 10.0]
	assert all(b > a for a, b in zip(h.sleeps, h.sleeps[1:]))
	assert h.store.puts == []


@pytest.mark.asyncio
async def test_transient_error_recovers_within_policy(make_harness):
	h = make_harness([TransientCaError("timeout"), TransientCaError("timeout")])

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.STEADY_STATE
	assert result.ca_calls == 3
	assert len(h.store.puts) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("attempts", [1, 2, 5])
async def test_retry_count_follows_policy(make_harness, attempts):
	h = make_harness(
		[TransientCaError("x") for _ in range(10)],
		policy=RetryPolicy(max_attempts=attempts, base_delay=1.0, multiplier=3.0),
	)

	await h.orchestrator.tick()

	assert len(h.ca.calls) == attempts
	assert len(h.sleeps) == attempts - 1


@pytest.mark.asyncio
async def test_rate_limit_blocks_ca_until_retry_after(make_harness):
	h = make_harness([RateLimitedError("too many certificates", timedelta(hours=1))])

	result = await h.orchestrator.tick()
	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.RATE_LIMITED
	assert result.failure.retry_after == h.clock.now + timedelta(hours=1)
	assert len(h.ca.calls) == 1

	h.clock.advance(timedelta(minutes=59))
	held = await h.orchestrator.tick()
	assert held.state is OrchestratorState.FAILED
	assert held.failure.reason is FailureReason.RATE_LIMITED
	assert held.ca_calls == 0
	assert len(h.ca.calls) == 1

	h.clock.advance(timedelta(minutes=2))
	result = await h.orchestrator.tick()
	assert result.state is OrchestratorState.STEADY_STATE
	assert len(h.ca.calls) == 2


@pytest.mark.asyncio
async def test_held_tick_does_not_switch_to_challenge(make_harness):
	h = make_harness([RateLimitedError("slow down", timedelta(hours=3))])
	await h.orchestrator.tick()
	# Operator restored the previous proxy config in the meantime
	await h.switcher.activate(_secure(h))
	h.switcher.activations.clear()

	await h.orchestrator.tick()

	assert h.switcher.activations == []
	assert h.readiness.calls == 1


@pytest.mark.asyncio
async def test_validation_hold_doubles(make_harness):
	h = make_harness(
		[ValidationFailedError("dns"), ValidationFailedError("dns")],
		validation_hold=timedelta(minutes=30),
	)

	first = await h.orchestrator.tick()
	assert first.failure.retry_after == h.clock.now + timedelta(minutes=30)

	h.clock.advance(timedelta(minutes=31))
	second = await h.orchestrator.tick()
	assert second.failure.reason is FailureReason.VALIDATION_FAILED
	assert second.failure.retry_after == h.clock.now + timedelta(hours=1)
	assert len(h.ca.calls) == 2


@pytest.mark.asyncio
async def test_invalid_request_blocks_until_unblocked(make_harness):
	h = make_harness([InvalidRequestError("rejectedIdentifier")])

	result = await h.orchestrator.tick()
	assert result.state is OrchestratorState.BLOCKED
	assert result.failure.reason is FailureReason.INVALID_REQUEST

	h.clock.advance(timedelta(days=2))
	again = await h.orchestrator.tick()
	assert again.state is OrchestratorState.BLOCKED
	assert len(h.ca.calls) == 1

	assert h.orchestrator.unblock() is True
	result = await h.orchestrator.tick()
	assert result.state is OrchestratorState.STEADY_STATE
	assert len(h.ca.calls) == 2


@pytest.mark.asyncio
async def test_unreachable_challenge_path_fails_without_ca_call(make_harness):
	h = make_harness(ready=False)

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.PROXY_UNREACHABLE
	assert h.ca.calls == []
	assert h.switcher.active == ChallengeOnly(DOMAINS)


@pytest.mark.asyncio
async def test_partial_certificate_is_rejected(make_harness):
	h = make_harness()
	h.ca.cert_names = ["example.test", "www.example.test"]

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.INCOMPLETE_CERTIFICATE
	assert "api.example.test" in result.failure.detail
	assert h.store.puts == []


@pytest.mark.asyncio
async def test_secure_switch_failure_keeps_challenge_profile(make_harness):
	h = make_harness()
	h.controller.validate_results = [(True, "ok"), (False, "nginx: [emerg] cannot load certificate")]

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.SWITCH_FAILED
	assert h.switcher.active == ChallengeOnly(DOMAINS)
	assert parse_marker(h.switcher.conf_path.read_text().splitlines()[0]) == ChallengeOnly(DOMAINS)
	assert len(h.store.puts) == 1

	# Next tick finds the stored certificate and only retries the switch
	result = await h.orchestrator.tick()
	assert result.state is OrchestratorState.STEADY_STATE
	assert len(h.ca.calls) == 1


@pytest.mark.asyncio
async def test_store_failure_is_reported(make_harness, monkeypatch):
	h = make_harness()

	def broken_put(record):
		raise StoreError("disk full")

	monkeypatch.setattr(h.store, "put", broken_put)

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.STORE_FAILED
	assert "disk full" in result.failure.detail


@pytest.mark.asyncio
async def test_tick_skips_while_another_process_holds_the_lock(make_harness):
	h = make_harness()

	with h.store.lock(DOMAINS) as acquired:
		assert acquired
		result = await h.orchestrator.tick()

	assert result.skipped
	assert h.ca.calls == []
	assert h.switcher.activations == []


@pytest.mark.asyncio
async def test_failures_are_logged_and_kept(make_harness, caplog):
	h = make_harness([TransientCaError("boom")], policy=RetryPolicy(max_attempts=1, base_delay=1.0, multiplier=2.0))

	with caplog.at_level(logging.ERROR, logger="certwarden.core.orchestrator"):
		await h.orchestrator.tick()

	assert "CERT_FAILED reason=transient" in caplog.text
	assert "example.test" in caplog.text
	assert [f.reason for f in h.orchestrator.failures()] == [FailureReason.TRANSIENT]
	assert h.orchestrator.failure is not None

	await h.orchestrator.tick()
	assert h.orchestrator.failure is None
	assert len(h.orchestrator.failures()) == 1


@pytest.mark.asyncio
async def test_unexpected_ca_exception_becomes_failure(make_harness):
	h = make_harness([OSError("webroot not writable")], policy=RetryPolicy(max_attempts=1, base_delay=1.0, multiplier=2.0))

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.TRANSIENT
	assert "webroot not writable" in result.failure.detail



@pytest.mark.asyncio
async def test_renewal_due_on_challenge_profile_serves_old_certificate(make_harness):
	h = make_harness([ValidationFailedError("connection refused")])
	h.store.put(make_record(now=h.clock.now, days_left=5))
	# An earlier switch failure left the proxy on plain HTTP
	await h.switcher.activate(ChallengeOnly(DOMAINS))

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.VALIDATION_FAILED
	assert h.switcher.active == _secure(h)

	# While the validation hold lasts the certificate is still served
	await h.switcher.activate(ChallengeOnly(DOMAINS))
	held = await h.orchestrator.tick()

	assert held.ca_calls == 0
	assert held.failure.reason is FailureReason.VALIDATION_FAILED
	assert h.switcher.active == _secure(h)
	assert len(h.ca.calls) == 1


@pytest.mark.asyncio
async def test_expired_certificate_keeps_challenge_profile_for_renewal(make_harness):
	h = make_harness([ValidationFailedError("connection refused")])
	h.store.put(make_record(now=h.clock.now, days_left=-0.5))
	await h.switcher.activate(ChallengeOnly(DOMAINS))

	await h.orchestrator.tick()

	assert h.switcher.active == ChallengeOnly(DOMAINS)


@pytest.mark.asyncio
async def test_unwritable_webroot_fails_the_tick(make_harness, tmp_path):
	h = make_harness()
	webroot = tmp_path / "not-a-dir"
	webroot.write_text("")
	h.orchestrator.readiness = ChallengeReadiness(webroot, DOMAINS)

	result = await h.orchestrator.tick()

	assert result.state is OrchestratorState.FAILED
	assert result.failure.reason is FailureReason.PROXY_UNREACHABLE
	assert "not-a-dir" in result.failure.detail
	assert h.ca.calls == []
	assert h.orchestrator.failures()[-1] is result.failure


def test_snapshot_reports_state_and_profile(make_harness):
	h = make_harness()
	snap = h.orchestrator.snapshot()

	assert snap["state"] == "uninitialized"
	assert snap["domains"] == list(DOMAINS.names)
	assert snap["active_profile"] is None
	assert snap["blocked"] is False
