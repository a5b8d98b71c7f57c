#!/usr/bin/env python3
#
# tests/conftest.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Shared fixtures: self-signed certificates, fake collaborators, a fake clock."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
	sys.path.insert(0, ROOT_DIR)

from certwarden.core.orchestrator import Orchestrator, OrchestratorSettings  # noqa: E402
from certwarden.core.readiness import ReadinessTimeoutError  # noqa: E402
from certwarden.core.retry import RetryPolicy  # noqa: E402
from certwarden.models.certificates import CertificateRecord, DomainSet  # noqa: E402
from certwarden.models.profiles import ProxyProfile  # noqa: E402
from certwarden.proxy.nginx_config import NginxSettings, render_profile  # noqa: E402
from certwarden.proxy.switcher import ProxyConfigSwitcher  # noqa: E402
from certwarden.store.cert_store import FileCertificateStore  # noqa: E402

DOMAINS = DomainSet(("example.test", "www.example.test", "api.example.test"))


def _now() -> datetime:
	# Certificates carry whole seconds only
	return datetime.now(timezone.utc).replace(microsecond=0)


def make_cert_pem(
	names: Union[DomainSet, list[str], tuple[str, ...]],
	*,
	not_before: datetime,
	not_after: datetime,
	issuer_cn: str = "CertWarden Test CA",
) -> tuple[bytes, bytes]:
	"""Self-signed leaf with every name as SAN; returns ``(chain_pem, key_pem)``."""
	names = list(names)
	key = ec.generate_private_key(ec.SECP256R1())
	cert = (
		x509.CertificateBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])]))
		.issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)]))
		.public_key(key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(not_before)
		.not_valid_after(not_after)
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(n) for n in names]), critical=False)
		.sign(key, hashes.SHA256())
	)
	chain = cert.public_bytes(serialization.Encoding.PEM)
	key_pem = key.private_bytes(
		serialization.Encoding.PEM,
		serialization.PrivateFormat.PKCS8,
		serialization.NoEncryption(),
	)
	return chain, key_pem


def make_record(
	domain_set: DomainSet = DOMAINS,
	*,
	now: Optional[datetime] = None,
	days_left: float = 60,
	cert_names: Optional[list[str]] = None,
) -> CertificateRecord:
	now = now or _now()
	chain, key = make_cert_pem(
		cert_names or list(domain_set),
		not_before=now - timedelta(days=1),
		not_after=now + timedelta(days=days_left),
	)
	return CertificateRecord.from_pem(domain_set, chain, key, "test-account")


class FakeClock:
	def __init__(self, start: Optional[datetime] = None) -> None:
		self.now = start or _now()

	def __call__(self) -> datetime:
		return self.now

	def advance(self, delta: timedelta) -> None:
		self.now += delta


class FakeCA:
	"""Plays back a script of outcomes; an exception instance is raised, anything else issues."""

	def __init__(self, clock: FakeClock, script: Optional[list[Any]] = None, *, days_valid: int = 90) -> None:
		self.clock = clock
		self.script = list(script or [])
		self.days_valid = days_valid
		self.calls: list[tuple[DomainSet, str, Path]] = []
		self.cert_names: Optional[list[str]] = None

	async def request_certificate(self, domain_set: DomainSet, contact_email: str, validation_webroot: Path) -> CertificateRecord:
		self.calls.append((domain_set, contact_email, validation_webroot))
		outcome = self.script.pop(0) if self.script else None
		if isinstance(outcome, BaseException):
			raise outcome
		return make_record(
			domain_set,
			now=self.clock.now,
			days_left=self.days_valid,
			cert_names=self.cert_names,
		)


class FakeController:
	"""Proxy controller with scripted validate/reload outcomes."""

	def __init__(self) -> None:
		self.validate_results: list[tuple[bool, str]] = []
		self.reload_results: list[tuple[bool, str]] = []
		self.calls: list[str] = []

	async def validate(self) -> tuple[bool, str]:
		self.calls.append("validate")
		return self.validate_results.pop(0) if self.validate_results else (True, "ok")

	async def reload(self) -> tuple[bool, str]:
		self.calls.append("reload")
		return self.reload_results.pop(0) if self.reload_results else (True, "ok")

	async def restart(self) -> tuple[bool, str]:
		self.calls.append("restart")
		return True, "restarted"


class FakeReadiness:
	def __init__(self, ready: bool = True) -> None:
		self.ready = ready
		self.calls = 0

	async def wait(self, timeout: float, poll_interval: float) -> None:
		self.calls += 1
		if not self.ready:
			raise ReadinessTimeoutError(f"acme-challenge-path not ready after {timeout:.0f}s")


class RecordingSwitcher(ProxyConfigSwitcher):
	"""Real switcher that remembers every successful activation."""

	def __init__(self, *args, **kwargs) -> None:
		super().__init__(*args, **kwargs)
		self.activations: list[ProxyProfile] = []

	async def activate(self, profile: ProxyProfile) -> None:
		await super().activate(profile)
		self.activations.append(profile)


class RecordingStore(FileCertificateStore):
	def __init__(self, *args, **kwargs) -> None:
		super().__init__(*args, **kwargs)
		self.puts: list[CertificateRecord] = []

	def put(self, record: CertificateRecord) -> None:
		super().put(record)
		self.puts.append(record)


@dataclass
class Harness:
	orchestrator: Orchestrator
	store: RecordingStore
	ca: FakeCA
	switcher: RecordingSwitcher
	controller: FakeController
	readiness: FakeReadiness
	clock: FakeClock
	sleeps: list[float] = field(default_factory=list)


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture
def nginx_settings(tmp_path: Path) -> NginxSettings:
	return NginxSettings(webroot=str(tmp_path / "www"), api_domain="api.example.test")


@pytest.fixture
def make_switcher(tmp_path: Path, nginx_settings: NginxSettings) -> Callable[..., RecordingSwitcher]:
	def _make(controller: Optional[FakeController] = None, conf_path: Optional[Path] = None) -> RecordingSwitcher:
		return RecordingSwitcher(
			conf_path or tmp_path / "nginx" / "certwarden.conf",
			lambda profile: render_profile(profile, nginx_settings),
			controller or FakeController(),
		)
	return _make


@pytest.fixture
def make_harness(tmp_path: Path, clock: FakeClock, make_switcher) -> Callable[..., Harness]:
	def _make(
		script: Optional[list[Any]] = None,
		*,
		ready: bool = True,
		policy: Optional[RetryPolicy] = None,
		validation_hold: timedelta = timedelta(hours=1),
		domain_set: DomainSet = DOMAINS,
	) -> Harness:
		sleeps: list[float] = []

		async def fake_sleep(delay: float) -> None:
			sleeps.append(delay)

		store = RecordingStore(tmp_path / "certs")
		ca = FakeCA(clock, script)
		controller = FakeController()
		switcher = make_switcher(controller)
		readiness = FakeReadiness(ready)
		settings = OrchestratorSettings(
			domain_set=domain_set,
			contact_email="ops@example.test",
			webroot=tmp_path / "www",
			proxy_cert_root="/etc/certwarden/live",
			retry_policy=policy or RetryPolicy(max_attempts=3, base_delay=5.0, multiplier=2.0),
			readiness_timeout=10.0,
			readiness_poll_interval=1.0,
			validation_hold=validation_hold,
		)
		orchestrator = Orchestrator(
			settings, store, ca, switcher, readiness, clock=clock, sleep=fake_sleep,
		)
		return Harness(orchestrator, store, ca, switcher, controller, readiness, clock, sleeps)
	return _make
