#!/usr/bin/env python3
#
# tests/test_switcher.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

import httpx
import pytest

from certwarden.core.readiness import ReadinessTimeoutError
from certwarden.models.profiles import ChallengeOnly, Secure
from certwarden.proxy.switcher import (
	ProxyConfigSwitcher,
	ProxyReloadError,
	ProxyValidationError,
	SwitchError,
)

from conftest import DOMAINS, FakeController

SECURE = Secure(
	DOMAINS,
	"/etc/certwarden/live/example.test/fullchain.pem",
	"/etc/certwarden/live/example.test/privkey.pem",
)
CHALLENGE = ChallengeOnly(DOMAINS)


@pytest.mark.asyncio
async def test_activate_writes_validates_and_reloads(make_switcher):
	controller = FakeController()
	switcher = make_switcher(controller)
	assert switcher.active is None

	await switcher.activate(CHALLENGE)

	assert switcher.active == CHALLENGE
	assert controller.calls == ["validate", "reload"]
	assert switcher.conf_path.read_text().startswith("# certwarden-profile: ")


@pytest.mark.asyncio
async def test_validation_failure_restores_previous_profile(make_switcher):
	controller = FakeController()
	switcher = make_switcher(controller)
	await switcher.activate(CHALLENGE)
	before = switcher.conf_path.read_bytes()
	controller.calls.clear()
	controller.validate_results = [(False, "Config validation failed: cannot load certificate")]

	with pytest.raises(ProxyValidationError, match="cannot load certificate"):
		await switcher.activate(SECURE)

	assert switcher.active == CHALLENGE
	assert switcher.conf_path.read_bytes() == before
	assert controller.calls == ["validate"]


@pytest.mark.asyncio
async def test_validation_failure_without_previous_config_removes_file(make_switcher):
	controller = FakeController()
	controller.validate_results = [(False, "broken")]
	switcher = make_switcher(controller)

	with pytest.raises(ProxyValidationError):
		await switcher.activate(CHALLENGE)

	assert not switcher.conf_path.exists()
	assert switcher.active is None


@pytest.mark.asyncio
async def test_reload_failure_rolls_back_and_reloads_previous(make_switcher):
	controller = FakeController()
	switcher = make_switcher(controller)
	await switcher.activate(CHALLENGE)
	before = switcher.conf_path.read_bytes()
	controller.calls.clear()
	controller.reload_results = [(False, "Reload failed: signal process started")]

	with pytest.raises(ProxyReloadError):
		await switcher.activate(SECURE)

	assert switcher.active == CHALLENGE
	assert switcher.conf_path.read_bytes() == before
	assert controller.calls == ["validate", "reload", "reload"]


@pytest.mark.asyncio
async def test_failed_rollback_reload_restarts_proxy(make_switcher):
	controller = FakeController()
	switcher = make_switcher(controller)
	await switcher.activate(CHALLENGE)
	controller.calls.clear()
	controller.reload_results = [(False, "no master"), (False, "no master")]

	with pytest.raises(ProxyReloadError):
		await switcher.activate(SECURE)

	assert controller.calls == ["validate", "reload", "reload", "restart"]


@pytest.mark.asyncio
async def test_active_profile_survives_restart(make_switcher):
	switcher = make_switcher()
	await switcher.activate(SECURE)

	reopened = make_switcher(conf_path=switcher.conf_path)

	assert reopened.active == SECURE


def test_foreign_config_has_no_active_profile(make_switcher, tmp_path):
	conf = tmp_path / "nginx" / "certwarden.conf"
	conf.parent.mkdir(parents=True)
	conf.write_text("server {\n    listen 80;\n}\n")

	assert make_switcher(conf_path=conf).active is None


@pytest.mark.asyncio
async def test_render_error_leaves_file_untouched(tmp_path):
	controller = FakeController()

	def renderer(profile):
		raise ValueError("unsafe path")

	switcher = ProxyConfigSwitcher(tmp_path / "proxy.conf", renderer, controller)

	with pytest.raises(SwitchError, match="unsafe path"):
		await switcher.activate(CHALLENGE)

	assert not (tmp_path / "proxy.conf").exists()
	assert controller.calls == []


@pytest.mark.asyncio
async def test_confirm_without_health_url_is_a_no_op(make_switcher):
	await make_switcher().confirm(timeout=0.01, poll_interval=0.01)


@pytest.mark.asyncio
async def test_confirm_polls_health_url(tmp_path):
	calls = []

	def handler(request):
		calls.append(str(request.url))
		return httpx.Response(200)

	switcher = ProxyConfigSwitcher(
		tmp_path / "proxy.conf",
		lambda profile: "",
		FakeController(),
		health_url="http://nginx/",
		health_transport=httpx.MockTransport(handler),
	)

	await switcher.confirm(timeout=1, poll_interval=0.1)

	assert calls == ["http://nginx/"]


@pytest.mark.asyncio
async def test_confirm_times_out_when_proxy_is_down(tmp_path):
	def handler(request):
		raise httpx.ConnectError("refused", request=request)

	switcher = ProxyConfigSwitcher(
		tmp_path / "proxy.conf",
		lambda profile: "",
		FakeController(),
		health_url="http://nginx/",
		health_transport=httpx.MockTransport(handler),
	)

	with pytest.raises(ReadinessTimeoutError):
		await switcher.confirm(timeout=0.05, poll_interval=0.01)
