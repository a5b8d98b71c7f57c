#!/usr/bin/env python3
#
# certwarden/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory, component wiring and startup lifecycle."""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from .api import certificates as certificates_api
from .ca.acme import AcmeCertificateAuthority
from .ca.base import CertificateAuthority
from .ca.certbot import CertbotCertificateAuthority
from .core.daemon import RenewalDaemon
from .core.orchestrator import Orchestrator, OrchestratorSettings
from .core.readiness import ChallengeReadiness
from .proxy.dhparam import ensure_dhparam
from .proxy.nginx_config import NginxSettings, render_profile
from .proxy.nginx_process import NginxController
from .proxy.switcher import ProxyConfigSwitcher
from .runtime.compose import ComposeRuntime, ContainerRuntime, LocalRuntime
from .store.cert_store import FileCertificateStore
from .utils.config import ACME_DIRECTORY_STAGING, Config, get_config

_log = logging.getLogger(__name__)

# Paths inside the official certbot image
_CERTBOT_CONTAINER_CONFIG_DIR = "/etc/letsencrypt"

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		if orig_levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[orig_levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def setup_logging(log_level: str) -> None:
	"""Configure unified logging for the service and the CLI."""
	level = getattr(logging, log_level.upper(), logging.INFO)
	if sys.stdout.isatty():
		formatter: logging.Formatter = _ColoredFormatter(
			fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)

	# force=True removes any pre-existing handlers (e.g. from uvicorn)
	logging.basicConfig(level=level, handlers=[logging.StreamHandler(sys.stdout)], force=True)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("httpcore", "httpx", "hpack"):
		logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------

def build_runtime(cfg: Config) -> ContainerRuntime:
	if cfg.runtime == "compose":
		compose_file = Path(cfg.compose_file)
		if not compose_file.is_absolute():
			compose_file = cfg.base_dir / compose_file
		env_file = Path(cfg.compose_env_file)
		if not env_file.is_absolute():
			env_file = cfg.base_dir / env_file
		return ComposeRuntime(compose_file, env_file=env_file, project_dir=compose_file.parent)
	return LocalRuntime()


def build_ca(cfg: Config, runtime: ContainerRuntime) -> CertificateAuthority:
	if cfg.ca_backend == "certbot":
		config_dir = cfg.certbot_config_dir or cfg.data_dir / "letsencrypt"
		if runtime.name == "compose":
			return CertbotCertificateAuthority(
				runtime,
				config_dir,
				service=cfg.certbot_service,
				entrypoint=(),
				certbot_config_dir=_CERTBOT_CONTAINER_CONFIG_DIR,
				certbot_webroot=cfg.proxy_webroot,
				staging=cfg.acme_directory == ACME_DIRECTORY_STAGING,
			)
		return CertbotCertificateAuthority(
			runtime,
			config_dir,
			service=cfg.certbot_service,
			staging=cfg.acme_directory == ACME_DIRECTORY_STAGING,
		)
	return AcmeCertificateAuthority(cfg.acme_directory, cfg.certs_dir / "accounts")


def build_daemon(cfg: Config) -> RenewalDaemon:
	"""Wire store, CA, proxy switcher, readiness gate, orchestrator and daemon."""
	runtime = build_runtime(cfg)
	controller = NginxController(runtime, service=cfg.proxy_service)
	nginx_settings = NginxSettings(
		webroot=cfg.proxy_webroot,
		frontend_upstream=cfg.frontend_upstream,
		backend_upstream=cfg.backend_upstream,
		api_domain=cfg.api_domain,
		dhparam=cfg.proxy_dhparam if cfg.dhparam_path is not None and cfg.proxy_dhparam else None,
	)
	switcher = ProxyConfigSwitcher(
		cfg.nginx_conf,
		lambda profile: render_profile(profile, nginx_settings),
		controller,
		health_url=cfg.proxy_health_url,
	)
	settings = OrchestratorSettings.from_config(cfg)
	orchestrator = Orchestrator(
		settings,
		FileCertificateStore(cfg.certs_dir),
		build_ca(cfg, runtime),
		switcher,
		ChallengeReadiness(cfg.webroot, settings.domain_set, probe_base_url=cfg.probe_base_url),
	)
	return RenewalDaemon(
		orchestrator,
		switcher,
		interval=cfg.renewal_interval,
		tick_timeout=cfg.tick_timeout,
		jitter_pct=0.02,
		confirm_timeout=cfg.readiness_timeout,
		confirm_poll_interval=cfg.readiness_poll_interval,
		proxy=controller if runtime.name == "compose" else None,
	)


async def prepare_dhparam(cfg: Config) -> None:
	"""Generate the DH parameters the secure profile references, once per volume."""
	if cfg.dhparam_path is None:
		return
	await asyncio.to_thread(ensure_dhparam, cfg.dhparam_path, cfg.dhparam_bits)

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Application lifespan manager."""
	daemon: RenewalDaemon = app.state.daemon
	_log.info(
		"CertWarden starting for %s (ca=%s runtime=%s)",
		daemon.orchestrator.domain_set, app.state.cfg.ca_backend, app.state.cfg.runtime,
	)
	await prepare_dhparam(app.state.cfg)
	await daemon.start()
	try:
		yield
	finally:
		await daemon.stop()
		_log.info("CertWarden stopped")


def create_app(cfg: Optional[Config] = None, daemon: Optional[RenewalDaemon] = None) -> FastAPI:
	"""Application factory for CertWarden."""
	cfg = cfg or get_config()
	setup_logging(cfg.log_level)

	app = FastAPI(
		title="CertWarden",
		description="Certificate bootstrap and renewal for the Nginx-fronted stack",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)

	app.state.cfg = cfg
	app.state.daemon = daemon or build_daemon(cfg)

	# ─── API ROUTES ──────────────────────────────────────────
	app.include_router(certificates_api.router, prefix="/api")

	return app
