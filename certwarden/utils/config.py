#!/usr/bin/env python3
#
# certwarden/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading, validation and defaults."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

from pydantic import EmailStr, TypeAdapter, ValidationError

from ..models.certificates import HOSTNAME_RE, DomainSet

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

_email_adapter = TypeAdapter(EmailStr)
_TRUE = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	base_dir: Path
	data_dir: Path
	certs_dir: Path
	webroot: Path
	nginx_conf: Path

	contact_email: str
	primary_domain: str
	api_domain: str
	include_www: bool = True

	# Paths as the proxy container sees them
	proxy_webroot: str = "/var/www/certbot"
	proxy_cert_root: str = "/etc/certwarden/live"
	proxy_dhparam: str = ""
	frontend_upstream: str = "http://frontend:80"
	backend_upstream: str = "http://backend:8080"

	runtime: str = "local"  # local | compose
	compose_file: str = "docker-compose.prod.yml"
	compose_env_file: str = ".env.prod"
	proxy_service: str = "nginx"
	certbot_service: str = "certbot"

	ca_backend: str = "acme"  # acme | certbot
	acme_directory: str = ACME_DIRECTORY_PROD
	certbot_config_dir: Path | None = None

	renewal_threshold_days: int = 30
	renewal_interval: float = 43200.0
	tick_timeout: float = 900.0
	readiness_timeout: float = 120.0
	readiness_poll_interval: float = 2.0
	retry_attempts: int = 3
	retry_base_delay: float = 5.0
	retry_multiplier: float = 2.0
	validation_hold: float = 3600.0
	dhparam_bits: int = 2048
	probe_base_url: str = ""
	proxy_health_url: str = "http://localhost/"

	api_token: str = ""
	host: str = "0.0.0.0"
	port: int = 8000
	log_level: str = "INFO"

	@property
	def domain_set(self) -> DomainSet:
		"""Primary domain, its ``www`` alias and the API subdomain on one certificate."""
		return DomainSet.from_parts(self.primary_domain, self.api_domain, self.include_www)

	@property
	def dhparam_path(self) -> Path | None:
		"""Host-side DH parameter file, or None when generation is disabled."""
		return self.certs_dir / "dhparam.pem" if self.dhparam_bits > 0 else None


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments."""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Seed ``os.environ`` from simple KEY=VALUE lines in ``settings.env``.

	Blank lines and comments are skipped, ``export KEY=VALUE`` is accepted
	(the deploy scripts source the same file) and variables that are already
	set in the real environment are never overridden.
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or Path(os.getenv("CERTWARDEN_ENV_FILE", str(project_root / "settings.env")))
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#") or "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		if not key:
			continue
		os.environ.setdefault(key, _parse_value(value))


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or raw.strip() == "":
		return default
	return raw.strip().lower() in _TRUE


def _env_number(name: str, default: float, *, cast=float, minimum: float = 0.0):
	raw = os.getenv(name)
	if raw is None or raw.strip() == "":
		return cast(default)
	try:
		value = cast(raw.strip())
	except ValueError as exc:
		raise ConfigValidationError(f"{name} must be a number, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{name} must be ≥ {minimum}, got {value}")
	return value


def _require_hostname(name: str, value: str) -> str:
	value = value.strip().lower().rstrip(".")
	if not value:
		raise ConfigValidationError(f"{name} is not set")
	if not HOSTNAME_RE.match(value):
		raise ConfigValidationError(f"{name} is not a valid hostname: {value!r}")
	return value


def _choice(name: str, default: str, allowed: tuple[str, ...]) -> str:
	value = os.getenv(name, default).strip().lower() or default
	if value not in allowed:
		raise ConfigValidationError(f"{name} must be one of {', '.join(allowed)}, got {value!r}")
	return value


def load_config() -> Config:
	"""Load and validate configuration from the environment (optionally via settings.env)."""
	load_dotenv()
	project_root = Path(__file__).resolve().parents[2]

	email = os.getenv("SSL_EMAIL", "").strip()
	if not email:
		raise ConfigValidationError(
			"SSL configuration incomplete: SSL_EMAIL is not set. "
			"Set SSL_EMAIL, DOMAIN_NAME and API_DOMAIN in settings.env or the environment."
		)
	try:
		email = str(_email_adapter.validate_python(email))
	except ValidationError as exc:
		raise ConfigValidationError(f"SSL_EMAIL is not a valid email address: {email!r}") from exc

	primary = _require_hostname("DOMAIN_NAME", os.getenv("DOMAIN_NAME", ""))
	api_domain = _require_hostname("API_DOMAIN", os.getenv("API_DOMAIN", "") or f"api.{primary}")

	data_dir = Path(os.getenv("CERTWARDEN_DATA_DIR", str(project_root / "data"))).resolve()
	certs_dir = data_dir / "certs"
	webroot = Path(os.getenv("CERTWARDEN_WEBROOT", str(data_dir / "www"))).resolve()
	nginx_conf = Path(os.getenv("CERTWARDEN_NGINX_CONF", str(data_dir / "nginx" / "certwarden.conf"))).resolve()

	try:
		for d in (data_dir, certs_dir, webroot, nginx_conf.parent):
			if d.exists() and not d.is_dir():
				raise ConfigValidationError(f"Path exists but is not a directory: {d}")
			d.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create data directories: {exc}") from exc

	staging = _env_bool("CERTWARDEN_ACME_STAGING", False)
	acme_directory = os.getenv("CERTWARDEN_ACME_DIRECTORY", "").strip() or (
		ACME_DIRECTORY_STAGING if staging else ACME_DIRECTORY_PROD
	)
	if not acme_directory.startswith("https://"):
		raise ConfigValidationError(f"CERTWARDEN_ACME_DIRECTORY must be an https URL: {acme_directory!r}")

	retry_multiplier = _env_number("CERTWARDEN_RETRY_MULTIPLIER", 2.0)
	if retry_multiplier <= 1.0:
		raise ConfigValidationError("CERTWARDEN_RETRY_MULTIPLIER must be > 1 so back-off strictly increases")

	dhparam_bits = _env_number("CERTWARDEN_DHPARAM_BITS", 2048, cast=int)
	if 0 < dhparam_bits < 1024:
		raise ConfigValidationError("CERTWARDEN_DHPARAM_BITS must be 0 (disabled) or at least 1024")

	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = os.getenv("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	return Config(
		base_dir=project_root,
		data_dir=data_dir,
		certs_dir=certs_dir,
		webroot=webroot,
		nginx_conf=nginx_conf,
		contact_email=email,
		primary_domain=primary,
		api_domain=api_domain,
		include_www=_env_bool("CERTWARDEN_INCLUDE_WWW", True),
		proxy_webroot=os.getenv("CERTWARDEN_PROXY_WEBROOT", "").strip() or str(webroot),
		proxy_cert_root=os.getenv("CERTWARDEN_PROXY_CERT_ROOT", "").strip() or str(certs_dir / "live"),
		proxy_dhparam=os.getenv("CERTWARDEN_PROXY_DHPARAM", "").strip() or str(certs_dir / "dhparam.pem"),
		frontend_upstream=os.getenv("CERTWARDEN_FRONTEND_UPSTREAM", "http://frontend:80"),
		backend_upstream=os.getenv("CERTWARDEN_BACKEND_UPSTREAM", "http://backend:8080"),
		runtime=_choice("CERTWARDEN_RUNTIME", "local", ("local", "compose")),
		compose_file=os.getenv("COMPOSE_FILE", "docker-compose.prod.yml"),
		compose_env_file=os.getenv("COMPOSE_ENV_FILE", ".env.prod"),
		proxy_service=os.getenv("CERTWARDEN_PROXY_SERVICE", "nginx"),
		certbot_service=os.getenv("CERTWARDEN_CERTBOT_SERVICE", "certbot"),
		ca_backend=_choice("CERTWARDEN_CA", "acme", ("acme", "certbot")),
		acme_directory=acme_directory,
		certbot_config_dir=Path(
			os.getenv("CERTWARDEN_CERTBOT_CONFIG_DIR", str(data_dir / "letsencrypt"))
		).resolve(),
		renewal_threshold_days=_env_number("CERTWARDEN_RENEWAL_THRESHOLD_DAYS", 30, cast=int, minimum=1),
		renewal_interval=_env_number("CERTWARDEN_RENEWAL_INTERVAL", 43200.0, minimum=60.0),
		tick_timeout=_env_number("CERTWARDEN_TICK_TIMEOUT", 900.0, minimum=1.0),
		readiness_timeout=_env_number("CERTWARDEN_READINESS_TIMEOUT", 120.0, minimum=1.0),
		readiness_poll_interval=_env_number("CERTWARDEN_READINESS_POLL", 2.0, minimum=0.1),
		retry_attempts=_env_number("CERTWARDEN_RETRY_ATTEMPTS", 3, cast=int, minimum=1),
		retry_base_delay=_env_number("CERTWARDEN_RETRY_BASE_DELAY", 5.0, minimum=0.1),
		retry_multiplier=retry_multiplier,
		validation_hold=_env_number("CERTWARDEN_VALIDATION_HOLD", 3600.0),
		dhparam_bits=dhparam_bits,
		probe_base_url=os.getenv("CERTWARDEN_PROBE_BASE_URL", "").strip().rstrip("/"),
		proxy_health_url=os.getenv("CERTWARDEN_PROXY_HEALTH_URL", "http://localhost/"),
		api_token=os.getenv("CERTWARDEN_API_TOKEN", ""),
		host=os.getenv("CERTWARDEN_HOST", "0.0.0.0"),
		port=_env_number("CERTWARDEN_PORT", 8000, cast=int, minimum=1),
		log_level=log_level,
	)


# Global config singleton with thread-safe lazy initialization
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Get the global config singleton (thread-safe)."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Reset the cached config. Intended for tests only."""
	global _config
	with _config_lock:
		_config = None
