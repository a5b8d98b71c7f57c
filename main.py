#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# CertWarden - certificate bootstrap and renewal
# Entry point: serve | bootstrap | check
#

import argparse
import asyncio
import sys
from datetime import timedelta

import uvicorn
from certwarden.main import build_daemon, prepare_dhparam, setup_logging
from certwarden.store.cert_store import FileCertificateStore, StoreError
from certwarden.utils.config import ConfigValidationError, load_config
from certwarden.utils.time import humanize_delta, utcnow

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Uvicorn logging dict-config that reuses the same format as the app
_UVICORN_LOG_CONFIG: dict = {
	"version": 1,
	"disable_existing_loggers": False,
	"formatters": {
		"default": {"format": _LOG_FORMAT, "datefmt": _DATE_FORMAT},
		"access": {"format": _LOG_FORMAT, "datefmt": _DATE_FORMAT},
	},
	"handlers": {
		"default": {
			"formatter": "default",
			"class": "logging.StreamHandler",
			"stream": "ext://sys.stderr",
		},
		"access": {
			"formatter": "access",
			"class": "logging.StreamHandler",
			"stream": "ext://sys.stdout",
		},
	},
	"loggers": {
		"uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
		"uvicorn.error": {"level": "INFO"},
		"uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
	},
}


def _serve(cfg) -> int:
	for logger in _UVICORN_LOG_CONFIG["loggers"].values():
		logger["level"] = cfg.log_level
	uvicorn.run(
		"certwarden:create_app",
		host=cfg.host,
		port=cfg.port,
		factory=True,
		log_config=_UVICORN_LOG_CONFIG,
	)
	return 0


async def _bootstrap(cfg) -> int:
	await prepare_dhparam(cfg)
	daemon = build_daemon(cfg)
	if daemon.proxy is not None:
		await daemon.wait_for_proxy()
	result = await daemon.run_once()
	if result.skipped:
		print("Another CertWarden process is orchestrating this domain set, try again later.")
		return 2
	if result.ok:
		expires = humanize_delta(result.expires_in) if result.expires_in is not None else "?"
		print(f"✓ {cfg.domain_set} is in steady state, certificate expires in {expires}")
		return 0
	failure = result.failure
	detail = f"{failure.reason.value}: {failure.detail}" if failure else "no detail"
	print(f"✗ {cfg.domain_set} ended in {result.state.value} ({detail})", file=sys.stderr)
	return 1


def _check(cfg) -> int:
	"""Print the stored certificate's expiry; exit 1 when it is due for renewal."""
	store = FileCertificateStore(cfg.certs_dir)
	try:
		record = store.lookup(cfg.domain_set)
	except StoreError as exc:
		print(f"✗ Certificate store unreadable: {exc}", file=sys.stderr)
		return 2
	if record is None:
		print(f"✗ No certificate stored for {cfg.domain_set}", file=sys.stderr)
		return 1
	remaining = store.time_until_expiry(record, utcnow())
	print(f"Certificate for {cfg.domain_set}")
	print(f"  expires: {record.expires_at.isoformat()} (in {humanize_delta(remaining)})")
	fullchain, privkey = store.live_paths(cfg.domain_set)
	print(f"  fullchain: {fullchain}")
	print(f"  privkey:   {privkey}")
	if remaining < timedelta(days=cfg.renewal_threshold_days):
		print(f"⚠ Certificate expires within {cfg.renewal_threshold_days} days, renewal is due")
		return 1
	print("✓ Certificate is valid")
	return 0


def main(argv=None) -> int:
	parser = argparse.ArgumentParser(prog="certwarden", description="Certificate bootstrap and renewal")
	parser.add_argument(
		"command",
		nargs="?",
		default="serve",
		choices=("serve", "bootstrap", "check"),
		help="serve: run the API and renewal daemon (default); "
		"bootstrap: one orchestration tick; check: show stored certificate expiry",
	)
	args = parser.parse_args(argv)

	try:
		cfg = load_config()
	except ConfigValidationError as exc:
		print(f"Configuration error: {exc}", file=sys.stderr)
		return 2

	if args.command == "serve":
		return _serve(cfg)
	setup_logging(cfg.log_level)
	if args.command == "bootstrap":
		return asyncio.run(_bootstrap(cfg))
	return _check(cfg)


if __name__ == "__main__":
	sys.exit(main())
