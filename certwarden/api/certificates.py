#!/usr/bin/env python3
#
# certwarden/api/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Operator API: certificate status, failures, renew-now and unblock."""

from __future__ import annotations

import asyncio
import hmac
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from ..core.daemon import RenewalDaemon
from ..core.orchestrator import Orchestrator
from ..models.status import CertificateInfo, RenewRequest
from ..store.cert_store import FileCertificateStore, StoreError
from ..utils.config import Config
from ..utils.time import utcnow
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["certificates"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_config(request: Request) -> Config:
	return request.app.state.cfg


def get_daemon(request: Request) -> RenewalDaemon:
	daemon = getattr(request.app.state, "daemon", None)
	if daemon is None:
		raise HTTPException(status_code=503, detail="Renewal daemon not initialized")
	return daemon


def get_orchestrator(daemon: RenewalDaemon = Depends(get_daemon)) -> Orchestrator:
	return daemon.orchestrator


def require_token(
	cfg: Config = Depends(get_config),
	authorization: Optional[str] = Header(default=None),
) -> None:
	"""Bearer token check for mutating routes; open when no token is configured."""
	if not cfg.api_token:
		return
	scheme, _, token = (authorization or "").partition(" ")
	if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), cfg.api_token.encode()):
		raise HTTPException(
			status_code=401,
			detail="Invalid or missing API token",
			headers={"WWW-Authenticate": "Bearer"},
		)


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

@router.get("/health")
async def health(daemon: RenewalDaemon = Depends(get_daemon)) -> dict:
	"""Liveness: the process is up and the renewal job is scheduled."""
	return ok_response(
		data={
			"daemon_running": daemon.running,
			"state": daemon.orchestrator.state.value,
		}
	)


@router.get("/certificates/status")
async def certificate_status(
	cfg: Config = Depends(get_config),
	daemon: RenewalDaemon = Depends(get_daemon),
) -> dict:
	"""Orchestrator state, active proxy profile and the stored certificates."""
	orchestrator = daemon.orchestrator
	store: FileCertificateStore = orchestrator.store
	certificate = None
	store_error = None
	try:
		record = await asyncio.to_thread(store.lookup, orchestrator.domain_set)
	except StoreError as exc:
		_log.warning("STATUS store lookup failed: %s", exc)
		record, store_error = None, str(exc)
	now = utcnow()
	threshold = timedelta(days=cfg.renewal_threshold_days)
	if record is not None:
		certificate = CertificateInfo.from_record(record, now=now, renewal_threshold=threshold).model_dump()
	# Everything on the volume, including sets left behind by a domain change
	records = await asyncio.to_thread(store.records)
	stored = [
		CertificateInfo.from_record(r, now=now, renewal_threshold=threshold).model_dump()
		for r in records
	]

	data = orchestrator.snapshot()
	data.update(
		certificate=certificate,
		stored=stored,
		store_error=store_error,
		daemon=daemon.status(),
	)
	return ok_response(data=data)


@router.get("/certificates/failures")
async def certificate_failures(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
	"""Most recent failures first."""
	failures = [f.to_dict() for f in reversed(orchestrator.failures())]
	return ok_response(data=failures, count=len(failures))


@router.post("/certificates/renew", dependencies=[Depends(require_token)])
async def renew_now(
	req: Optional[RenewRequest] = None,
	daemon: RenewalDaemon = Depends(get_daemon),
) -> dict:
	"""Run a tick now.

	With ``wait`` (default) the tick runs inside the request and its result
	is returned; otherwise the scheduled job is woken and the call returns
	immediately. A certificate that is still valid beyond the renewal
	threshold is not reissued either way.
	"""
	req = req or RenewRequest()
	if not req.wait:
		try:
			daemon.trigger()
		except RuntimeError as exc:
			raise HTTPException(status_code=503, detail=str(exc)) from exc
		return ok_response(message="Renewal job triggered")

	result = await daemon.run_once()
	message = "Certificate is in steady state" if result.ok else f"Tick ended in {result.state.value}"
	return ok_response(message=message, data=result.to_dict())


@router.post("/certificates/unblock", dependencies=[Depends(require_token)])
async def unblock(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
	"""Clear BLOCKED and CA holds after the operator fixed the cause."""
	cleared = orchestrator.unblock()
	return ok_response(
		message="Holds cleared" if cleared else "Nothing to clear",
		data={"cleared": cleared, "state": orchestrator.state.value},
	)
