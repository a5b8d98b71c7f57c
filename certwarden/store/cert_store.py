#!/usr/bin/env python3
#
# certwarden/store/cert_store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Durable, crash-safe certificate store keyed by DomainSet.

Layout below ``certs_dir``::

	archive/<primary>/<version>/{fullchain,privkey,cert,chain}.pem + meta.json
	live/<primary> -> ../archive/<primary>/<version>   (symlink)
	.locks/<primary>.lock

A ``put`` writes and fsyncs a complete version directory first and only
then swaps the ``live`` symlink with ``os.replace``. Readers (this class and
the reverse proxy) go through ``live`` and therefore see either the old or
the new record, never a mix.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import shutil
import uuid
from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from ..models.certificates import CertificateRecord, DomainSet, split_pem_chain
from ..utils.files import atomic_write_bytes, atomic_write_text, fsync_dir
from ..utils.time import isoformat_utc, parse_utc, utcnow

_log = logging.getLogger(__name__)

__all__ = ["FileCertificateStore", "StoreError"]

_FULLCHAIN = "fullchain.pem"
_PRIVKEY = "privkey.pem"
_CERT = "cert.pem"
_CHAIN = "chain.pem"
_META = "meta.json"


class StoreError(Exception):
	"""Persisting or reading certificate material failed."""


class FileCertificateStore:
	"""Certificate store on a persistent volume."""

	def __init__(self, certs_dir: Path, *, keep_versions: int = 3) -> None:
		if keep_versions < 1:
			raise ValueError("keep_versions must be ≥ 1")
		self.certs_dir = certs_dir
		self.live_dir = certs_dir / "live"
		self.archive_dir = certs_dir / "archive"
		self.lock_dir = certs_dir / ".locks"
		self.keep_versions = keep_versions

	# ------------------------------------------------------------------
	# Paths
	# ------------------------------------------------------------------

	def live_paths(self, domain_set: DomainSet) -> tuple[Path, Path]:
		"""Stable ``(fullchain, privkey)`` paths that always point at the current version."""
		base = self.live_dir / domain_set.primary
		return base / _FULLCHAIN, base / _PRIVKEY

	# ------------------------------------------------------------------
	# Read
	# ------------------------------------------------------------------

	def lookup(self, domain_set: DomainSet) -> Optional[CertificateRecord]:
		"""Return the stored record for ``domain_set`` or None.

		A record issued for a different set of names under the same primary
		domain is treated as absent, so a configuration change triggers a
		fresh issuance covering the new names.

		Raises:
			StoreError: The entry exists but cannot be read or parsed.
		"""
		link = self.live_dir / domain_set.primary
		if not link.exists():
			if link.is_symlink():
				raise StoreError(f"Dangling live link for {domain_set.primary}: {os.readlink(link)}")
			return None

		try:
			meta = json.loads((link / _META).read_text(encoding="utf-8"))
			chain = (link / _FULLCHAIN).read_bytes()
			key = (link / _PRIVKEY).read_bytes()
			stored = DomainSet(tuple(meta["names"]))
		except (OSError, ValueError, KeyError, TypeError) as exc:
			raise StoreError(f"Unreadable certificate entry for {domain_set.primary}: {exc}") from exc

		if not stored.same_names(domain_set):
			_log.info(
				"STORE_MISMATCH stored=%s requested=%s, treating as missing",
				stored, domain_set,
			)
			return None

		try:
			issued_at = parse_utc(meta.get("issued_at", ""))
			expires_at = parse_utc(meta.get("expires_at", ""))
			if issued_at is None or expires_at is None:
				return CertificateRecord.from_pem(domain_set, chain, key, meta.get("issuer_account_ref", ""))
			return CertificateRecord(
				domain_set=domain_set,
				certificate_chain=chain,
				private_key=key,
				issued_at=issued_at,
				expires_at=expires_at,
				issuer_account_ref=meta.get("issuer_account_ref", ""),
			)
		except ValueError as exc:
			raise StoreError(f"Invalid certificate material for {domain_set.primary}: {exc}") from exc

	def records(self) -> list[CertificateRecord]:
		"""All readable records (operator status view)."""
		found: list[CertificateRecord] = []
		if not self.live_dir.is_dir():
			return found
		for entry in sorted(self.live_dir.iterdir()):
			if entry.name.startswith("."):
				continue
			try:
				meta = json.loads((entry / _META).read_text(encoding="utf-8"))
				record = self.lookup(DomainSet(tuple(meta["names"])))
			except (OSError, ValueError, KeyError, TypeError, StoreError) as exc:
				_log.warning("STORE_SKIP unreadable entry %s: %s", entry.name, exc)
				continue
			if record is not None:
				found.append(record)
		return found

	@staticmethod
	def time_until_expiry(record: CertificateRecord, now: Optional[datetime] = None) -> timedelta:
		"""Remaining validity; negative once the certificate has expired."""
		return record.expires_at - (now or utcnow())

	# ------------------------------------------------------------------
	# Write
	# ------------------------------------------------------------------

	def put(self, record: CertificateRecord) -> None:
		"""Persist ``record``, superseding any previous one for the same primary.

		Returns only after the new version and the live link are on disk.

		Raises:
			StoreError: Nothing was superseded; the previous record stays live.
		"""
		primary = record.domain_set.primary
		version = utcnow().strftime("%Y%m%dT%H%M%S%fZ")
		version_dir = self.archive_dir / primary / version
		try:
			version_dir.mkdir(parents=True, exist_ok=False)
			blocks = split_pem_chain(record.certificate_chain)
			atomic_write_bytes(version_dir / _FULLCHAIN, record.certificate_chain, mode=0o644)
			atomic_write_bytes(version_dir / _PRIVKEY, record.private_key, mode=0o600)
			if blocks:
				atomic_write_bytes(version_dir / _CERT, blocks[0] + b"\n", mode=0o644)
			if len(blocks) >= 2:
				atomic_write_bytes(version_dir / _CHAIN, b"\n".join(blocks[1:]) + b"\n", mode=0o644)
			atomic_write_text(
				version_dir / _META,
				json.dumps(
					{
						"names": list(record.domain_set.names),
						"issued_at": isoformat_utc(record.issued_at),
						"expires_at": isoformat_utc(record.expires_at),
						"issuer_account_ref": record.issuer_account_ref,
						"stored_at": isoformat_utc(utcnow()),
					},
					indent=2,
				),
				mode=0o644,
			)
			fsync_dir(version_dir.parent)
			self._swap_live(primary, version_dir)
		except OSError as exc:
			raise StoreError(f"Failed to store certificate for {primary}: {exc}") from exc

		_log.info(
			"STORE_PUT domains=%s expires=%s version=%s",
			record.domain_set, isoformat_utc(record.expires_at), version,
		)
		self._prune(primary)

	def _swap_live(self, primary: str, target: Path) -> None:
		self.live_dir.mkdir(parents=True, exist_ok=True)
		link = self.live_dir / primary
		if link.exists() and not link.is_symlink():
			raise OSError(f"{link} is a regular directory, refusing to replace it")
		tmp_link = self.live_dir / f".{primary}.{uuid.uuid4().hex}.tmp"
		os.symlink(os.path.relpath(target, self.live_dir), tmp_link)
		try:
			os.replace(tmp_link, link)
		finally:
			with contextlib.suppress(FileNotFoundError):
				if tmp_link.is_symlink():
					tmp_link.unlink()
		fsync_dir(self.live_dir)

	def _prune(self, primary: str) -> None:
		"""Drop archived versions beyond ``keep_versions`` (never the live one)."""
		base = self.archive_dir / primary
		link = self.live_dir / primary
		try:
			live_target = link.resolve() if link.is_symlink() else None
			versions = sorted((p for p in base.iterdir() if p.is_dir()), reverse=True)
		except OSError as exc:
			_log.warning("STORE_PRUNE failed to list %s: %s", base, exc)
			return
		for old in versions[self.keep_versions:]:
			if live_target is not None and old.resolve() == live_target:
				continue
			try:
				shutil.rmtree(old)
				_log.debug("STORE_PRUNE removed %s", old)
			except OSError as exc:
				_log.warning("STORE_PRUNE failed to remove %s: %s", old, exc)

	# ------------------------------------------------------------------
	# Cross-process lock
	# ------------------------------------------------------------------

	@contextlib.contextmanager
	def lock(self, domain_set: DomainSet) -> Iterator[bool]:
		"""Try to take the orchestration lock for ``domain_set`` without blocking.

		Yields True when acquired, False when another process holds it. The
		file object stays referenced for the whole block; closing it would
		release the ``flock``.
		"""
		lock_file = self.lock_dir / f"{domain_set.primary}.lock"
		try:
			self.lock_dir.mkdir(parents=True, exist_ok=True)
			fd_obj = open(lock_file, "a+")
		except OSError as exc:
			raise StoreError(f"Cannot open lock file {lock_file}: {exc}") from exc
		try:
			try:
				fcntl.flock(fd_obj.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
			except OSError:
				yield False
				return
			try:
				fd_obj.seek(0)
				fd_obj.truncate()
				fd_obj.write(f"{os.getpid()}\n")
				fd_obj.flush()
				yield True
			finally:
				fcntl.flock(fd_obj.fileno(), fcntl.LOCK_UN)
		finally:
			fd_obj.close()
