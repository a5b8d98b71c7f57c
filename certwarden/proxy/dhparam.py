#!/usr/bin/env python3
#
# certwarden/proxy/dhparam.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Diffie-Hellman parameters for the TLS servers (``ssl_dhparam``)."""

from __future__ import annotations

import logging
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dh

from ..utils.files import atomic_write_bytes

_log = logging.getLogger(__name__)

__all__ = ["DEFAULT_DHPARAM_BITS", "ensure_dhparam"]

DEFAULT_DHPARAM_BITS = 2048


def _is_valid(path: Path) -> bool:
	try:
		serialization.load_pem_parameters(path.read_bytes())
	except (OSError, ValueError):
		return False
	return True


def ensure_dhparam(path: Path, key_size: int = DEFAULT_DHPARAM_BITS) -> bool:
	"""Generate DH parameters at ``path`` unless a readable file is already there.

	Generation is CPU-bound (tens of seconds for 2048 bits); run it in a
	worker thread from async code.

	Returns:
		True if new parameters were written, False if the existing file was kept.
	"""
	if path.exists() and _is_valid(path):
		return False
	if path.exists():
		_log.warning("DHPARAM %s is unreadable, regenerating", path)

	_log.info("DHPARAM generating %d-bit parameters at %s", key_size, path)
	params = dh.generate_parameters(generator=2, key_size=key_size)
	pem = params.parameter_bytes(serialization.Encoding.PEM, serialization.ParameterFormat.PKCS3)
	atomic_write_bytes(path, pem, mode=0o644)
	_log.info("DHPARAM written to %s", path)
	return True
