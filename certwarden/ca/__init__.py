#!/usr/bin/env python3
#
# certwarden/ca/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate authority backends."""

from .acme import AcmeCertificateAuthority
from .base import (
	ACME_CHALLENGE_PATH,
	CaError,
	CertificateAuthority,
	InvalidRequestError,
	RateLimitedError,
	TransientCaError,
	ValidationFailedError,
	challenge_dir,
)
from .certbot import CertbotCertificateAuthority

__all__ = [
	"ACME_CHALLENGE_PATH",
	"AcmeCertificateAuthority",
	"CaError",
	"CertbotCertificateAuthority",
	"CertificateAuthority",
	"InvalidRequestError",
	"RateLimitedError",
	"TransientCaError",
	"ValidationFailedError",
	"challenge_dir",
]
