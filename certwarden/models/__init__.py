#!/usr/bin/env python3
#
# certwarden/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Data model for CertWarden."""

from .certificates import (
	CertificateRecord,
	DomainSet,
)
from .profiles import (
	ChallengeOnly,
	ProxyProfile,
	Secure,
)
from .state import (
	Failure,
	FailureReason,
	OrchestratorState,
	StateTransition,
	TickResult,
)

__all__ = [
	# Certificates
	"CertificateRecord",
	"DomainSet",
	# Proxy profiles
	"ChallengeOnly",
	"ProxyProfile",
	"Secure",
	# Orchestrator
	"Failure",
	"FailureReason",
	"OrchestratorState",
	"StateTransition",
	"TickResult",
]
