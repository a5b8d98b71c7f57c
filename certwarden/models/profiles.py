#!/usr/bin/env python3
#
# certwarden/models/profiles.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Reverse-proxy profiles: challenge-only HTTP or TLS-terminating secure."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import ClassVar, Optional, Union

from .certificates import DomainSet

MARKER_PREFIX = "# certwarden-profile: "


@dataclass(frozen=True)
class ChallengeOnly:
	"""Plain HTTP: serves the ACME webroot and proxies without TLS."""
	kind: ClassVar[str] = "challenge"
	domain_set: DomainSet

	def to_dict(self) -> dict:
		return {"kind": self.kind, "names": list(self.domain_set.names)}


@dataclass(frozen=True)
class Secure:
	"""HTTPS termination with a stored certificate.

	``fullchain`` and ``privkey`` are paths as the proxy process sees them
	(inside its container when running under compose).
	"""
	kind: ClassVar[str] = "secure"
	domain_set: DomainSet
	fullchain: str
	privkey: str

	def to_dict(self) -> dict:
		return {
			"kind": self.kind,
			"names": list(self.domain_set.names),
			"fullchain": self.fullchain,
			"privkey": self.privkey,
		}


ProxyProfile = Union[ChallengeOnly, Secure]


def profile_marker(profile: ProxyProfile) -> str:
	"""One-line comment identifying ``profile`` at the top of a rendered config."""
	return MARKER_PREFIX + json.dumps(profile.to_dict(), separators=(",", ":"), sort_keys=True)


def parse_marker(line: str) -> Optional[ProxyProfile]:
	"""Inverse of :func:`profile_marker`; None for anything unrecognised."""
	line = line.strip()
	if not line.startswith(MARKER_PREFIX):
		return None
	try:
		data = json.loads(line[len(MARKER_PREFIX):])
		domain_set = DomainSet(tuple(data["names"]))
		if data["kind"] == ChallengeOnly.kind:
			return ChallengeOnly(domain_set)
		if data["kind"] == Secure.kind:
			return Secure(domain_set, str(data["fullchain"]), str(data["privkey"]))
	except (ValueError, KeyError, TypeError):
		return None
	return None
