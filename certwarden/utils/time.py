#!/usr/bin/env python3
#
# certwarden/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time helpers shared by the store, CA clients and API."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
	"""Return the current UTC time as a timezone-aware datetime."""
	return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
	"""Convert an aware datetime to UTC.

	Raises:
		ValueError: If the datetime is naive. Certificate validity windows
			are always compared in UTC; a naive value is a programming error.
	"""
	if dt.tzinfo is None:
		raise ValueError("Naive datetime not allowed - must be timezone-aware")
	return dt.astimezone(timezone.utc)


def parse_utc(s: str) -> Optional[datetime]:
	"""Parse an ISO-8601 timestamp (``Z`` or offset notation) to UTC.

	Returns None for empty, unparseable or naive timestamps.
	"""
	if not s:
		return None
	try:
		if s.endswith("Z"):
			s = s[:-1] + "+00:00"
		dt = datetime.fromisoformat(s)
	except (ValueError, TypeError):
		return None
	if dt.tzinfo is None:
		return None
	return dt.astimezone(timezone.utc)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
	"""Serialize an aware datetime as ISO-8601 UTC (None passes through)."""
	if dt is None:
		return None
	return ensure_utc(dt).isoformat()


def humanize_delta(delta: timedelta) -> str:
	"""Short human form for log lines, e.g. ``29d 4h`` or ``-2h 10m``."""
	total = int(delta.total_seconds())
	sign = "-" if total < 0 else ""
	total = abs(total)
	days, rem = divmod(total, 86400)
	hours, rem = divmod(rem, 3600)
	minutes = rem // 60
	if days:
		return f"{sign}{days}d {hours}h"
	if hours:
		return f"{sign}{hours}h {minutes}m"
	return f"{sign}{minutes}m"
