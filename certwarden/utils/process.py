#!/usr/bin/env python3
#
# certwarden/utils/process.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Bounded subprocess execution for docker, nginx and certbot calls."""

from __future__ import annotations

import asyncio
import contextlib
import logging

_log = logging.getLogger(__name__)

EXEC_TIMEOUT = 30.0  # seconds

__all__ = ["EXEC_TIMEOUT", "run_exec"]


async def run_exec(*cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
	"""Run a command and return ``(code, stdout, stderr)``. Uses exec, not shell.

	Never raises for command failures: a missing binary or a timeout is
	reported as code ``-1`` with the reason in stderr, so callers branch on
	the exit code the same way for every failure mode.
	"""
	proc: asyncio.subprocess.Process | None = None
	try:
		proc = await asyncio.create_subprocess_exec(
			*cmd,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
		)
		stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
		code = proc.returncode
		assert code is not None, "returncode should be set after communicate()"
		return code, stdout.decode(errors="replace"), stderr.decode(errors="replace")
	except asyncio.TimeoutError:
		_log.warning("EXEC_TIMEOUT command timed out after %.1fs: %s", timeout, cmd[:3])
		return -1, "", f"Command timed out after {timeout}s"
	except OSError as exc:
		_log.warning("EXEC_ERROR command failed: %s – %s", cmd[:3], exc)
		return -1, "", str(exc)
	finally:
		if proc is not None and proc.returncode is None:
			with contextlib.suppress(ProcessLookupError):
				proc.kill()
				await proc.wait()
