#!/usr/bin/env python3
#
# certwarden/utils/files.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Durable file writes: temp file + fsync + rename + directory fsync."""

from __future__ import annotations

import contextlib
import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import IO

__all__ = [
	"atomic_write",
	"atomic_write_bytes",
	"atomic_write_text",
	"fsync_dir",
]


def fsync_dir(path: Path) -> None:
	"""Flush a directory entry so a completed rename survives a crash."""
	dir_fd = os.open(str(path), os.O_RDONLY)
	try:
		os.fsync(dir_fd)
	finally:
		os.close(dir_fd)


@contextlib.contextmanager
def atomic_write(path: Path, *, mode: int | None = None) -> Generator[IO[bytes], None, None]:
	"""Yield a binary handle; on clean exit the data replaces ``path`` atomically.

	Readers see either the old file or the complete new one. The temp file
	lives next to the target so ``os.replace`` stays on one filesystem.

	Args:
		path: Target file.
		mode: Optional permission bits applied before the rename, so a
			private key is never visible with default permissions.
	"""
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_path = tempfile.mkstemp(
		dir=str(path.parent),
		prefix=f".{path.name}.",
		suffix=".tmp",
	)
	try:
		if mode is not None:
			os.fchmod(fd, mode)
		with os.fdopen(fd, "wb") as f:
			yield f
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp_path, path)
		fsync_dir(path.parent)
	finally:
		with contextlib.suppress(OSError):
			if os.path.exists(tmp_path):
				os.unlink(tmp_path)


def atomic_write_bytes(path: Path, data: bytes, *, mode: int | None = None) -> None:
	"""Atomically write bytes to ``path``."""
	with atomic_write(path, mode=mode) as f:
		f.write(data)


def atomic_write_text(path: Path, content: str, *, mode: int | None = None) -> None:
	"""Atomically write UTF-8 text to ``path``."""
	atomic_write_bytes(path, content.encode("utf-8"), mode=mode)
