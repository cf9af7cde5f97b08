"""Atomic file writes shared by the plan store, the workspace registry and lock files."""

import os
import tempfile
from pathlib import Path


def write_atomic(path: Path, content: str) -> None:
	"""Write content via a temp file in the same directory and rename it into place."""
	path = Path(path)
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
	try:
		with os.fdopen(fd, "w", encoding="utf-8") as f:
			f.write(content)
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp_name, path)
	except BaseException:
		if os.path.exists(tmp_name):
			os.unlink(tmp_name)
		raise


def write_exclusive(path: Path, content: str) -> bool:
	"""
	Create path with content only if it does not exist yet.

	The content is written to a temp file first and hard-linked into place,
	so other readers never see the file empty or partially written.

	Returns:
		False if path already existed
	"""
	path = Path(path)
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
	try:
		with os.fdopen(fd, "w", encoding="utf-8") as f:
			f.write(content)
			f.flush()
			os.fsync(f.fileno())
		try:
			os.link(tmp_name, path)
		except FileExistsError:
			return False
		return True
	finally:
		os.unlink(tmp_name)
