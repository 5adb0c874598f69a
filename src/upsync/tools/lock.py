"""Single-flight guard so two sync passes never mutate the downstream tree at once."""

from __future__ import annotations

import json
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..errors import ErrorKind, SyncError


@contextmanager
def sync_lock(path: Path | str) -> Iterator[Path]:
    """Hold an exclusive lock file for the duration of the block.

    The file is created with ``O_EXCL``; an existing file means another pass
    is running (or crashed and left it behind, in which case remove it by hand).
    """
    lock_path = Path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        descriptor = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError as error:
        holder = ""
        try:
            holder = lock_path.read_text(encoding="utf-8").strip()
        except OSError:
            pass
        raise SyncError(
            f"Another sync pass holds the lock at {lock_path}",
            kind=ErrorKind.LOCKED,
            details={"path": lock_path, "holder": holder},
        ) from error

    try:
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            json.dump({"pid": os.getpid(), "acquired_at": time.time()}, handle)
        yield lock_path
    finally:
        lock_path.unlink(missing_ok=True)


__all__ = ["sync_lock"]
