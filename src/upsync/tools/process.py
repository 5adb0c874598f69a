"""Run external commands with argument lists and captured, decoded output."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Tuple

from ..errors import ErrorKind, SyncError


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Exit status and decoded output of one command."""

    args: Tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def message(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or f"exit status {self.returncode}"


def run_process(
    args: Sequence[str],
    *,
    cwd: Path | str | None = None,
    timeout: float | None = None,
    input_text: str | None = None,
    errors: str = "replace",
) -> ProcessResult:
    """Execute ``args`` without a shell; a non-zero exit is returned, not raised.

    Output is decoded as UTF-8 with the ``errors`` handler; pass
    ``"surrogateescape"`` to keep undecodable bytes recoverable.
    """
    command = tuple(str(arg) for arg in args)
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            input=input_text.encode("utf-8") if input_text is not None else None,
            capture_output=True,
            text=False,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as error:
        raise SyncError(
            f"Executable not found: {command[0]}",
            kind=ErrorKind.GIT if command[0] == "git" else ErrorKind.TRANSPORT,
            details={"args": command},
        ) from error
    except subprocess.TimeoutExpired as error:
        raise SyncError(
            f"{' '.join(command)} timed out after {timeout}s",
            kind=ErrorKind.GIT if command[0] == "git" else ErrorKind.TRANSPORT,
            details={"args": command, "timeout": timeout},
        ) from error
    stdout = process.stdout.decode("utf-8", errors=errors) if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    return ProcessResult(args=command, returncode=process.returncode, stdout=stdout, stderr=stderr)


__all__ = ["ProcessResult", "run_process"]
