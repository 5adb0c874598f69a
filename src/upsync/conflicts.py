"""Deterministic per-file conflict resolution for direct (non-generated) sync."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .diff import ChangeOperation, FileChange
from .errors import ErrorKind, SyncError

MERGE_BANNER = "\n\n<!-- ===== MERGED FROM UPSTREAM ===== -->\n"


def read_file_text(path: Path) -> str:
    """Decode ``path`` as UTF-8, keeping undecodable bytes and line endings intact."""
    return path.read_bytes().decode("utf-8", errors="surrogateescape")


def write_file_text(path: Path, content: str) -> None:
    """Inverse of :func:`read_file_text`."""
    path.write_bytes(content.encode("utf-8", errors="surrogateescape"))


class ConflictStrategy(str, Enum):
    OVERWRITE = "overwrite"
    KEEP = "keep"
    BACKUP = "backup"
    MERGE = "merge"

    @classmethod
    def parse(cls, value: "str | ConflictStrategy") -> "ConflictStrategy":
        """Look up a strategy by name; unknown names are an error, never a default."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as error:
            raise SyncError(
                f"Unknown conflict strategy: {value!r}",
                kind=ErrorKind.UNKNOWN_STRATEGY,
                details={"strategy": value, "allowed": [member.value for member in cls]},
            ) from error


@dataclass(frozen=True, slots=True)
class ConflictDecision:
    """What to write for one path, and whether a backup must be written first."""

    path: str
    strategy: ConflictStrategy
    result_content: Optional[str]
    has_conflict: bool
    write_required: bool
    backup_path: Optional[str] = None
    backup_content: Optional[str] = None


class ConflictResolver:
    """Pure decision logic; the only impure input is the injectable clock used for backup names."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def backup_path_for(self, path: str) -> str:
        return f"{path}.backup.{int(self._clock() * 1000)}"

    def resolve(
        self,
        path: str,
        existing: Optional[str],
        incoming: str,
        strategy: "str | ConflictStrategy",
    ) -> ConflictDecision:
        chosen = ConflictStrategy.parse(strategy)

        if existing is None or existing == incoming:
            return ConflictDecision(
                path=path,
                strategy=chosen,
                result_content=incoming,
                has_conflict=False,
                write_required=existing is None,
            )

        if chosen is ConflictStrategy.KEEP:
            return ConflictDecision(
                path=path,
                strategy=chosen,
                result_content=existing,
                has_conflict=True,
                write_required=False,
            )
        if chosen is ConflictStrategy.BACKUP:
            return ConflictDecision(
                path=path,
                strategy=chosen,
                result_content=incoming,
                has_conflict=True,
                write_required=True,
                backup_path=self.backup_path_for(path),
                backup_content=existing,
            )
        if chosen is ConflictStrategy.MERGE:
            return ConflictDecision(
                path=path,
                strategy=chosen,
                result_content=existing + MERGE_BANNER + incoming,
                has_conflict=True,
                write_required=True,
            )
        return ConflictDecision(
            path=path,
            strategy=chosen,
            result_content=incoming,
            has_conflict=True,
            write_required=True,
        )


@dataclass(frozen=True, slots=True)
class DirectSyncResult:
    path: str
    action: str
    decision: Optional[ConflictDecision] = None


class DirectSync:
    """Write upstream file contents into a downstream working tree."""

    def __init__(
        self,
        root: Path | str,
        resolver: ConflictResolver,
        strategy: "str | ConflictStrategy" = ConflictStrategy.OVERWRITE,
        *,
        dry_run: bool = False,
    ) -> None:
        self.root = Path(root).resolve()
        self.resolver = resolver
        self.strategy = ConflictStrategy.parse(strategy)
        self.dry_run = dry_run

    def _target(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise SyncError(
                f"Path escapes the repository: {path}",
                kind=ErrorKind.PARSE,
                details={"path": path, "root": self.root},
            )
        return target

    def _read(self, path: str) -> Optional[str]:
        target = self._target(path)
        if not target.is_file():
            return None
        return read_file_text(target)

    def _write(self, path: str, content: str) -> None:
        target = self._target(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        write_file_text(target, content)

    def _remove(self, path: str) -> bool:
        target = self._target(path)
        if not target.exists():
            return False
        if not self.dry_run:
            target.unlink()
        return True

    def write_file(self, path: str, incoming: str) -> DirectSyncResult:
        """Resolve ``incoming`` against the current content of ``path`` and write the result."""
        decision = self.resolver.resolve(path, self._read(path), incoming, self.strategy)
        if not decision.write_required:
            action = "kept" if decision.has_conflict else "unchanged"
            return DirectSyncResult(path=path, action=action, decision=decision)
        if not self.dry_run:
            if decision.backup_path is not None and decision.backup_content is not None:
                self._write(decision.backup_path, decision.backup_content)
            self._write(path, decision.result_content or "")
        action = decision.strategy.value if decision.has_conflict else "created"
        return DirectSyncResult(path=path, action=action, decision=decision)

    def apply_change(self, change: FileChange, incoming: Optional[str]) -> DirectSyncResult:
        """Apply one parsed change; ``incoming`` is the upstream content after the change."""
        if change.operation is ChangeOperation.DELETED:
            removed = self._remove(change.path)
            return DirectSyncResult(path=change.path, action="deleted" if removed else "already-absent")

        if incoming is None:
            raise SyncError(
                f"No upstream content for {change.path}",
                kind=ErrorKind.PARSE,
                details={"path": change.path, "operation": change.operation},
            )

        result = self.write_file(change.path, incoming)
        renamed = change.operation is ChangeOperation.RENAMED
        if renamed and change.source_path and change.source_path != change.path:
            self._remove(change.source_path)
        return result


__all__ = [
    "ConflictDecision",
    "ConflictResolver",
    "ConflictStrategy",
    "DirectSync",
    "DirectSyncResult",
    "MERGE_BANNER",
    "read_file_text",
    "write_file_text",
]
