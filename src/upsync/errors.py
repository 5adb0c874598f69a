"""Single tagged error type raised across the sync pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

from .telemetry import serialise_value


class ErrorKind(str, Enum):
    """Categories of failure surfaced by the pipeline."""

    PARSE = "parse"
    BUDGET_EXCEEDED = "budget_exceeded"
    NO_USABLE_PATCH = "no_usable_patch"
    PATCH_APPLY = "patch_apply"
    UNKNOWN_STRATEGY = "unknown_strategy"
    RATE_LIMIT = "rate_limit"
    GIT = "git"
    TRANSPORT = "transport"
    CONFIG = "config"
    LOCKED = "locked"


class SyncError(RuntimeError):
    """Raised when a pipeline stage fails; ``kind`` tells callers which one."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.details: dict[str, Any] = dict(details or {})

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMIT

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": str(self),
            "details": {key: serialise_value(value) for key, value in self.details.items()},
        }


__all__ = ["ErrorKind", "SyncError"]
