"""Pluggable classifiers for repeated-content file families."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Protocol, Sequence

from .config import FamilyConfig


@dataclass(frozen=True, slots=True)
class FamilyMember:
    """Where a path sits inside a file family."""

    family: str
    key: str
    variant: str
    canonical: bool


class FileFamily(Protocol):
    """Classifier that recognises interchangeable variants of the same resource."""

    name: str

    def classify(self, path: str) -> FamilyMember | None:
        ...


class PatternFamily:
    """Family described by a regular expression with a ``variant`` group.

    Files share a family instance when everything before the variant is
    identical, e.g. ``web/lang/front/en.json`` and ``web/lang/front/de.json``.
    """

    def __init__(self, name: str, pattern: str, canonical: str = "") -> None:
        self.name = name
        self.canonical = canonical
        self._pattern = re.compile(pattern)

    @classmethod
    def from_config(cls, config: FamilyConfig) -> "PatternFamily":
        return cls(config.name, config.pattern, config.canonical)

    def classify(self, path: str) -> FamilyMember | None:
        match = self._pattern.search(path)
        if match is None:
            return None
        variant = match.group("variant")
        prefix = path[: match.start("variant")]
        return FamilyMember(
            family=self.name,
            key=f"{self.name}:{prefix}",
            variant=variant,
            canonical=bool(self.canonical) and variant == self.canonical,
        )

    def __repr__(self) -> str:
        return f"PatternFamily({self.name!r}, {self._pattern.pattern!r})"


def build_families(configs: Iterable[FamilyConfig]) -> List[FileFamily]:
    return [PatternFamily.from_config(config) for config in configs]


def classify(path: str, families: Sequence[FileFamily]) -> FamilyMember | None:
    """Return the first family membership for ``path``."""
    for family in families:
        member = family.classify(path)
        if member is not None:
            return member
    return None


def representative_order(member: FamilyMember, path: str) -> tuple[int, str, str]:
    """Sort key: canonical variant first, then lexicographic."""
    return (0 if member.canonical else 1, member.variant, path)


__all__ = [
    "FamilyMember",
    "FileFamily",
    "PatternFamily",
    "build_families",
    "classify",
    "representative_order",
]
