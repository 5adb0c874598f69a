"""Parse unified diffs into per-file change records."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from .errors import ErrorKind, SyncError

NULL_PATH = "/dev/null"
_NULL_SENTINELS = {"/dev/null", "dev/null", ""}
_HEADER_PREFIX = "diff --git "
_HUNK_HEADER = re.compile(r"^@@ -\d+(?:,\d+)? \+\d+(?:,\d+)? @@")
_C_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
    "\\": "\\",
    '"': '"',
}


class ChangeOperation(str, Enum):
    """Kind of change a diff section describes."""

    NEW = "new"
    DELETED = "deleted"
    MODIFIED = "modified"
    RENAMED = "renamed"


@dataclass(frozen=True, slots=True)
class FileChange:
    """One file touched by a diff."""

    path: str
    operation: ChangeOperation
    source_path: str
    dest_path: str
    content_lines: tuple[str, ...] = ()
    binary: bool = False

    @property
    def content(self) -> str:
        return "\n".join(self.content_lines)

    @property
    def added_lines(self) -> int:
        return sum(1 for line in self.content_lines if line.startswith("+"))

    @property
    def removed_lines(self) -> int:
        return sum(1 for line in self.content_lines if line.startswith("-"))


@dataclass(slots=True)
class _SectionState:
    source: str
    dest: str
    new_file: bool = False
    deleted_file: bool = False
    binary: bool = False
    in_hunk: bool = False
    provisional: bool = False
    lines: list[str] = field(default_factory=list)

    def build(self) -> FileChange:
        source_null = self.source in _NULL_SENTINELS
        dest_null = self.dest in _NULL_SENTINELS
        if self.new_file or (source_null and not dest_null):
            operation = ChangeOperation.NEW
            path = self.dest
        elif self.deleted_file or (dest_null and not source_null):
            operation = ChangeOperation.DELETED
            path = self.source if not source_null else self.dest
        elif self.source != self.dest:
            operation = ChangeOperation.RENAMED
            path = self.dest
        else:
            operation = ChangeOperation.MODIFIED
            path = self.dest
        return FileChange(
            path=path,
            operation=operation,
            source_path=NULL_PATH if source_null else self.source,
            dest_path=NULL_PATH if dest_null else self.dest,
            content_lines=tuple(self.lines),
            binary=self.binary,
        )


def _decode(diff_text: str | bytes) -> str:
    if isinstance(diff_text, bytes):
        try:
            diff_text = diff_text.decode("utf-8")
        except UnicodeDecodeError as error:
            raise SyncError(
                "Diff input is not valid UTF-8 text.",
                kind=ErrorKind.PARSE,
                details={"position": error.start},
            ) from error
    if not isinstance(diff_text, str):
        raise SyncError(
            f"Diff input must be text, got {type(diff_text).__name__}.",
            kind=ErrorKind.PARSE,
        )
    if "\x00" in diff_text:
        raise SyncError(
            "Diff input contains NUL bytes and cannot be treated as text.",
            kind=ErrorKind.PARSE,
            details={"position": diff_text.index("\x00")},
        )
    return diff_text.replace("\r\n", "\n")


def _read_quoted(text: str, start: int) -> tuple[str, int] | None:
    """Read a C-style quoted string beginning at ``text[start] == '"'``."""
    chars: list[str] = []
    index = start + 1
    while index < len(text):
        char = text[index]
        if char == '"':
            return "".join(chars), index + 1
        if char == "\\" and index + 1 < len(text):
            follower = text[index + 1]
            if follower in _C_ESCAPES:
                chars.append(_C_ESCAPES[follower])
                index += 2
                continue
            octal = re.match(r"[0-7]{3}", text[index + 1 : index + 4])
            if octal:
                chars.append(chr(int(octal.group(0), 8)))
                index += 4
                continue
        chars.append(char)
        index += 1
    return None


def _octal_bytes_to_text(value: str) -> str:
    # git quotes non-ASCII paths byte by byte; reassemble them as UTF-8.
    try:
        return value.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return value


def _read_operand(text: str, start: int, prefix: str) -> tuple[str, int] | None:
    """Read one header operand (``a/path`` style) starting at ``start``."""
    if text.startswith('"', start):
        quoted = _read_quoted(text, start)
        if quoted is None:
            return None
        value, end = quoted
        value = _octal_bytes_to_text(value)
        return _strip_prefix(value, prefix), end
    if text.startswith(prefix + '"', start):
        quoted = _read_quoted(text, start + len(prefix))
        if quoted is None:
            return None
        value, end = quoted
        return _octal_bytes_to_text(value), end
    end = text.find(" ", start)
    if end == -1:
        end = len(text)
    token = text[start:end]
    if not token:
        return None
    return _strip_prefix(token, prefix), end


def _strip_prefix(value: str, prefix: str) -> str:
    if value == NULL_PATH:
        return value
    if value.startswith(prefix):
        return value[len(prefix) :]
    return value


def parse_header(line: str) -> tuple[str, str] | None:
    """Return ``(source, dest)`` paths from a ``diff --git`` line, or ``None``."""
    if not line.startswith(_HEADER_PREFIX):
        return None
    remainder = line[len(_HEADER_PREFIX) :].rstrip()

    # Unquoted paths that contain spaces: git writes identical halves.
    if remainder.startswith("a/") and not remainder.startswith('a/"'):
        middle = len(remainder) // 2
        if remainder[middle : middle + 3] == " b/" and remainder[2:middle] == remainder[middle + 3 :]:
            path = remainder[2:middle]
            return path, path

    first = _read_operand(remainder, 0, "a/")
    if first is None:
        return None
    source, end = first
    if end >= len(remainder) or remainder[end] != " ":
        return None
    second = _read_operand(remainder, end + 1, "b/")
    if second is None:
        return None
    dest, end = second
    if remainder[end:].strip():
        return None
    if not source and not dest:
        return None
    return source, dest


def _unquote(raw: str) -> str:
    if raw.startswith('"'):
        quoted = _read_quoted(raw, 0)
        if quoted is not None:
            return _octal_bytes_to_text(quoted[0])
    return raw


def _marker_path(line: str) -> str:
    return _unquote(line[4:].split("\t", 1)[0].strip())


def parse_diff(diff_text: str | bytes) -> dict[str, FileChange]:
    """Parse ``diff_text`` into an ordered mapping of path to :class:`FileChange`.

    Sections whose header cannot be understood are skipped rather than
    aborting the parse. Only undecodable input raises ``SyncError(PARSE)``.
    """
    text = _decode(diff_text)
    changes: dict[str, FileChange] = {}
    current: _SectionState | None = None

    def flush() -> None:
        if current is None:
            return
        change = current.build()
        if change.path in _NULL_SENTINELS:
            return
        changes[change.path] = change

    for line in text.split("\n"):
        if line.startswith(_HEADER_PREFIX):
            flush()
            parsed = parse_header(line)
            if parsed is not None:
                current = _SectionState(source=parsed[0], dest=parsed[1])
            else:
                # Ambiguous header, e.g. an unquoted rename with spaces. The
                # rename or marker lines that follow may still name the paths.
                current = _SectionState(source="", dest="", provisional=True)
            continue
        if current is None:
            continue

        if not current.in_hunk:
            if line.startswith("new file mode"):
                current.new_file = True
                continue
            if line.startswith("deleted file mode"):
                current.deleted_file = True
                continue
            if line.startswith("rename from "):
                current.source = _unquote(line[len("rename from ") :].strip())
                continue
            if line.startswith("rename to "):
                current.dest = _unquote(line[len("rename to ") :].strip())
                continue
            if line.startswith("Binary files ") or line.startswith("GIT binary patch"):
                current.binary = True
                continue
            if line.startswith("--- "):
                marker = _marker_path(line)
                if marker == NULL_PATH:
                    current.new_file = True
                elif current.provisional and not current.source:
                    current.source = _strip_prefix(marker, "a/")
                continue
            if line.startswith("+++ "):
                marker = _marker_path(line)
                if marker == NULL_PATH:
                    current.deleted_file = True
                elif current.provisional and not current.dest:
                    current.dest = _strip_prefix(marker, "b/")
                continue

        if _HUNK_HEADER.match(line):
            current.in_hunk = True
            continue
        if current.in_hunk and line.startswith(("+", "-", " ")):
            current.lines.append(line)

    flush()
    return changes


def destination_paths(diff_text: str | bytes) -> list[str]:
    """Return the distinct canonical paths of ``diff_text`` in header order."""
    return list(parse_diff(diff_text))


__all__ = [
    "ChangeOperation",
    "FileChange",
    "NULL_PATH",
    "destination_paths",
    "parse_diff",
    "parse_header",
]
