from __future__ import annotations

import textwrap

import pytest

from upsync.errors import ErrorKind, SyncError
from upsync.validate import (
    DEFAULT_DESCRIPTION,
    DEFAULT_TITLE,
    check_and_normalise,
    check_patch_structure,
    extract_patch,
    normalise_hunks,
    parse_response,
    trim_dangling_hunks,
    validate_patch,
)

GOOD_PATCH = textwrap.dedent(
    """\
    diff --git a/app.py b/app.py
    --- a/app.py
    +++ b/app.py
    @@ -1 +1 @@
    -print("hi")
    +print("hello")
    """
)

UPSTREAM_DIFF = textwrap.dedent(
    """\
    diff --git a/app.py b/app.py
    index 1111111..2222222 100644
    --- a/app.py
    +++ b/app.py
    @@ -1 +1 @@
    -print("hi")
    +print("hey")
    """
)


def test_parse_response_splits_title_description_and_patch() -> None:
    raw = (
        "---\n"
        "TITLE: Sync greeting\n"
        "---\n"
        "DESCRIPTION: Updates the greeting.\n\nKeeps local tweaks.\n"
        "---\n"
        "PATCH:\n"
        "```diff\n"
        f"{GOOD_PATCH}"
        "```\n"
        "---\n"
    )

    parsed = parse_response(raw)

    assert parsed.title == "Sync greeting"
    assert parsed.description == "Updates the greeting.\n\nKeeps local tweaks."
    assert parsed.patch_text == GOOD_PATCH.rstrip("\n")
    assert not parsed.used_fallback


def test_parse_response_defaults_when_sections_are_missing() -> None:
    parsed = parse_response("I could not produce a patch.")

    assert parsed.title == DEFAULT_TITLE
    assert parsed.description == DEFAULT_DESCRIPTION
    assert parsed.patch_text == ""


def test_extract_patch_finds_fenced_block_without_label() -> None:
    raw = f"Here is the change:\n\n```diff\n{GOOD_PATCH}```\n\nLet me know."

    assert extract_patch(raw) == GOOD_PATCH.rstrip("\n")


def test_extract_patch_finds_bare_diff_and_drops_emphasis_lines() -> None:
    raw = "Summary first.\n" + GOOD_PATCH + "***End of patch***\n---\n"

    assert extract_patch(raw) == GOOD_PATCH.rstrip("\n")


def test_trim_dangling_hunks_drops_headers_without_body() -> None:
    patch = GOOD_PATCH + "@@ -9 +9 @@\n\n"

    assert trim_dangling_hunks(patch) == GOOD_PATCH.rstrip("\n") + "\n"


def test_normalise_hunks_rewrites_wrong_counts() -> None:
    patch = textwrap.dedent(
        """\
        diff --git a/notes.txt b/notes.txt
        --- a/notes.txt
        +++ b/notes.txt
        @@ -1,3 +1,3 @@ section
         a
        -b
        +c
        """
    )

    fixed, adjustments, problems = normalise_hunks(patch)

    assert "@@ -1,2 +1,2 @@ section" in fixed.splitlines()
    assert problems == []
    assert len(adjustments) == 1
    assert "b/notes.txt" in adjustments[0]


def test_normalise_hunks_reports_malformed_header() -> None:
    patch = "diff --git a/x b/x\n--- a/x\n+++ b/x\n@@ bogus @@\n-a\n+b\n"

    _, _, problems = normalise_hunks(patch)

    assert problems == ["b/x: malformed hunk header: @@ bogus @@"]


def test_structure_check_lists_problems() -> None:
    problems = check_patch_structure("just prose")

    assert "missing 'diff --git' header" in problems
    assert "missing '---'/'+++' file markers" in problems
    assert check_patch_structure(GOOD_PATCH) == []


def test_usable_patch_is_returned_normalised() -> None:
    validation = check_and_normalise(GOOD_PATCH.rstrip("\n"), UPSTREAM_DIFF)

    assert not validation.used_fallback
    assert validation.patch_text == GOOD_PATCH
    assert validation.problems == []


def test_patch_missing_new_file_marker_falls_back_to_upstream_diff() -> None:
    broken = 'diff --git a/app.py b/app.py\n--- a/app.py\n@@ -1 +1 @@\n-print("hi")\n+print("hello")\n'

    validation = check_and_normalise(broken, UPSTREAM_DIFF)

    assert validation.used_fallback
    assert validation.patch_text == UPSTREAM_DIFF
    assert "missing '---'/'+++' file markers" in validation.problems


def test_empty_patch_falls_back() -> None:
    assert validate_patch("", UPSTREAM_DIFF) == UPSTREAM_DIFF


def test_unusable_patch_without_fallback_raises() -> None:
    with pytest.raises(SyncError) as excinfo:
        check_and_normalise("not a patch", "")

    assert excinfo.value.kind is ErrorKind.NO_USABLE_PATCH
    assert excinfo.value.details["problems"]


def test_fallback_must_itself_look_like_a_diff() -> None:
    with pytest.raises(SyncError) as excinfo:
        check_and_normalise("", "some text without headers")

    assert excinfo.value.kind is ErrorKind.NO_USABLE_PATCH


def test_short_patch_is_rejected_by_min_lines() -> None:
    validation = check_and_normalise(GOOD_PATCH, UPSTREAM_DIFF, min_lines=20)

    assert validation.used_fallback


MARKDOWN_PATCH = (
    "diff --git a/README.md b/README.md\n"
    "--- a/README.md\n"
    "+++ b/README.md\n"
    "@@ -1,5 +1,5 @@\n"
    " Usage:\n"
    " ```\n"
    "-run old\n"
    "+run new\n"
    " ```\n"
    " Done.\n"
    "diff --git a/src/app.py b/src/app.py\n"
    "--- a/src/app.py\n"
    "+++ b/src/app.py\n"
    "@@ -1 +1 @@\n"
    "-x = 1\n"
    "+x = 2\n"
)


def test_markdown_fence_in_context_does_not_end_the_patch() -> None:
    validation = check_and_normalise(MARKDOWN_PATCH, MARKDOWN_PATCH)

    assert not validation.used_fallback
    assert validation.adjustments == []
    assert validation.patch_text == MARKDOWN_PATCH


def test_fenced_response_keeps_every_file_after_markdown_context() -> None:
    raw = f"TITLE: Docs\nDESCRIPTION: Both files.\nPATCH:\n```diff\n{MARKDOWN_PATCH}```\nThat is all.\n"

    assert parse_response(raw).patch_text == MARKDOWN_PATCH.rstrip("\n")
    assert extract_patch(f"Change:\n```diff\n{MARKDOWN_PATCH}```\n") == MARKDOWN_PATCH.rstrip("\n")
