from __future__ import annotations

import json
import textwrap
from pathlib import Path

from typer.testing import CliRunner

from upsync.cli import app

runner = CliRunner()

DIFF = textwrap.dedent(
    """\
    diff --git a/src/a.js b/src/a.js
    new file mode 100644
    --- /dev/null
    +++ b/src/a.js
    @@ -0,0 +1 @@
    +x
    diff --git a/docs/old.md b/docs/old.md
    deleted file mode 100644
    --- a/docs/old.md
    +++ /dev/null
    @@ -1,2 +0,0 @@
    -# Old
    -gone
    """
)


def write_config(tmp_path: Path, body: str = "") -> Path:
    config_path = tmp_path / "upsync.yaml"
    config_path.write_text(
        "paths:\n  lock_file: state/upsync.lock\n  failed_patches: state/failed\n" + body,
        encoding="utf-8",
    )
    return config_path


def test_parse_lists_operations(tmp_path: Path) -> None:
    diff_file = tmp_path / "change.diff"
    diff_file.write_text(DIFF, encoding="utf-8")

    result = runner.invoke(app, ["parse", str(diff_file)], catch_exceptions=False)

    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert lines[0].split() == ["new", "src/a.js", "+1", "-0"]
    assert lines[1].split() == ["deleted", "docs/old.md", "+0", "-2"]


def test_parse_reports_undecodable_diff(tmp_path: Path) -> None:
    diff_file = tmp_path / "broken.diff"
    diff_file.write_bytes(b"diff --git a/x b/x\n\xff\n")

    result = runner.invoke(app, ["parse", str(diff_file)])

    assert result.exit_code == 1
    assert "Error (parse)" in result.output


def test_resolve_backup_writes_both_files(tmp_path: Path) -> None:
    (tmp_path / "f.txt").write_text("old", encoding="utf-8")
    incoming = tmp_path / "incoming.txt"
    incoming.write_text("new", encoding="utf-8")

    result = runner.invoke(
        app,
        ["resolve", "f.txt", "--incoming", str(incoming), "--strategy", "backup", "--repo", str(tmp_path)],
        catch_exceptions=False,
    )

    assert result.exit_code == 0
    assert "f.txt: backup" in result.output
    assert "Backup written to f.txt.backup." in result.output
    assert (tmp_path / "f.txt").read_text(encoding="utf-8") == "new"
    [backup] = tmp_path.glob("f.txt.backup.*")
    assert backup.read_text(encoding="utf-8") == "old"


def test_resolve_rejects_unknown_strategy(tmp_path: Path) -> None:
    incoming = tmp_path / "incoming.txt"
    incoming.write_text("new", encoding="utf-8")

    result = runner.invoke(
        app,
        ["resolve", "f.txt", "--incoming", str(incoming), "-s", "squash", "--repo", str(tmp_path)],
    )

    assert result.exit_code == 1
    assert "Error (unknown_strategy)" in result.output


def test_apply_reports_strategy_and_files(tmp_path: Path, make_repo) -> None:
    repo = make_repo("downstream", {"app.txt": "hello\nworld\nend\n"})
    patch_file = tmp_path / "fix.patch"
    patch_file.write_text(
        "diff --git a/app.txt b/app.txt\n--- a/app.txt\n+++ b/app.txt\n"
        "@@ -1,3 +1,3 @@\n hello\n-world\n+there\n end\n",
        encoding="utf-8",
    )
    config_path = write_config(tmp_path)

    result = runner.invoke(
        app,
        ["apply", str(patch_file), "--repo", str(repo.root), "--config", str(config_path)],
        catch_exceptions=False,
    )

    assert result.exit_code == 0
    assert "Applied with three-way: 1 file(s) changed." in result.output
    assert "- app.txt" in result.output
    assert not (tmp_path / "state" / "upsync.lock").exists()


def test_apply_failure_exits_non_zero(tmp_path: Path, make_repo) -> None:
    repo = make_repo("downstream", {"app.txt": "hello\n"})
    patch_file = tmp_path / "bad.patch"
    patch_file.write_text(
        "diff --git a/missing.txt b/missing.txt\n--- a/missing.txt\n+++ b/missing.txt\n"
        "@@ -1,2 +1,2 @@\n first\n-second\n+2nd\n",
        encoding="utf-8",
    )
    config_path = write_config(tmp_path)

    result = runner.invoke(app, ["apply", str(patch_file), "--repo", str(repo.root), "-c", str(config_path)])

    assert result.exit_code == 1
    assert "Error (patch_apply)" in result.output
    assert list((tmp_path / "state" / "failed").glob("*.error.patch"))


def test_budget_prints_selection(tmp_path: Path, make_repo, commit) -> None:
    upstream = make_repo("upstream", {"src/app.py": "x = 1\n", "lang/front/en.json": "{}\n"})
    sha = commit(
        upstream,
        "Change",
        {"src/app.py": "x = 2\n", "lang/front/en.json": '{"a": 1}\n', "lang/front/de.json": '{"a": 2}\n'},
    )
    diff_file = tmp_path / "change.diff"
    diff_file.write_text(upstream.commit_diff(sha), encoding="utf-8")
    downstream = tmp_path / "downstream"
    (downstream / "src").mkdir(parents=True)
    (downstream / "src" / "app.py").write_text("x = 1  # local\n", encoding="utf-8")

    result = runner.invoke(
        app,
        [
            "budget",
            str(diff_file),
            "--repo-a",
            str(upstream.root),
            "--repo-b",
            str(downstream),
            "--ref",
            sha,
            "--config",
            str(write_config(tmp_path)),
        ],
        catch_exceptions=False,
    )

    assert result.exit_code == 0
    summary = json.loads(result.output)
    assert summary["selected"] == ["src/app.py", "lang/front/en.json"]
    assert summary["redundant"] == ["lang/front/de.json"]


def test_sync_reports_configuration_problems(tmp_path: Path) -> None:
    config_path = write_config(tmp_path, "repo_a:\n  path: nowhere\nrepo_b:\n  path: nowhere-else\n")

    result = runner.invoke(app, ["sync", "--config", str(config_path), "--no-ai"])

    assert result.exit_code == 1
    assert "Error (git)" in result.output


def test_apply_reports_undecodable_patch(tmp_path: Path, make_repo) -> None:
    repo = make_repo("downstream", {"app.txt": "hello\n"})
    patch_file = tmp_path / "latin.patch"
    patch_file.write_bytes(b"diff --git a/app.txt b/app.txt\n+caf\xe9\n")
    config_path = write_config(tmp_path)

    result = runner.invoke(app, ["apply", str(patch_file), "--repo", str(repo.root), "-c", str(config_path)])

    assert result.exit_code == 1
    assert "Error (parse)" in result.output
    assert "not valid UTF-8" in result.output
    assert (repo.root / "app.txt").read_text(encoding="utf-8") == "hello\n"


def test_budget_reports_undecodable_diff(tmp_path: Path) -> None:
    diff_file = tmp_path / "latin.diff"
    diff_file.write_bytes(b"diff --git a/x b/x\n+caf\xe9\n")

    result = runner.invoke(
        app,
        [
            "budget",
            str(diff_file),
            "--repo-a",
            str(tmp_path),
            "--repo-b",
            str(tmp_path),
            "--config",
            str(write_config(tmp_path)),
        ],
    )

    assert result.exit_code == 1
    assert "Error (parse)" in result.output
