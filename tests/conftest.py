from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Callable, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from upsync.tools.vcs import GitRepository  # noqa: E402


def write_files(root: Path, files: Mapping[str, str]) -> None:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def init_repo(root: Path, files: Mapping[str, str] | None = None, *, branch: str = "main") -> GitRepository:
    """Create a git repository at ``root`` with one commit holding ``files``."""

    root.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=root, check=True, capture_output=True)
    repo = GitRepository(root)
    repo.git("symbolic-ref", "HEAD", f"refs/heads/{branch}")
    repo.git("config", "user.email", "sync@example.com")
    repo.git("config", "user.name", "Sync Bot")
    repo.git("config", "commit.gpgsign", "false")
    write_files(root, files or {"README.md": "readme\n"})
    repo.git("add", "--all")
    repo.git("commit", "-m", "init")
    return repo


def commit_files(repo: GitRepository, message: str, files: Mapping[str, str], *, delete: tuple[str, ...] = ()) -> str:
    write_files(repo.root, files)
    for relative in delete:
        (repo.root / relative).unlink()
    repo.git("add", "--all")
    repo.git("commit", "-m", message)
    return repo.git("rev-parse", "HEAD").stdout.strip()


@pytest.fixture(autouse=True)
def _git_identity(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    """Give git a fallback identity so commits in cloned repos work on bare hosts."""

    config = tmp_path_factory.mktemp("gitconfig") / "config"
    config.write_text("[user]\n\temail = sync@example.com\n\tname = Sync Bot\n", encoding="utf-8")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(config))


@pytest.fixture()
def make_repo(tmp_path: Path) -> Callable[..., GitRepository]:
    def factory(name: str = "repo", files: Mapping[str, str] | None = None) -> GitRepository:
        return init_repo(tmp_path / name, files)

    return factory


@pytest.fixture()
def commit() -> Callable[..., str]:
    return commit_files
