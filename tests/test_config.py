from __future__ import annotations

from pathlib import Path

import pytest

from upsync.config import DEFAULT_CONFIG_NAME, SyncOptions, build_config, load_config
from upsync.errors import ErrorKind, SyncError


def test_defaults_are_complete(tmp_path: Path) -> None:
    config = build_config({}, base=tmp_path, env={})

    assert config.budget.soft_token_ceiling == 180_000
    assert config.budget.hard_token_ceiling == 190_000
    assert config.budget.max_files == 10
    assert config.synthesis.max_retries == 3
    assert config.sync.conflict_strategy == "overwrite"
    assert config.paths.failed_patches == (tmp_path / "data/failed-patches").resolve()
    assert [family.name for family in config.budget.families] == ["translations"]


def test_environment_overrides_file_values(tmp_path: Path) -> None:
    config = build_config(
        {"budget": {"max_files": 3}, "sync": {"conflict_strategy": "keep"}},
        base=tmp_path,
        env={
            "UPSYNC_MAX_FILES_TO_PROCESS": "5",
            "UPSYNC_DRY_RUN": "true",
            "UPSYNC_REPO_B_PATH": "downstream",
            "UPSYNC_LOG_LEVEL": " ",
        },
    )

    assert config.budget.max_files == 5
    assert config.sync.dry_run is True
    assert config.sync.conflict_strategy == "keep"
    assert config.repo_b.path == (tmp_path / "downstream").resolve()
    assert config.logging.level == "INFO"


@pytest.mark.parametrize(
    "data",
    [
        {"budget": {"unknown_key": 1}},
        {"budget": {"soft_token_ceiling": 200, "hard_token_ceiling": 100}},
        {"sync": {"conflict_strategy": "squash"}},
        {"budget": {"families": [{"name": "bad", "pattern": "lang/(.+)\\.json"}]}},
    ],
)
def test_invalid_configuration_is_rejected(data: dict) -> None:
    with pytest.raises(SyncError) as excinfo:
        build_config(data, env={})

    assert excinfo.value.kind is ErrorKind.CONFIG
    assert excinfo.value.details["errors"]


def test_load_config_anchors_paths_at_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_NAME
    config_path.write_text(
        "repo_a:\n"
        "  path: upstream\n"
        "  branch: develop\n"
        "repo_b:\n"
        "  path: /srv/downstream\n"
        "github:\n"
        "  owner: acme\n"
        "  repo: site\n",
        encoding="utf-8",
    )

    config = load_config(config_path, env={})

    assert config.repo_a.path == (tmp_path / "upstream").resolve()
    assert config.repo_a.branch == "develop"
    assert config.repo_b.path == Path("/srv/downstream")
    assert config.github.owner == "acme"


def test_empty_config_file_means_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "empty.yaml"
    config_path.write_text("", encoding="utf-8")

    assert load_config(config_path, env={}).repo_a.branch == "main"


@pytest.mark.parametrize("content", ["repo_a: [unclosed\n", "- just\n- a list\n"])
def test_malformed_config_file_is_a_config_error(tmp_path: Path, content: str) -> None:
    config_path = tmp_path / "bad.yaml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(SyncError) as excinfo:
        load_config(config_path, env={})

    assert excinfo.value.kind is ErrorKind.CONFIG


def test_missing_config_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(SyncError) as excinfo:
        load_config(tmp_path / "nope.yaml", env={})

    assert excinfo.value.kind is ErrorKind.CONFIG
    assert "not found" in str(excinfo.value)


def test_include_and_exclude_filters() -> None:
    options = SyncOptions(include_patterns=["src/"], exclude_patterns=["test"])

    assert options.should_process("src/app.py")
    assert not options.should_process("docs/readme.md")
    assert not options.should_process("src/tests/test_app.py")
    assert SyncOptions().should_process("anything")
