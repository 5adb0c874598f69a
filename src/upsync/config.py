"""Typed configuration loaded once from ``upsync.yaml`` and passed to components."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ErrorKind, SyncError

DEFAULT_CONFIG_NAME = "upsync.yaml"
CONFLICT_STRATEGIES = ("overwrite", "keep", "backup", "merge")

ConflictStrategyName = Literal["overwrite", "keep", "backup", "merge"]


class ConfigModel(BaseModel):
    """Base model that rejects unknown keys."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class RepositoryConfig(ConfigModel):
    """Location of one of the two repositories."""

    path: Path = Path(".")
    branch: str = "main"
    remote: str = "origin"
    url: str = ""


class GitHubConfig(ConfigModel):
    """Pull request target for the downstream repository."""

    owner: str = ""
    repo: str = ""
    token_env: str = "GITHUB_TOKEN"
    api_url: str = "https://api.github.com"


class FamilyConfig(ConfigModel):
    """A repeated-content file family.

    ``pattern`` is a regular expression with a named ``variant`` group; the
    text preceding that group identifies the family instance.
    """

    name: str
    pattern: str
    canonical: str = ""

    @field_validator("pattern")
    @classmethod
    def _require_variant_group(cls, value: str) -> str:
        if "(?P<variant>" not in value:
            raise ValueError("family pattern must define a named 'variant' group")
        return value


class BudgetConfig(ConfigModel):
    """Limits applied before a synthesis request is built."""

    soft_token_ceiling: int = 180_000
    hard_token_ceiling: int = 190_000
    chars_per_token: float = 3.5
    max_file_chars: int = 30_000
    family_sample_chars: int = 5_000
    max_files: int = 10
    max_diff_chars: int = 500_000
    exclude_dirs: List[str] = Field(
        default_factory=lambda: ["node_modules", "vendor", "dist", "build", ".git", "generated"]
    )
    exclude_globs: List[str] = Field(default_factory=lambda: ["*.generated.*"])
    source_extensions: List[str] = Field(
        default_factory=lambda: [".ts", ".tsx", ".js", ".jsx", ".py", ".graphql"]
    )
    families: List[FamilyConfig] = Field(
        default_factory=lambda: [
            FamilyConfig(
                name="translations",
                pattern=r"(?:^|/)lang/(?:back|front)/(?P<variant>[^/]+)\.json$",
                canonical="en",
            )
        ]
    )

    @model_validator(mode="after")
    def _check_ceilings(self) -> "BudgetConfig":
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        if self.hard_token_ceiling < self.soft_token_ceiling:
            raise ValueError("hard_token_ceiling must be >= soft_token_ceiling")
        if self.max_files <= 0:
            raise ValueError("max_files must be positive")
        return self


class SynthesisConfig(ConfigModel):
    """Settings for the patch-generation service."""

    enabled: bool = True
    model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = 16_384
    max_retries: int = 3
    retry_base_delay: float = 60.0
    timeout: float = 600.0
    deadline: Optional[float] = None
    api_key_env: str = "CLAUDE_API_KEY"
    base_url: str = "https://api.anthropic.com/v1/messages"


class SyncOptions(ConfigModel):
    """Behaviour of a synchronization pass."""

    conflict_strategy: ConflictStrategyName = "overwrite"
    include_patterns: List[str] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=list)
    dry_run: bool = False
    branch_prefix: str = "ai-merge"
    min_patch_lines: int = 4
    check_open_pull_requests: bool = True
    reject_preview_chars: int = 500

    def should_process(self, path: str) -> bool:
        """Apply the substring include/exclude filters to ``path``."""
        if self.include_patterns and not any(pattern in path for pattern in self.include_patterns):
            return False
        if any(pattern in path for pattern in self.exclude_patterns):
            return False
        return True


class PathsConfig(ConfigModel):
    """Working locations, relative to the configuration file."""

    data: Path = Path("data")
    failed_patches: Path = Path("data/failed-patches")
    lock_file: Path = Path("data/upsync.lock")


class LoggingConfig(ConfigModel):
    level: str = "INFO"
    file: Optional[Path] = None


class SyncConfig(ConfigModel):
    """Complete configuration for one process."""

    repo_a: RepositoryConfig = Field(default_factory=RepositoryConfig)
    repo_b: RepositoryConfig = Field(default_factory=RepositoryConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def resolve_paths(self, base: Path) -> "SyncConfig":
        """Return a copy whose relative filesystem paths are anchored at ``base``."""

        def anchor(value: Path) -> Path:
            return value if value.is_absolute() else (base / value).resolve()

        resolved = self.model_copy(deep=True)
        resolved.repo_a.path = anchor(self.repo_a.path)
        resolved.repo_b.path = anchor(self.repo_b.path)
        resolved.paths.data = anchor(self.paths.data)
        resolved.paths.failed_patches = anchor(self.paths.failed_patches)
        resolved.paths.lock_file = anchor(self.paths.lock_file)
        if self.logging.file is not None:
            resolved.logging.file = anchor(self.logging.file)
        return resolved


# Environment variable -> (section, key)
_ENV_OVERRIDES: Dict[str, tuple[str, str]] = {
    "UPSYNC_REPO_A_PATH": ("repo_a", "path"),
    "UPSYNC_REPO_A_BRANCH": ("repo_a", "branch"),
    "UPSYNC_REPO_A_URL": ("repo_a", "url"),
    "UPSYNC_REPO_B_PATH": ("repo_b", "path"),
    "UPSYNC_REPO_B_BRANCH": ("repo_b", "branch"),
    "UPSYNC_REPO_B_URL": ("repo_b", "url"),
    "UPSYNC_GITHUB_OWNER": ("github", "owner"),
    "UPSYNC_GITHUB_REPO": ("github", "repo"),
    "UPSYNC_MAX_TOKENS_PER_REQUEST": ("budget", "soft_token_ceiling"),
    "UPSYNC_HARD_TOKEN_CEILING": ("budget", "hard_token_ceiling"),
    "UPSYNC_MAX_FILE_SIZE": ("budget", "max_file_chars"),
    "UPSYNC_MAX_FILES_TO_PROCESS": ("budget", "max_files"),
    "UPSYNC_MAX_DIFF_SIZE": ("budget", "max_diff_chars"),
    "UPSYNC_RETRY_MAX_ATTEMPTS": ("synthesis", "max_retries"),
    "UPSYNC_RETRY_BASE_DELAY": ("synthesis", "retry_base_delay"),
    "UPSYNC_MODEL": ("synthesis", "model"),
    "UPSYNC_CONFLICT_STRATEGY": ("sync", "conflict_strategy"),
    "UPSYNC_DRY_RUN": ("sync", "dry_run"),
    "UPSYNC_LOG_LEVEL": ("logging", "level"),
}


def _apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    merged = {key: dict(value) if isinstance(value, Mapping) else value for key, value in data.items()}
    for variable, (section, key) in _ENV_OVERRIDES.items():
        raw = env.get(variable)
        if raw is None or not raw.strip():
            continue
        bucket = merged.setdefault(section, {})
        if not isinstance(bucket, dict):
            continue
        bucket[key] = raw.strip()
    return merged


def build_config(
    data: Mapping[str, Any] | None = None,
    *,
    base: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SyncConfig:
    """Validate ``data`` (plus environment overrides) into a :class:`SyncConfig`."""
    payload = _apply_env_overrides(dict(data or {}), os.environ if env is None else env)
    try:
        config = SyncConfig.model_validate(payload)
    except ValidationError as error:
        raise SyncError(
            f"Invalid configuration: {error.error_count()} problem(s)",
            kind=ErrorKind.CONFIG,
            details={"errors": [_format_error(item) for item in error.errors()]},
        ) from error
    return config.resolve_paths(base or Path.cwd())


def _format_error(item: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in item.get("loc", ()))
    return f"{location}: {item.get('msg', 'invalid value')}"


def load_config(config_path: Path, *, env: Mapping[str, str] | None = None) -> SyncConfig:
    """Load YAML configuration from disk into a validated :class:`SyncConfig`."""
    if not config_path.exists():
        raise SyncError(
            f"Config file not found: {config_path}",
            kind=ErrorKind.CONFIG,
            details={"path": config_path},
        )
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise SyncError(
            f"Failed to parse config: {error}",
            kind=ErrorKind.CONFIG,
            details={"path": config_path},
        ) from error

    if not isinstance(data, dict):
        raise SyncError(
            "Configuration must be a mapping at the top level.",
            kind=ErrorKind.CONFIG,
            details={"path": config_path},
        )

    return build_config(data, base=config_path.resolve().parent, env=env)


__all__ = [
    "BudgetConfig",
    "CONFLICT_STRATEGIES",
    "DEFAULT_CONFIG_NAME",
    "FamilyConfig",
    "GitHubConfig",
    "LoggingConfig",
    "PathsConfig",
    "RepositoryConfig",
    "SyncConfig",
    "SyncOptions",
    "SynthesisConfig",
    "build_config",
    "load_config",
]
