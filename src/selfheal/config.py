"""Configuration models and YAML loading for the repair pipeline.

Configuration is read from a YAML document (``selfheal.yaml`` by default),
overlaid with environment variables named ``SELF_HEAL__<SECTION>__<KEY>``,
and validated into the pydantic models below. Unknown keys are rejected so
typos surface at startup instead of being silently ignored.
"""

from __future__ import annotations

import copy
import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

DEFAULT_CONFIG_NAME = "selfheal.yaml"
ENV_PREFIX = "SELF_HEAL__"

PASS_NAMES = ("security", "unsafe", "performance", "style", "complexity", "compatibility")


class SettingsModel(BaseModel):
    """Base model for configuration sections."""

    model_config = ConfigDict(extra="forbid")


class ProjectSettings(SettingsModel):
    repo_root: Path = Path(".")


class AnalysisSettings(SettingsModel):
    extensions: List[str] = Field(default_factory=lambda: [".py", ".rs"])
    ignore_patterns: List[str] = Field(
        default_factory=lambda: ["target/", ".git/", "node_modules/", "__pycache__/", ".venv/"]
    )
    max_file_size: int = 1_048_576
    enabled_passes: List[str] = Field(default_factory=lambda: list(PASS_NAMES))
    context_lines: int = 2
    max_function_branches: int = 10
    max_line_length: int = 120

    @field_validator("enabled_passes")
    @classmethod
    def _known_passes(cls, value: List[str]) -> List[str]:
        unknown = [name for name in value if name not in PASS_NAMES]
        if unknown:
            raise ValueError(f"unknown detector passes: {', '.join(unknown)}")
        return value


class LLMSettings(SettingsModel):
    backend: Literal["openai", "anthropic", "local"] = "openai"
    model: str = "gpt-4"
    max_tokens: int = 4000
    temperature: float = 0.1
    timeout: float = 60.0
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    requests_per_window: int = 60
    window_seconds: float = 60.0
    candidates: int = 1
    max_context_lines: int = 40
    rate_limit_retries: int = 3
    rate_limit_backoff: float = 1.0


class DenylistEntry(SettingsModel):
    name: str
    pattern: str
    penalty: float = Field(ge=0.0, le=1.0)


def _default_denylist() -> List[DenylistEntry]:
    return [
        DenylistEntry(name="unsafe-block", pattern=r"unsafe\s*\{", penalty=0.3),
        DenylistEntry(
            name="process-execution",
            pattern=r"std::process::Command|Command::new|\bsubprocess\.|\bos\.system\(|\bos\.popen\(",
            penalty=0.6,
        ),
        DenylistEntry(
            name="raw-pointer",
            pattern=r"\bptr::(?:read|write)\b|\btransmute\s*\(|mem::uninitialized|\bas\s+\*(?:const|mut)\b",
            penalty=0.3,
        ),
        DenylistEntry(
            name="filesystem-deletion",
            pattern=r"\bfs::remove_(?:file|dir|dir_all)\b|\bshutil\.rmtree\(|\bos\.(?:remove|unlink|rmdir)\(",
            penalty=0.4,
        ),
        DenylistEntry(name="dynamic-evaluation", pattern=r"\beval\(|\bexec\(", penalty=0.4),
    ]


class SafetySettings(SettingsModel):
    denylist: List[DenylistEntry] = Field(default_factory=_default_denylist)
    rejection_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    require_review: bool = False
    max_patch_size: int = 10_000


class ContainerSettings(SettingsModel):
    enabled: bool = False
    image: str = "rust:1.75"
    executable: str = "docker"


_SHELL_OPERATORS = frozenset({"&&", "||", "|", ";", "&", ">", ">>", "<", "2>", "2>&1"})


class ValidationSettings(SettingsModel):
    """Stage commands and limits for sandboxed validation.

    Stage commands are split with :func:`shlex.split` and executed directly,
    not through a shell. Pipelines or ``&&`` chains must be wrapped
    explicitly, e.g. ``sh -c "cargo build && cargo clippy"``.
    """

    build_command: Optional[str] = "cargo build"
    test_command: Optional[str] = "cargo test"
    security_command: Optional[str] = "cargo audit"
    benchmark_command: Optional[str] = None
    build_timeout: float = 300.0
    test_timeout: float = 300.0
    security_timeout: float = 120.0
    benchmark_timeout: float = 300.0
    artifact_globs: List[str] = Field(default_factory=lambda: ["target/debug/*", "target/release/*"])
    measure_performance: bool = False
    max_concurrent_validations: int = Field(default=2, ge=1)
    max_attempts: int = Field(default=1, ge=1)
    sandbox_ignore: List[str] = Field(default_factory=lambda: ["target", "node_modules", "__pycache__", ".venv"])
    allow_security_warnings: bool = False
    verify_after_apply: bool = False
    container: ContainerSettings = Field(default_factory=ContainerSettings)

    @field_validator("build_command", "test_command", "security_command", "benchmark_command")
    @classmethod
    def _splittable_command(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            argv = shlex.split(value)
        except ValueError as error:
            raise ValueError(f"cannot split command {value!r}: {error}") from error
        if not argv:
            raise ValueError("command must not be empty; use null to disable the stage")
        operators = sorted(_SHELL_OPERATORS.intersection(argv))
        if operators:
            raise ValueError(
                f"command {value!r} uses shell operators {', '.join(operators)}; wrap it in sh -c \"...\""
            )
        return value


class GitSettings(SettingsModel):
    author_name: str = "Self-Healing Bot"
    author_email: str = "bot@self-heal.local"
    branch_prefix: str = "self-heal"
    backup_prefix: str = "backup"
    commit_message_template: str = "fix: {description}"
    lock_retries: int = 5
    lock_backoff: float = 0.2


class StorageSettings(SettingsModel):
    db_path: Path = Path("data/selfheal.sqlite")
    retention_days: int = 30


class SelfHealConfig(SettingsModel):
    """Root configuration object."""

    project: ProjectSettings = Field(default_factory=ProjectSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    safety: SafetySettings = Field(default_factory=SafetySettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    git: GitSettings = Field(default_factory=GitSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    @classmethod
    def load(
        cls,
        path: Path | str | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> "SelfHealConfig":
        """Load configuration from ``path`` and environment overrides.

        A missing file yields defaults. Malformed YAML or values that fail
        validation raise :class:`ConfigurationError`.
        """

        data: Dict[str, Any] = {}
        if path is not None:
            config_path = Path(path)
            if config_path.exists():
                data = _read_yaml(config_path)
        overrides = _collect_env_overrides(os.environ if environ is None else environ)
        merged = _deep_merge(data, overrides)
        try:
            return cls.model_validate(merged)
        except ValidationError as error:
            raise ConfigurationError(
                f"Invalid configuration: {error.error_count()} problem(s)",
                details={"errors": error.errors(include_url=False)},
            ) from error

    def resolve_path(self, value: Path) -> Path:
        """Resolve ``value`` relative to the configured repository root."""
        if value.is_absolute():
            return value
        return (self.project.repo_root / value).resolve()


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Unable to parse {path}: {error}") from error
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration root in {path} must be a mapping.")
    return raw


def _collect_env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Translate ``SELF_HEAL__LLM__MODEL=gpt-4o`` style variables into a nested mapping."""
    overrides: Dict[str, Any] = {}
    for name, raw_value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX):].split("__") if part]
        if not keys:
            continue
        try:
            value = yaml.safe_load(raw_value)
        except yaml.YAMLError:
            value = raw_value
        cursor: MutableMapping[str, Any] = overrides
        for key in keys[:-1]:
            nested = cursor.get(key)
            if not isinstance(nested, dict):
                nested = {}
                cursor[key] = nested
            cursor = nested
        cursor[keys[-1]] = value
    return overrides


def _deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


__all__ = [
    "AnalysisSettings",
    "ContainerSettings",
    "DEFAULT_CONFIG_NAME",
    "PASS_NAMES",
    "DenylistEntry",
    "GitSettings",
    "LLMSettings",
    "ProjectSettings",
    "SafetySettings",
    "SelfHealConfig",
    "StorageSettings",
    "ValidationSettings",
]
