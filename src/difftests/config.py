"""YAML configuration for the difftests CLI.

Configuration is optional: when ``difftests.yaml`` is absent the defaults in
:data:`DEFAULT_CONFIG_TEMPLATE` apply.  Relative paths are resolved against
the directory holding the configuration file.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import Field, ValidationError

from .analysis import DirtyAlgorithm
from .batch import IndexStrategy
from .core import RecordModel
from .errors import DifftestsError

DEFAULT_CONFIG_NAME = "difftests.yaml"
DEFAULT_ARTIFACT_ROOT = "target/tmp/cargo-difftests"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "paths": {
        "root": DEFAULT_ARTIFACT_ROOT,
        "index_root": None,
    },
    "analysis": {
        "algorithm": DirtyAlgorithm.FS_MTIME.value,
        "commit": None,
        "index_strategy": IndexStrategy.NEVER.value,
        "jobs": 1,
    },
    "index": {
        "ignore_registry_files": True,
        "flatten_files_to": "repo-root",
        "remove_bin_path": True,
    },
    "tools": {
        "profdata": ["rust-profdata"],
        "cov": ["rust-cov"],
        "other_binaries": [],
    },
}


class ConfigError(DifftestsError):
    """Raised when the configuration file cannot be used."""

    kind = "ConfigError"


class PathsSection(RecordModel):
    root: Path = Path(DEFAULT_ARTIFACT_ROOT)
    index_root: Optional[Path] = None


class AnalysisSection(RecordModel):
    algorithm: DirtyAlgorithm = DirtyAlgorithm.FS_MTIME
    commit: Optional[str] = None
    index_strategy: IndexStrategy = IndexStrategy.NEVER
    jobs: int = Field(default=1, ge=1)


class IndexSection(RecordModel):
    ignore_registry_files: bool = True
    flatten_files_to: Optional[Literal["repo-root"]] = "repo-root"
    remove_bin_path: bool = True


class ToolsSection(RecordModel):
    profdata: List[str] = Field(default_factory=lambda: ["rust-profdata"], min_length=1)
    cov: List[str] = Field(default_factory=lambda: ["rust-cov"], min_length=1)
    other_binaries: List[Path] = Field(default_factory=list)


class DifftestsConfig(RecordModel):
    """Validated configuration; unknown keys are rejected."""

    paths: PathsSection = Field(default_factory=PathsSection)
    analysis: AnalysisSection = Field(default_factory=AnalysisSection)
    index: IndexSection = Field(default_factory=IndexSection)
    tools: ToolsSection = Field(default_factory=ToolsSection)

    def resolved(self, base_dir: Path) -> "DifftestsConfig":
        """Return a copy whose relative paths are anchored at ``base_dir``."""

        def anchor(path: Path) -> Path:
            return path if path.is_absolute() else base_dir / path

        config = self.model_copy(deep=True)
        config.paths.root = anchor(config.paths.root)
        if config.paths.index_root is not None:
            config.paths.index_root = anchor(config.paths.index_root)
        config.tools.other_binaries = [anchor(path) for path in config.tools.other_binaries]
        return config


def default_config_data() -> Dict[str, Any]:
    """Return a deep copy of the default configuration mapping."""

    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def parse_config(data: Dict[str, Any], *, source: Path | None = None) -> DifftestsConfig:
    try:
        return DifftestsConfig.model_validate(data)
    except ValidationError as error:
        where = f" in {source}" if source is not None else ""
        raise ConfigError(f"Invalid configuration{where}: {error}") from error


def load_config(config_path: Path, *, required: bool = False) -> DifftestsConfig:
    """Load ``config_path`` and return the validated configuration.

    A missing file yields the defaults unless ``required``.
    """

    config_path = Path(config_path)
    if not config_path.exists():
        if required:
            raise ConfigError(f"Config file not found: {config_path}")
        return parse_config(default_config_data()).resolved(config_path.parent.resolve())

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    except OSError as error:
        raise ConfigError(f"Failed to read config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    return parse_config(data, source=config_path).resolved(config_path.parent.resolve())


def write_default_config(config_path: Path) -> None:
    """Write the default configuration to ``config_path``."""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(default_config_data(), handle, sort_keys=False)


__all__ = [
    "ConfigError",
    "DEFAULT_ARTIFACT_ROOT",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "DifftestsConfig",
    "default_config_data",
    "load_config",
    "parse_config",
    "write_default_config",
]
