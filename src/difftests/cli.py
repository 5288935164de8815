"""CLI commands for discovering and analyzing difftests."""

from __future__ import annotations

import json
import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional

import typer

from .analysis import AnalysisConfig, AnalysisContext, DirtyAlgorithm, analyze
from .batch import (
    BatchReport,
    IndexStrategy,
    PipelineOptions,
    analyze_all,
    analyze_all_from_index,
    analyze_single_test,
)
from .config import DEFAULT_CONFIG_NAME, DifftestsConfig, load_config, write_default_config
from .difftest import Difftest, ExportConfig, discover_difftests
from .errors import DifftestsError
from .index.compiler import (
    IndexCompilerConfig,
    IndexPathResolver,
    TestIndex,
    compare_indexes_touch_same_files,
)
from .tools.profiling import LlvmProfileTools
from .tools.vcs import GitError, GitRepository

APP_HELP = "Selective test re-runs driven by per-test coverage."
LOG_ENV = "DIFFTESTS_LOG"
LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP)
low_level = typer.Typer(help="Single pipeline stages, mostly useful for debugging.")
app.add_typer(low_level, name="low-level")

CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the difftests configuration file.",
)
DIR_OPTION = typer.Option(..., "--dir", "-d", help="Difftest directory.")
ROOT_OPTION = typer.Option(None, "--root", help="Directory to search for difftests (overrides paths.root).")
INDEX_ROOT_OPTION = typer.Option(None, "--index-root", help="Directory holding persisted indexes.")
ALGORITHM_OPTION = typer.Option(None, "--algorithm", help="Dirtiness algorithm (overrides analysis.algorithm).")
COMMIT_OPTION = typer.Option(None, "--commit", help="Base revision for the git algorithms.")
STRATEGY_OPTION = typer.Option(None, "--index-strategy", help="How persisted indexes are used.")
FORCE_OPTION = typer.Option(False, "--force", help="Recompute stages even when their output is up to date.")
JOBS_OPTION = typer.Option(None, "--jobs", "-j", min=1, help="Number of worker threads.")


def _configure_logging() -> None:
    level_name = os.environ.get(LOG_ENV, "WARNING").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")


@app.callback()
def main() -> None:
    """Selective test re-runs driven by per-test coverage."""
    _configure_logging()


@contextmanager
def _reporting_errors() -> Iterator[None]:
    try:
        yield
    except DifftestsError as error:
        typer.echo(f"{error.kind}: {error}", err=True)
        raise typer.Exit(code=1) from error


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _load(config: str) -> DifftestsConfig:
    with _reporting_errors():
        return load_config(Path(config))


def _repository(start: Path | None = None) -> Optional[GitRepository]:
    try:
        return GitRepository.discover(start)
    except GitError:
        return None


def _artifact_root(cfg: DifftestsConfig, root: Optional[Path]) -> Path:
    return root if root is not None else cfg.paths.root


def _index_resolver(cfg: DifftestsConfig, root: Path, index_root: Optional[Path]) -> Optional[IndexPathResolver]:
    target = index_root if index_root is not None else cfg.paths.index_root
    if target is None:
        return None
    return IndexPathResolver.remap(root, target)


def _index_compiler(cfg: DifftestsConfig, repo: Optional[GitRepository]) -> IndexCompilerConfig:
    flatten_root = repo.root if repo is not None and cfg.index.flatten_files_to == "repo-root" else None
    return IndexCompilerConfig.from_flags(
        ignore_registry_files=cfg.index.ignore_registry_files,
        flatten_root=flatten_root,
        remove_bin_path=cfg.index.remove_bin_path,
    )


def _tools(cfg: DifftestsConfig) -> LlvmProfileTools:
    return LlvmProfileTools(profdata_command=tuple(cfg.tools.profdata), cov_command=tuple(cfg.tools.cov))


def _analysis_config(
    cfg: DifftestsConfig,
    repo: Optional[GitRepository],
    algorithm: Optional[DirtyAlgorithm],
    commit: Optional[str],
) -> AnalysisConfig:
    return AnalysisConfig(
        algorithm=algorithm or cfg.analysis.algorithm,
        commit=commit or cfg.analysis.commit,
        root=repo.root if repo is not None else None,
        repository=repo,
        ignore_registry_files=cfg.index.ignore_registry_files,
    )


def _pipeline_options(
    cfg: DifftestsConfig,
    repo: Optional[GitRepository],
    strategy: Optional[IndexStrategy],
    force: bool,
) -> PipelineOptions:
    return PipelineOptions(
        tools=_tools(cfg),
        index_strategy=strategy or cfg.analysis.index_strategy,
        index_compiler=_index_compiler(cfg, repo),
        ignore_registry_files=cfg.index.ignore_registry_files,
        other_binaries=cfg.tools.other_binaries,
        force=force,
    )


def _finish_batch(report: BatchReport) -> None:
    _echo_json(report.to_jsonable())
    LOGGER.info("%d of %d difftests are dirty", len(report.dirty()), len(report.results))
    failures = report.failures()
    if failures:
        LOGGER.error("%d of %d difftests could not be analyzed", len(failures), len(report.results))
        raise typer.Exit(code=1)


@app.command("init-config")
def init_config(config: str = CONFIG_OPTION) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if config_path.exists():
        typer.echo(f"Configuration already exists at {config_path}.")
        raise typer.Exit(code=1)
    write_default_config(config_path)
    typer.echo(f"Wrote default configuration to {config_path}.")


@app.command("discover-difftests")
def discover(
    config: str = CONFIG_OPTION,
    root: Optional[Path] = ROOT_OPTION,
    index_root: Optional[Path] = INDEX_ROOT_OPTION,
    ignore_incompatible: bool = typer.Option(
        False,
        "--ignore-incompatible",
        help="Skip difftests written by another engine version instead of failing.",
    ),
) -> None:
    """List the difftests found under the artifact root as JSON."""
    cfg = _load(config)
    search_root = _artifact_root(cfg, root)
    with _reporting_errors():
        difftests = discover_difftests(
            search_root,
            ignore_incompatible=ignore_incompatible,
            index_resolver=_index_resolver(cfg, search_root, index_root),
        )
    _echo_json([difftest.as_dict() for difftest in difftests])


@app.command("analyze")
def analyze_command(
    config: str = CONFIG_OPTION,
    directory: Path = DIR_OPTION,
    root: Optional[Path] = ROOT_OPTION,
    index_root: Optional[Path] = INDEX_ROOT_OPTION,
    algorithm: Optional[DirtyAlgorithm] = ALGORITHM_OPTION,
    commit: Optional[str] = COMMIT_OPTION,
    index_strategy: Optional[IndexStrategy] = STRATEGY_OPTION,
    force: bool = FORCE_OPTION,
) -> None:
    """Analyze one difftest and print ``clean`` or ``dirty``."""
    cfg = _load(config)
    repo = _repository()
    search_root = _artifact_root(cfg, root)
    with _reporting_errors():
        difftest = Difftest.discover_from(directory, _index_resolver(cfg, search_root, index_root))
        verdict = analyze_single_test(
            difftest,
            _pipeline_options(cfg, repo, index_strategy, force),
            _analysis_config(cfg, repo, algorithm, commit),
        )
    typer.echo(verdict.value)


@app.command("analyze-all")
def analyze_all_command(
    config: str = CONFIG_OPTION,
    root: Optional[Path] = ROOT_OPTION,
    index_root: Optional[Path] = INDEX_ROOT_OPTION,
    algorithm: Optional[DirtyAlgorithm] = ALGORITHM_OPTION,
    commit: Optional[str] = COMMIT_OPTION,
    index_strategy: Optional[IndexStrategy] = STRATEGY_OPTION,
    force: bool = FORCE_OPTION,
    jobs: Optional[int] = JOBS_OPTION,
    ignore_incompatible: bool = typer.Option(
        False,
        "--ignore-incompatible",
        help="Skip difftests written by another engine version instead of failing.",
    ),
) -> None:
    """Analyze every difftest under the artifact root and print the results as JSON.

    Exits with status 1 when any difftest could not be analyzed.
    """
    cfg = _load(config)
    repo = _repository()
    search_root = _artifact_root(cfg, root)
    with _reporting_errors():
        difftests = discover_difftests(
            search_root,
            ignore_incompatible=ignore_incompatible,
            index_resolver=_index_resolver(cfg, search_root, index_root),
        )
        report = analyze_all(
            difftests,
            _pipeline_options(cfg, repo, index_strategy, force),
            _analysis_config(cfg, repo, algorithm, commit),
            jobs=jobs or cfg.analysis.jobs,
        )
    _finish_batch(report)


@app.command("analyze-all-from-index")
def analyze_all_from_index_command(
    config: str = CONFIG_OPTION,
    index_root: Optional[Path] = INDEX_ROOT_OPTION,
    algorithm: Optional[DirtyAlgorithm] = ALGORITHM_OPTION,
    commit: Optional[str] = COMMIT_OPTION,
    jobs: Optional[int] = JOBS_OPTION,
) -> None:
    """Analyze every persisted index under the index root and print the results as JSON."""
    cfg = _load(config)
    repo = _repository()
    target = index_root if index_root is not None else cfg.paths.index_root
    if target is None:
        typer.echo("An index root is required (--index-root or paths.index_root).", err=True)
        raise typer.Exit(code=1)
    with _reporting_errors():
        report = analyze_all_from_index(
            target,
            _analysis_config(cfg, repo, algorithm, commit),
            jobs=jobs or cfg.analysis.jobs,
        )
    _finish_batch(report)


@low_level.command("merge-profdata")
def merge_profdata(
    config: str = CONFIG_OPTION,
    directory: Path = DIR_OPTION,
    force: bool = FORCE_OPTION,
) -> None:
    """Merge the raw profiles of one difftest."""
    cfg = _load(config)
    with _reporting_errors():
        difftest = Difftest.discover_from(directory)
        output = difftest.merge(_tools(cfg), force=force)
    typer.echo(str(output))


@low_level.command("export-profdata")
def export_profdata(
    config: str = CONFIG_OPTION,
    directory: Path = DIR_OPTION,
    force: bool = FORCE_OPTION,
    other_binary: List[Path] = typer.Option(
        [],
        "--other-binary",
        help="Additional instrumented binary to resolve coverage for (repeatable).",
    ),
) -> None:
    """Export the merged profile of one difftest as coverage JSON."""
    cfg = _load(config)
    with _reporting_errors():
        difftest = Difftest.discover_from(directory)
        output = difftest.export(
            _tools(cfg),
            ExportConfig(
                ignore_registry_files=cfg.index.ignore_registry_files,
                other_binaries=[*cfg.tools.other_binaries, *other_binary],
                force=force,
            ),
        )
    typer.echo(str(output))


@low_level.command("run-analysis")
def run_analysis(
    config: str = CONFIG_OPTION,
    directory: Path = DIR_OPTION,
    algorithm: Optional[DirtyAlgorithm] = ALGORITHM_OPTION,
    commit: Optional[str] = COMMIT_OPTION,
) -> None:
    """Analyze one difftest from its already exported coverage."""
    cfg = _load(config)
    repo = _repository()
    with _reporting_errors():
        difftest = Difftest.discover_from(directory)
        context = AnalysisContext.from_export(
            difftest.read_exported(),
            test_run=difftest.test_run_at(),
            test_desc=difftest.load_test_desc(),
        )
        verdict = analyze(context, _analysis_config(cfg, repo, algorithm, commit))
    typer.echo(verdict.value)


@low_level.command("compile-test-index")
def compile_test_index_command(
    config: str = CONFIG_OPTION,
    directory: Path = DIR_OPTION,
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the index."),
) -> None:
    """Compile the exported coverage of one difftest into an index file."""
    cfg = _load(config)
    repo = _repository()
    with _reporting_errors():
        difftest = Difftest.discover_from(directory)
        index = difftest.compile_index(_index_compiler(cfg, repo))
        written = difftest.write_index(index, output)
    typer.echo(str(written))


@low_level.command("run-analysis-with-test-index")
def run_analysis_with_test_index(
    config: str = CONFIG_OPTION,
    index: Path = typer.Option(..., "--index", help="Persisted index file."),
    algorithm: Optional[DirtyAlgorithm] = ALGORITHM_OPTION,
    commit: Optional[str] = COMMIT_OPTION,
) -> None:
    """Analyze a persisted index."""
    cfg = _load(config)
    repo = _repository()
    with _reporting_errors():
        test_index = TestIndex.read_from_file(index)
        verdict = analyze(test_index, _analysis_config(cfg, repo, algorithm, commit))
    typer.echo(verdict.value)


@low_level.command("indexes-touch-same-files-report")
def indexes_touch_same_files_report(
    first: Path = typer.Argument(..., help="First index file."),
    second: Path = typer.Argument(..., help="Second index file."),
    action: str = typer.Option("print", "--action", help="'print' the differences or 'assert' there are none."),
) -> None:
    """Report files touched by only one of two indexes."""
    if action not in {"print", "assert"}:
        raise typer.BadParameter("--action must be 'print' or 'assert'.")
    with _reporting_errors():
        differences = compare_indexes_touch_same_files(
            TestIndex.read_from_file(first),
            TestIndex.read_from_file(second),
        )
    if action == "print":
        _echo_json([difference.as_dict() for difference in differences])
        return
    if differences:
        for difference in differences:
            typer.echo(json.dumps(difference.as_dict()), err=True)
        typer.echo("Indexes touch different files.", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
