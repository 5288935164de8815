"""Drive artifacts through the missing pipeline stages and analyze them.

:func:`analyze_single_test` handles one artifact according to an
:class:`IndexStrategy`; :func:`analyze_all` and
:func:`analyze_all_from_index` fan that out over many artifacts (or many
persisted indexes) and collect one :class:`AnalyzeAllSingleTest` record per
input.  A failure in one artifact is recorded against it and never aborts
the batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TypeVar

from .analysis import AnalysisConfig, AnalysisContext, AnalysisVerdict, analyze
from .core import RecordModel, TestDesc
from .difftest import Difftest, ExportConfig
from .errors import DecodeError, DifftestsError, MissingInput
from .index.compiler import IndexCompilerConfig, TestIndex
from .tools.profiling import LlvmProfileTools, ProfileTools

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class IndexStrategy(str, Enum):
    """How a run uses persisted test indexes."""

    NEVER = "never"
    IF_AVAILABLE = "if-available"
    ALWAYS = "always"
    ALWAYS_AND_CLEAN = "always-and-clean"

    @property
    def reads_index(self) -> bool:
        return self is not IndexStrategy.NEVER

    @property
    def writes_index(self) -> bool:
        return self in (IndexStrategy.ALWAYS, IndexStrategy.ALWAYS_AND_CLEAN)


def _default_tools() -> ProfileTools:
    return LlvmProfileTools()


@dataclass(slots=True)
class PipelineOptions:
    """Everything needed to bring an artifact from raw profiles to an analysis."""

    tools: ProfileTools = field(default_factory=_default_tools)
    index_strategy: IndexStrategy = IndexStrategy.NEVER
    index_compiler: IndexCompilerConfig = field(default_factory=IndexCompilerConfig.from_flags)
    ignore_registry_files: bool = True
    other_binaries: Sequence[Path] = ()
    force: bool = False


class OutcomeError(RecordModel):
    kind: str
    message: str

    @classmethod
    def from_exception(cls, error: DifftestsError) -> "OutcomeError":
        return cls(kind=error.kind, message=str(error))


class AnalyzeAllSingleTest(RecordModel):
    """Outcome for one artifact (or index) of a batch run.

    Exactly one of ``verdict`` and ``error`` is set.
    """

    difftest: Optional[Path] = None
    index: Optional[Path] = None
    test_desc: Optional[TestDesc] = None
    verdict: Optional[AnalysisVerdict] = None
    error: Optional[OutcomeError] = None

    @property
    def is_dirty(self) -> bool:
        return self.verdict is AnalysisVerdict.DIRTY


@dataclass(slots=True)
class BatchReport:
    results: List[AnalyzeAllSingleTest] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return any(result.error is not None for result in self.results)

    def dirty(self) -> List[AnalyzeAllSingleTest]:
        return [result for result in self.results if result.is_dirty]

    def failures(self) -> List[AnalyzeAllSingleTest]:
        return [result for result in self.results if result.error is not None]

    def to_jsonable(self) -> List[dict]:
        return [result.model_dump(mode="json", exclude_none=True) for result in self.results]


def _read_index_or_none(difftest: Difftest) -> Optional[TestIndex]:
    try:
        return difftest.read_index()
    except (DecodeError, MissingInput) as error:
        LOGGER.warning("Ignoring unusable index for %s: %s", difftest.dir, error)
        difftest.index_file = None
        return None


def prepare_context(
    difftest: Difftest,
    options: PipelineOptions,
    *,
    test_desc: TestDesc | None = None,
) -> AnalysisContext:
    """Run whichever stages ``difftest`` is missing and return its analysis input."""

    strategy = options.index_strategy
    if strategy.reads_index and not options.force:
        index = _read_index_or_none(difftest)
        if index is not None:
            LOGGER.debug("Analyzing %s from its index", difftest.dir)
            return AnalysisContext.from_index(index)

    test_desc = test_desc or difftest.load_test_desc()
    difftest.merge(options.tools, force=options.force)
    difftest.export(
        options.tools,
        ExportConfig(
            ignore_registry_files=options.ignore_registry_files,
            other_binaries=options.other_binaries,
            test_desc=test_desc,
            force=options.force,
        ),
    )

    if not strategy.writes_index:
        export = difftest.read_exported()
        return AnalysisContext.from_export(export, test_run=difftest.test_run_at(), test_desc=test_desc)

    index = difftest.compile_index(options.index_compiler, test_desc=test_desc)
    difftest.write_index(index)
    if strategy is IndexStrategy.ALWAYS_AND_CLEAN:
        difftest.clean()
    return AnalysisContext.from_index(index)


def analyze_single_test(
    difftest: Difftest,
    options: PipelineOptions,
    analysis: AnalysisConfig,
    *,
    test_desc: TestDesc | None = None,
) -> AnalysisVerdict:
    """Bring ``difftest`` up to date and return its verdict."""

    context = prepare_context(difftest, options, test_desc=test_desc)
    verdict = analyze(context, analysis)
    difftest.verdict = verdict
    LOGGER.info("%s: %s", difftest.dir, verdict.value)
    return verdict


def _fan_out(worker: Callable[[T], AnalyzeAllSingleTest], items: Sequence[T], jobs: int) -> List[AnalyzeAllSingleTest]:
    if jobs <= 1 or len(items) <= 1:
        return [worker(item) for item in items]
    with ThreadPoolExecutor(max_workers=jobs) as executor:
        return list(executor.map(worker, items))


def _share_change_set(analysis: AnalysisConfig) -> None:
    if analysis.algorithm.uses_git:
        analysis.load_change_set()


def analyze_all(
    difftests: Sequence[Difftest],
    options: PipelineOptions,
    analysis: AnalysisConfig,
    *,
    jobs: int = 1,
) -> BatchReport:
    """Analyze every artifact in ``difftests``.

    The git change set (when the algorithm needs one) is computed once up
    front; failing to compute it fails the whole batch.
    """

    _share_change_set(analysis)

    def run(difftest: Difftest) -> AnalyzeAllSingleTest:
        result = AnalyzeAllSingleTest(difftest=difftest.dir)
        try:
            result.test_desc = difftest.load_test_desc()
            result.verdict = analyze_single_test(difftest, options, analysis, test_desc=result.test_desc)
        except DifftestsError as error:
            LOGGER.warning("Analysis of %s failed: %s", difftest.dir, error)
            result.error = OutcomeError.from_exception(error)
        return result

    return BatchReport(results=_fan_out(run, list(difftests), jobs))


def find_index_files(index_root: Path) -> List[Path]:
    """Every regular file below ``index_root``, in sorted order."""

    index_root = Path(index_root)
    if not index_root.is_dir():
        raise MissingInput("index root", index_root)
    return sorted(path for path in index_root.rglob("*") if path.is_file())


def analyze_all_from_index(
    index_root: Path,
    analysis: AnalysisConfig,
    *,
    jobs: int = 1,
) -> BatchReport:
    """Analyze every persisted index found below ``index_root``."""

    index_files = find_index_files(index_root)
    _share_change_set(analysis)

    def run(path: Path) -> AnalyzeAllSingleTest:
        result = AnalyzeAllSingleTest(index=path)
        try:
            index = TestIndex.read_from_file(path)
            result.test_desc = index.test_desc
            result.verdict = analyze(index, analysis)
        except DifftestsError as error:
            LOGGER.warning("Analysis of index %s failed: %s", path, error)
            result.error = OutcomeError.from_exception(error)
        return result

    return BatchReport(results=_fan_out(run, index_files, jobs))


__all__ = [
    "AnalyzeAllSingleTest",
    "BatchReport",
    "IndexStrategy",
    "OutcomeError",
    "PipelineOptions",
    "analyze_all",
    "analyze_all_from_index",
    "analyze_single_test",
    "find_index_files",
    "prepare_context",
]
