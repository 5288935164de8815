"""Decide whether a test's previous result still holds.

Every algorithm consumes an :class:`AnalysisContext` (the executed regions of
one test plus the time it last ran) and returns an :class:`AnalysisVerdict`.
The context can be built from a persisted :class:`~difftests.index.TestIndex`
or straight from exported coverage.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

from .core import TestDesc
from .coverage.export_model import CoverageExport
from .errors import IoError
from .index.compiler import TestIndex, file_is_from_registry
from .tools.vcs import ChangedFile, ChangeSet, GitRepository, Hunk

LOGGER = logging.getLogger(__name__)


class DirtyAlgorithm(str, Enum):
    """Available dirtiness algorithms."""

    FS_MTIME = "fs-mtime"
    GIT_DIFF_FILES = "git-diff-files"
    GIT_DIFF_HUNKS = "git-diff-hunks"

    @property
    def uses_git(self) -> bool:
        return self is not DirtyAlgorithm.FS_MTIME


class AnalysisVerdict(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"

    @property
    def is_dirty(self) -> bool:
        return self is AnalysisVerdict.DIRTY


@dataclass(slots=True)
class AnalysisConfig:
    """Inputs shared by every analysis run.

    ``root`` resolves relative indexed paths; it defaults to the repository
    root when a repository is known and to the working directory otherwise.
    ``change_set`` may be precomputed once and shared across many tests.
    """

    algorithm: DirtyAlgorithm = DirtyAlgorithm.FS_MTIME
    commit: str | None = None
    root: Path | None = None
    repository: GitRepository | None = None
    change_set: ChangeSet | None = None
    ignore_registry_files: bool = True

    def base_dir(self) -> Path:
        if self.root is not None:
            return Path(self.root)
        if self.repository is not None:
            return self.repository.root
        return Path.cwd()

    def load_change_set(self) -> ChangeSet:
        """Return the precomputed change set, computing and caching it if needed."""

        if self.change_set is None:
            repository = self.repository or GitRepository.discover(self.root)
            self.repository = repository
            self.change_set = repository.change_set(self.commit)
        return self.change_set


@dataclass(frozen=True, slots=True)
class CoveredRegion:
    """Executed line span of one file."""

    path: Path
    l1: int
    l2: int
    count: int


@dataclass(slots=True)
class AnalysisContext:
    """Executed regions of one test and the time they were recorded."""

    test_run: datetime
    regions: List[CoveredRegion] = field(default_factory=list)
    test_desc: TestDesc | None = None

    @classmethod
    def from_index(cls, index: TestIndex) -> "AnalysisContext":
        regions = [
            CoveredRegion(path=index.file_of(region), l1=region.l1, l2=region.l2, count=region.count)
            for region in index.regions
        ]
        return cls(test_run=index.test_run, regions=regions, test_desc=index.test_desc)

    @classmethod
    def from_export(
        cls,
        export: CoverageExport,
        *,
        test_run: datetime,
        test_desc: TestDesc | None = None,
    ) -> "AnalysisContext":
        """Build a context from exported coverage; zero-count regions are dropped."""

        regions: List[CoveredRegion] = []
        for mapping in export.data:
            for function in mapping.functions:
                for region in function.regions:
                    if region.execution_count == 0:
                        continue
                    regions.append(
                        CoveredRegion(
                            path=function.filename_of(region),
                            l1=region.l1,
                            l2=region.l2,
                            count=region.execution_count,
                        )
                    )
        return cls(test_run=test_run, regions=regions, test_desc=test_desc)

    def files(self) -> List[Path]:
        """Distinct files touched by the test, in first-seen order."""

        seen: Dict[Path, None] = {}
        for region in self.regions:
            seen.setdefault(region.path, None)
        return list(seen)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _relevant_files(context: AnalysisContext, ignore_registry_files: bool) -> List[Path]:
    files = context.files()
    if ignore_registry_files:
        files = [path for path in files if not file_is_from_registry(path)]
    return files


def file_system_mtime_analysis(
    context: AnalysisContext,
    *,
    base_dir: Path | None = None,
    ignore_registry_files: bool = True,
) -> AnalysisVerdict:
    """Dirty iff a touched file was modified after the test last ran.

    A touched file that no longer exists makes the test dirty.
    """

    test_run = _as_utc(context.test_run)
    base = Path(base_dir) if base_dir is not None else Path.cwd()
    for path in _relevant_files(context, ignore_registry_files):
        target = path if path.is_absolute() else base / path
        try:
            mtime = datetime.fromtimestamp(os.stat(target).st_mtime, tz=timezone.utc)
        except FileNotFoundError:
            LOGGER.debug("%s no longer exists", target)
            return AnalysisVerdict.DIRTY
        except OSError as error:
            raise IoError(error, path=target) from error
        if mtime > test_run:
            LOGGER.debug("%s modified at %s, after test run at %s", target, mtime, test_run)
            return AnalysisVerdict.DIRTY
    return AnalysisVerdict.CLEAN


def path_matches(indexed: Path, changed: Path, repo_root: Path | None = None) -> bool:
    """Return ``True`` when ``indexed`` names the repository path ``changed``.

    Relative indexed paths are taken to be repository-relative.  Absolute
    ones are made relative to ``repo_root`` when they lie below it, and are
    otherwise compared by trailing path components.
    """

    if not indexed.is_absolute():
        return indexed == changed
    if repo_root is not None:
        try:
            return indexed.relative_to(repo_root) == changed
        except ValueError:
            pass
    parts = changed.parts
    return len(parts) <= len(indexed.parts) and indexed.parts[-len(parts):] == parts


def hunk_overlaps(hunk: Hunk, l1: int, l2: int) -> bool:
    """Return ``True`` when ``hunk`` touches the base-revision lines ``[l1, l2]``.

    A pure addition (``old_lines == 0``) sits after line ``old_start`` and
    overlaps regions spanning that line.
    """

    start, length = hunk.old_start, hunk.old_lines
    if length == 0:
        return l1 <= start <= l2
    return l1 < start + length and start <= l2


def git_diff_files_analysis(
    context: AnalysisContext,
    changes: ChangeSet,
    *,
    repo_root: Path | None = None,
    ignore_registry_files: bool = True,
) -> AnalysisVerdict:
    """Dirty iff any touched file is part of ``changes``."""

    changed_paths = changes.paths()
    for path in _relevant_files(context, ignore_registry_files):
        for changed in changed_paths:
            if path_matches(path, changed, repo_root):
                LOGGER.debug("%s changed since %s", path, changes.base)
                return AnalysisVerdict.DIRTY
    return AnalysisVerdict.CLEAN


def _regions_by_file(regions: Iterable[CoveredRegion]) -> Dict[Path, List[CoveredRegion]]:
    grouped: Dict[Path, List[CoveredRegion]] = {}
    for region in regions:
        grouped.setdefault(region.path, []).append(region)
    return grouped


def _touches(changed: ChangedFile, regions: Sequence[CoveredRegion]) -> bool:
    return any(hunk_overlaps(hunk, region.l1, region.l2) for hunk in changed.hunks for region in regions)


def git_diff_hunks_analysis(
    context: AnalysisContext,
    changes: ChangeSet,
    *,
    repo_root: Path | None = None,
    ignore_registry_files: bool = True,
) -> AnalysisVerdict:
    """Dirty iff a changed hunk overlaps an executed region of the same file.

    Region lines refer to the base revision, so hunks are compared on their
    old side.  A touched file that did not exist at the base revision makes
    the test dirty.
    """

    grouped = _regions_by_file(context.regions)
    for path, regions in grouped.items():
        if ignore_registry_files and file_is_from_registry(path):
            continue
        for changed in changes.files:
            if changed.old_path is not None and path_matches(path, changed.old_path, repo_root):
                if _touches(changed, regions):
                    LOGGER.debug("%s: changed lines overlap executed regions", path)
                    return AnalysisVerdict.DIRTY
            elif changed.new_path is not None and path_matches(path, changed.new_path, repo_root):
                LOGGER.debug("%s was added since %s", path, changes.base)
                return AnalysisVerdict.DIRTY
    return AnalysisVerdict.CLEAN


def analyze(source: AnalysisContext | TestIndex, config: AnalysisConfig | None = None) -> AnalysisVerdict:
    """Run the configured algorithm over ``source``."""

    config = config or AnalysisConfig()
    context = source if isinstance(source, AnalysisContext) else AnalysisContext.from_index(source)

    if config.algorithm is DirtyAlgorithm.FS_MTIME:
        return file_system_mtime_analysis(
            context,
            base_dir=config.base_dir(),
            ignore_registry_files=config.ignore_registry_files,
        )

    changes = config.load_change_set()
    repo_root = config.repository.root if config.repository is not None else config.root
    if config.algorithm is DirtyAlgorithm.GIT_DIFF_FILES:
        return git_diff_files_analysis(
            context,
            changes,
            repo_root=repo_root,
            ignore_registry_files=config.ignore_registry_files,
        )
    return git_diff_hunks_analysis(
        context,
        changes,
        repo_root=repo_root,
        ignore_registry_files=config.ignore_registry_files,
    )


__all__ = [
    "AnalysisConfig",
    "AnalysisContext",
    "AnalysisVerdict",
    "CoveredRegion",
    "DirtyAlgorithm",
    "analyze",
    "file_system_mtime_analysis",
    "git_diff_files_analysis",
    "git_diff_hunks_analysis",
    "hunk_overlaps",
    "path_matches",
]
