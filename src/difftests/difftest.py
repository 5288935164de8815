"""Test-run artifacts ("difftests") and the staged pipeline they go through.

A difftest directory is written by the test client while the test runs::

    self.json                  test identity
    cargo_difftests_version    engine version marker
    self.profraw               raw profile of the test process
    <module>_<pid>.profraw     raw profiles of spawned children

The pipeline then adds ``merged.profdata`` (merge stage), ``exported.json``
(export stage) and, optionally, a persisted index stored outside the
directory (see :class:`~difftests.index.IndexPathResolver`).  Every stage
checks whether its output already exists and is not older than its inputs,
and only recomputes when that check fails or when forced.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from .analysis import AnalysisVerdict
from .core import (
    CLEANED_FILENAME,
    ENGINE_VERSION,
    EXPORTED_FILENAME,
    MERGED_PROFDATA_FILENAME,
    PROFDATA_EXTENSION,
    PROFILE_EXTENSION,
    SELF_JSON_FILENAME,
    SELF_PROFILE_FILENAME,
    VERSION_FILENAME,
    TestDesc,
)
from .coverage.export_model import CoverageExport, load_coverage_export
from .errors import ArtifactCleaned, DecodeError, IoError, MissingInput, VersionMismatch
from .index.compiler import IndexCompilerConfig, IndexPathResolver, TestIndex, compile_test_index
from .tools.profiling import REGISTRY_FILES_REGEX, ProfileTools

LOGGER = logging.getLogger(__name__)


class ArtifactState(str, Enum):
    """Furthest pipeline stage whose output is available for an artifact."""

    DISCOVERED = "DISCOVERED"
    HAS_MERGED_PROFILE = "HAS_MERGED_PROFILE"
    HAS_EXPORTED_JSON = "HAS_EXPORTED_JSON"
    HAS_INDEX = "HAS_INDEX"
    ANALYZED = "ANALYZED"


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError as error:
        raise IoError(error, path=path) from error


def _is_fresh(output: Path, inputs: Iterable[Path]) -> bool:
    """Return ``True`` when ``output`` exists and is not older than any input."""

    if not output.is_file():
        return False
    output_mtime = _mtime(output)
    return all(output_mtime >= _mtime(path) for path in inputs)


def mtime_as_datetime(path: Path) -> datetime:
    """Return the modification time of ``path`` as an aware UTC datetime."""

    return datetime.fromtimestamp(_mtime(path), tz=timezone.utc)


@dataclass(slots=True)
class ExportConfig:
    """Options for :meth:`Difftest.export`.

    ``other_binaries`` lists extra instrumented binaries (e.g. helper
    processes the test spawned) whose coverage should be resolved too.
    """

    ignore_registry_files: bool = True
    other_binaries: Sequence[Path] = ()
    test_desc: TestDesc | None = None
    force: bool = False


@dataclass(slots=True)
class Difftest:
    """A discovered test-run artifact directory."""

    dir: Path
    self_json: Path
    self_profraw: Path
    other_profraws: List[Path] = field(default_factory=list)
    profdata_file: Optional[Path] = None
    exported_file: Optional[Path] = None
    index_path: Optional[Path] = None
    index_file: Optional[Path] = None
    cleaned: bool = False
    verdict: Optional[AnalysisVerdict] = None

    # ------------------------------------------------------------- discovery
    @classmethod
    def discover_from(
        cls,
        directory: Path,
        index_resolver: IndexPathResolver | None = None,
    ) -> "Difftest":
        """Load the artifact stored in ``directory``.

        Raises :class:`MissingInput` when the identity file, self profile or
        version marker is absent and :class:`VersionMismatch` when the marker
        names another engine version.
        """

        directory = Path(directory)
        self_json = directory / SELF_JSON_FILENAME
        if not self_json.is_file():
            raise MissingInput("self json", self_json)

        self_profraw = directory / SELF_PROFILE_FILENAME
        if not self_profraw.exists():
            raise MissingInput("self profraw", self_profraw)

        version_file = directory / VERSION_FILENAME
        if not version_file.is_file():
            raise MissingInput("version marker", version_file)
        try:
            version = version_file.read_bytes().decode("utf-8", errors="replace").strip()
        except OSError as error:
            raise IoError(error, path=version_file) from error
        if version != ENGINE_VERSION:
            raise VersionMismatch(version, ENGINE_VERSION, path=version_file)

        other_profraws: List[Path] = []
        profdata_file: Optional[Path] = None
        cleaned = False
        try:
            entries = sorted(directory.iterdir())
        except OSError as error:
            raise IoError(error, path=directory) from error
        for entry in entries:
            if not entry.is_file():
                continue
            if entry.suffix == PROFILE_EXTENSION and entry.name != SELF_PROFILE_FILENAME:
                other_profraws.append(entry)
            elif entry.suffix == PROFDATA_EXTENSION:
                if profdata_file is None:
                    profdata_file = entry
                else:
                    LOGGER.warning("multiple profdata files found in difftest directory: %s", directory)
                    LOGGER.warning("ignoring: %s", entry)
            elif entry.name == CLEANED_FILENAME:
                cleaned = True

        exported = directory / EXPORTED_FILENAME
        exported_file = exported if exported.is_file() else None

        difftest = cls(
            dir=directory,
            self_json=self_json,
            self_profraw=self_profraw,
            other_profraws=other_profraws,
            profdata_file=profdata_file,
            exported_file=exported_file,
            cleaned=cleaned,
        )
        if index_resolver is not None:
            difftest.index_path = index_resolver.resolve(directory)
            difftest.index_file = difftest._valid_index_file()
        return difftest

    def _valid_index_file(self) -> Optional[Path]:
        candidate = self.index_path
        if candidate is None:
            return None
        if not candidate.exists():
            LOGGER.debug("index data file does not exist: %s", candidate)
            return None
        if not candidate.is_file():
            LOGGER.debug("index data file is not a file: %s", candidate)
            return None
        inputs = [self.self_json]
        if self.exported_file is not None:
            inputs.append(self.exported_file)
        if not _is_fresh(candidate, inputs):
            LOGGER.warning("index data file is older than its inputs: %s", candidate)
            return None
        return candidate

    # ---------------------------------------------------------------- queries
    @property
    def state(self) -> ArtifactState:
        if self.verdict is not None:
            return ArtifactState.ANALYZED
        if self.index_file is not None:
            return ArtifactState.HAS_INDEX
        if self.cleaned:
            return ArtifactState.DISCOVERED
        if self.exported_file is not None:
            return ArtifactState.HAS_EXPORTED_JSON
        if self.profdata_file is not None:
            return ArtifactState.HAS_MERGED_PROFILE
        return ArtifactState.DISCOVERED

    def has_index(self) -> bool:
        return self.index_file is not None

    def test_run_at(self) -> datetime:
        """When the test last ran: the identity file's modification time."""

        return mtime_as_datetime(self.self_json)

    def load_test_desc(self) -> TestDesc:
        """Parse ``self.json`` into a :class:`TestDesc`."""

        try:
            payload = self.self_json.read_bytes()
        except OSError as error:
            raise IoError(error, path=self.self_json) from error
        try:
            return TestDesc.model_validate_json(payload)
        except (ValidationError, UnicodeDecodeError) as error:
            raise DecodeError(f"invalid test description: {error}", path=self.self_json) from error

    def as_dict(self) -> Dict[str, Any]:
        """JSON-friendly description used by the discovery command."""

        def _opt(path: Optional[Path]) -> Optional[str]:
            return str(path) if path is not None else None

        return {
            "dir": str(self.dir),
            "self_json": str(self.self_json),
            "self_profraw": str(self.self_profraw),
            "other_profraws": [str(path) for path in self.other_profraws],
            "profdata_file": _opt(self.profdata_file),
            "exported_profdata_file": _opt(self.exported_file),
            "index_data": _opt(self.index_file),
            "cleaned": self.cleaned,
            "state": self.state.value,
            "verdict": self.verdict.value if self.verdict is not None else None,
        }

    # ----------------------------------------------------------------- stages
    def merge(self, tools: ProfileTools, *, force: bool = False) -> Path:
        """Merge the raw profiles into ``merged.profdata``.

        Skipped when a merged database exists and is not older than every
        raw profile, unless ``force``.
        """

        if self.cleaned:
            raise ArtifactCleaned(self.dir)

        profiles = [self.self_profraw, *self.other_profraws]
        if self.profdata_file is not None and not force and _is_fresh(self.profdata_file, profiles):
            LOGGER.debug("Reusing merged profile %s", self.profdata_file)
            return self.profdata_file

        output = self.dir / MERGED_PROFDATA_FILENAME
        tools.merge(profiles, output)
        if not output.is_file():
            raise MissingInput("merged profile database", output)
        self.profdata_file = output
        return output

    def export(self, tools: ProfileTools, config: ExportConfig | None = None) -> Path:
        """Export the merged database into ``exported.json``."""

        config = config or ExportConfig()
        if self.cleaned:
            raise ArtifactCleaned(self.dir)
        if self.profdata_file is None:
            raise MissingInput("merged profile database", self.dir / MERGED_PROFDATA_FILENAME)

        if (
            self.exported_file is not None
            and not config.force
            and _is_fresh(self.exported_file, [self.profdata_file])
        ):
            LOGGER.debug("Reusing exported coverage %s", self.exported_file)
            return self.exported_file

        test_desc = config.test_desc or self.load_test_desc()
        binaries = [test_desc.bin_path]
        binaries.extend(Path(os.path.abspath(other)) for other in config.other_binaries)

        output = self.dir / EXPORTED_FILENAME
        self.exported_file = None
        try:
            tools.export(
                self.profdata_file,
                binaries,
                output,
                ignore_filename_regex=REGISTRY_FILES_REGEX if config.ignore_registry_files else None,
            )
        except Exception:
            output.unlink(missing_ok=True)
            raise
        if not output.is_file():
            raise MissingInput("exported coverage file", output)
        self.exported_file = output
        return output

    def read_exported(self) -> CoverageExport:
        if self.exported_file is None:
            raise MissingInput("exported coverage file", self.dir / EXPORTED_FILENAME)
        return load_coverage_export(self.exported_file)

    def compile_index(self, config: IndexCompilerConfig, *, test_desc: TestDesc | None = None) -> TestIndex:
        """Compile the exported coverage into a :class:`TestIndex` (not persisted)."""

        LOGGER.info("Compiling test index data for %s", self.dir)
        export = self.read_exported()
        index = compile_test_index(
            export,
            config,
            test_desc=test_desc or self.load_test_desc(),
            test_run=self.test_run_at(),
        )
        LOGGER.info("Done compiling test index data for %s", self.dir)
        return index

    def write_index(self, index: TestIndex, path: Path | None = None) -> Path:
        """Persist ``index`` at ``path`` (defaults to the resolved index path)."""

        target = path or self.index_path
        if target is None:
            raise MissingInput("index path (no index root configured)")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise IoError(error, path=target.parent) from error
        index.write_to_file(target)
        if path is None or path == self.index_path:
            self.index_file = target
        return target

    def read_index(self) -> Optional[TestIndex]:
        """Return the persisted index, or ``None`` when there is no valid one."""

        if self.index_file is None:
            return None
        return TestIndex.read_from_file(self.index_file)

    def clean(self) -> None:
        """Drop the profiling data, keeping only identity and marker files.

        A cleaned artifact can no longer be merged or exported; its persisted
        index (if any) stays usable.
        """

        try:
            for attribute in ("profdata_file", "exported_file"):
                path = getattr(self, attribute)
                if path is not None:
                    path.unlink(missing_ok=True)
                setattr(self, attribute, None)
            self.self_profraw.write_bytes(b"")
            for profile in self.other_profraws:
                profile.unlink(missing_ok=True)
            self.other_profraws = []
            (self.dir / CLEANED_FILENAME).write_bytes(b"")
        except OSError as error:
            raise IoError(error, path=self.dir) from error
        self.cleaned = True
        LOGGER.info("Cleaned profiling data from %s", self.dir)


def discover_difftests(
    root: Path,
    *,
    ignore_incompatible: bool = False,
    index_resolver: IndexPathResolver | None = None,
) -> List[Difftest]:
    """Find every difftest directory below ``root``.

    A directory holding ``self.json`` is an artifact and is not searched
    further; other directories are searched recursively.  Artifacts written
    by another engine version raise :class:`VersionMismatch` unless
    ``ignore_incompatible``, in which case they are skipped.
    """

    root = Path(root)
    if not root.is_dir():
        LOGGER.warning("Directory %s does not exist", root)
        return []

    discovered: List[Difftest] = []
    _discover_into(root, discovered, ignore_incompatible, index_resolver)
    return discovered


def _discover_into(
    directory: Path,
    discovered: List[Difftest],
    ignore_incompatible: bool,
    index_resolver: IndexPathResolver | None,
) -> None:
    if (directory / SELF_JSON_FILENAME).is_file():
        try:
            discovered.append(Difftest.discover_from(directory, index_resolver))
        except VersionMismatch as error:
            if not ignore_incompatible:
                raise
            LOGGER.warning("Skipping incompatible difftest %s: %s", directory, error)
        return

    try:
        children = sorted(entry for entry in directory.iterdir() if entry.is_dir())
    except OSError as error:
        raise IoError(error, path=directory) from error
    for child in children:
        _discover_into(child, discovered, ignore_incompatible, index_resolver)


__all__ = [
    "ArtifactState",
    "Difftest",
    "ExportConfig",
    "discover_difftests",
    "mtime_as_datetime",
]
