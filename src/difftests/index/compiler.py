"""Compile exported coverage into a compact, persisted per-test index.

A :class:`TestIndex` keeps only what the dirtiness analysis needs: the
regions that executed at least once, a deduplicated file table they point
into, the time the test last produced this coverage, and the test identity.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, ClassVar, Dict, List, Literal, Optional, Tuple

from pydantic import Field, ValidationError, model_validator

from ..core import RecordModel, TestDesc
from ..coverage.export_model import CoverageExport, TupleRecord
from ..errors import DecodeError, IoError, MissingInput

LOGGER = logging.getLogger(__name__)


def cargo_home() -> Path:
    """Return the directory holding the dependency registry sources."""

    configured = os.environ.get("CARGO_HOME")
    if configured:
        return Path(configured)
    return Path.home() / ".cargo"


def file_is_from_registry(path: Path) -> bool:
    """Return ``True`` when ``path`` lies inside the dependency registry."""

    return Path(path).is_relative_to(cargo_home() / "registry")


class IndexRegion(TupleRecord):
    """Executed region kept in a :class:`TestIndex` (``[l1, c1, l2, c2, count, file_id]``)."""

    _wire_fields: ClassVar[Tuple[str, ...]] = ("l1", "c1", "l2", "c2", "count", "file_id")

    l1: int
    c1: int
    l2: int
    c2: int
    count: int = Field(gt=0)
    file_id: int = Field(ge=0)


class TestIndex(RecordModel):
    """Executed regions of a single test, plus the files they live in."""

    __test__ = False  # not a pytest test class

    regions: List[IndexRegion] = Field(default_factory=list)
    files: List[Path] = Field(default_factory=list)
    test_run: datetime
    test_desc: TestDesc

    @model_validator(mode="after")
    def _check_file_ids(self) -> "TestIndex":
        for region in self.regions:
            if region.file_id >= len(self.files):
                raise ValueError(
                    f"region file_id {region.file_id} out of range for {len(self.files)} file(s)"
                )
        return self

    def file_of(self, region: IndexRegion) -> Path:
        return self.files[region.file_id]

    def to_json(self) -> str:
        return self.model_dump_json()

    def write_to_file(self, path: Path) -> None:
        """Persist the index as JSON at ``path``."""

        try:
            path.write_text(self.to_json(), encoding="utf-8")
        except OSError as error:
            raise IoError(error, path=path) from error

    @classmethod
    def read_from_file(cls, path: Path) -> "TestIndex":
        """Load a persisted index, validating its invariants."""

        if not path.is_file():
            raise MissingInput("index file", path)
        try:
            payload = path.read_bytes()
        except OSError as error:
            raise IoError(error, path=path) from error
        try:
            return cls.model_validate_json(payload)
        except (ValidationError, UnicodeDecodeError) as error:
            raise DecodeError(f"invalid test index: {error}", path=path) from error


def _accept_all(_: Path) -> bool:
    return True


def _keep_filename(path: Path) -> Path:
    return path


@dataclass(slots=True)
class IndexCompilerConfig:
    """Knobs for :func:`compile_test_index`.

    ``accept_file`` sees the filename exactly as exported; rejected files
    contribute no regions.  ``index_filename_converter`` rewrites accepted
    filenames before they are interned (e.g. to repository-relative paths).
    ``remove_bin_path`` blanks the usually absolute binary path.
    """

    accept_file: Callable[[Path], bool] = _accept_all
    index_filename_converter: Callable[[Path], Path] = _keep_filename
    remove_bin_path: bool = False

    @classmethod
    def from_flags(
        cls,
        *,
        ignore_registry_files: bool = True,
        flatten_root: Path | None = None,
        remove_bin_path: bool = True,
    ) -> "IndexCompilerConfig":
        """Build the configuration the CLI uses from its flags."""

        def accept(path: Path) -> bool:
            return not (ignore_registry_files and file_is_from_registry(path))

        def convert(path: Path) -> Path:
            if flatten_root is None:
                return path
            try:
                return path.relative_to(flatten_root)
            except ValueError:
                return path

        return cls(
            accept_file=accept,
            index_filename_converter=convert,
            remove_bin_path=remove_bin_path,
        )


def compile_test_index(
    export: CoverageExport,
    config: IndexCompilerConfig,
    *,
    test_desc: TestDesc,
    test_run: datetime,
) -> TestIndex:
    """Reduce ``export`` to a :class:`TestIndex`.

    Zero-count regions and regions in rejected files are dropped.  File ids
    are assigned in first-seen order while walking mappings, functions and
    regions in export order, so the same export and configuration always
    produce the same index.
    """

    desc = test_desc.model_copy(deep=True)
    if config.remove_bin_path:
        desc.bin_path = Path()

    file_ids: Dict[Path, int] = {}
    files: List[Path] = []
    regions: List[IndexRegion] = []

    for mapping in export.data:
        for function in mapping.functions:
            for region in function.regions:
                if region.execution_count == 0:
                    continue

                filename = function.filename_of(region)
                if not config.accept_file(filename):
                    continue

                converted = config.index_filename_converter(filename)
                file_id = file_ids.get(converted)
                if file_id is None:
                    file_id = len(files)
                    file_ids[converted] = file_id
                    files.append(converted)

                regions.append(
                    IndexRegion(
                        l1=region.l1,
                        c1=region.c1,
                        l2=region.l2,
                        c2=region.c2,
                        count=region.execution_count,
                        file_id=file_id,
                    )
                )

    LOGGER.debug("Indexed %d region(s) across %d file(s)", len(regions), len(files))
    return TestIndex(regions=regions, files=files, test_run=test_run, test_desc=desc)


@dataclass(slots=True)
class IndexPathResolver:
    """Maps an artifact directory to the path of its persisted index."""

    resolve_fn: Callable[[Path], Optional[Path]]

    @classmethod
    def remap(cls, source_root: Path, index_root: Path) -> "IndexPathResolver":
        """Mirror the artifact tree under ``source_root`` into ``index_root``.

        ``<source_root>/a/b`` resolves to ``<index_root>/a/b.json``.
        """

        source = Path(os.path.abspath(source_root))
        target_root = Path(index_root)

        def resolve(directory: Path) -> Optional[Path]:
            try:
                relative = Path(os.path.abspath(directory)).relative_to(source)
            except ValueError:
                return None
            if not relative.parts:
                return target_root / "index.json"
            target = target_root.joinpath(*relative.parts)
            return target.with_name(f"{target.name}.json")

        return cls(resolve_fn=resolve)

    def resolve(self, directory: Path) -> Optional[Path]:
        return self.resolve_fn(directory)


@dataclass(frozen=True, slots=True)
class TouchSameFilesDifference:
    """A file touched by only one of two compared indexes."""

    side: Literal["first_only", "second_only"]
    path: Path

    def as_dict(self) -> Dict[str, str]:
        return {self.side: self.path.as_posix()}


def compare_indexes_touch_same_files(first: TestIndex, second: TestIndex) -> List[TouchSameFilesDifference]:
    """Return the files touched by exactly one of ``first`` and ``second``.

    An empty list means both indexes touch the same set of files.
    """

    first_files = set(first.files)
    second_files = set(second.files)
    differences: List[TouchSameFilesDifference] = [
        TouchSameFilesDifference("first_only", path)
        for path in sorted(first_files - second_files, key=lambda item: item.as_posix())
    ]
    differences.extend(
        TouchSameFilesDifference("second_only", path)
        for path in sorted(second_files - first_files, key=lambda item: item.as_posix())
    )
    return differences


__all__ = [
    "IndexCompilerConfig",
    "IndexPathResolver",
    "IndexRegion",
    "TestIndex",
    "TouchSameFilesDifference",
    "cargo_home",
    "compare_indexes_touch_same_files",
    "compile_test_index",
    "file_is_from_registry",
]
