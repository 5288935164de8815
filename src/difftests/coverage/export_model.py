"""Typed view of the coverage exporter's JSON (``llvm-cov export`` format).

Every object is decoded with a closed schema: unknown keys are rejected so
that a change in the exporter's format surfaces as a :class:`DecodeError`
instead of silently dropping information.  Regions, branches and file
segments travel as fixed-position arrays; they are converted into named
fields at the decode boundary and converted back on serialisation.

Positional layouts::

    region   [l1, c1, l2, c2, execution_count, file_id, expanded_file_id, region_kind]
    branch   [l1, c1, l2, c2, execution_count, false_execution_count,
              file_id, expanded_file_id, region_kind]
    segment  [line, col, count, has_count, is_region_entry, is_gap_region]
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, ClassVar, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_serializer,
    model_validator,
)
from rust_demangler import demangle as rust_demangle

from ..errors import DecodeError, IoError, MissingInput

LOGGER = logging.getLogger(__name__)

_MANGLED_PREFIXES = ("_ZN", "__ZN", "ZN", "_R")


def demangle_function_name(name: str) -> str:
    """Return the readable form of a (possibly file-qualified) symbol name.

    Functions with local linkage are exported as ``<file>:<symbol>``; the
    file prefix is preserved and only the symbol part is demangled.  Names
    that are not Rust symbols are returned unchanged.
    """

    prefix, separator, symbol = name.rpartition(":")
    if not symbol.startswith(_MANGLED_PREFIXES):
        return name
    try:
        readable = rust_demangle(symbol)
    except Exception as error:  # noqa: BLE001 - the demangler raises assorted error types
        LOGGER.debug("Leaving symbol %s mangled: %s", symbol, error)
        return name
    return f"{prefix}{separator}{readable}"


class ExportModel(BaseModel):
    """Closed-schema base for exporter records."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class TupleRecord(ExportModel):
    """Record encoded on the wire as a fixed-length array.

    In JSON mode only the array form is accepted; Python callers may also
    construct instances with keyword arguments.
    """

    _wire_fields: ClassVar[Tuple[str, ...]] = ()

    @model_validator(mode="before")
    @classmethod
    def _decode_tuple(cls, data: Any, info: ValidationInfo) -> Any:
        fields = cls._wire_fields
        if isinstance(data, (list, tuple)):
            if len(data) != len(fields):
                raise ValueError(
                    f"{cls.__name__} expects a {len(fields)}-tuple, got {len(data)} element(s)"
                )
            return dict(zip(fields, data))
        if info.mode == "json":
            raise ValueError(f"{cls.__name__} must be encoded as a {len(fields)}-element array")
        return data

    @model_serializer(mode="plain")
    def _encode_tuple(self) -> List[Any]:
        return [getattr(self, name) for name in self._wire_fields]


class Region(TupleRecord):
    """Source span with its execution count."""

    _wire_fields: ClassVar[Tuple[str, ...]] = (
        "l1",
        "c1",
        "l2",
        "c2",
        "execution_count",
        "file_id",
        "expanded_file_id",
        "region_kind",
    )

    l1: int
    c1: int
    l2: int
    c2: int
    execution_count: int
    file_id: int
    expanded_file_id: int
    region_kind: int


class CoverageBranch(TupleRecord):
    """Branch region with true/false execution counts."""

    _wire_fields: ClassVar[Tuple[str, ...]] = (
        "l1",
        "c1",
        "l2",
        "c2",
        "execution_count",
        "false_execution_count",
        "file_id",
        "expanded_file_id",
        "region_kind",
    )

    l1: int
    c1: int
    l2: int
    c2: int
    execution_count: int
    false_execution_count: int
    file_id: int
    expanded_file_id: int
    region_kind: int


class CoverageFileSegment(TupleRecord):
    """Line/column boundary emitted per file by the exporter."""

    _wire_fields: ClassVar[Tuple[str, ...]] = (
        "line",
        "col",
        "count",
        "has_count",
        "is_region_entry",
        "is_gap_region",
    )

    line: int
    col: int
    count: int
    has_count: bool
    is_region_entry: bool
    is_gap_region: bool


class GenericSummary(ExportModel):
    count: int
    covered: int
    percent: float


class RegionsSummary(GenericSummary):
    notcovered: int


class BranchesSummary(GenericSummary):
    notcovered: int


class FileSummary(ExportModel):
    lines: GenericSummary
    functions: GenericSummary
    instantiations: GenericSummary
    regions: RegionsSummary
    branches: BranchesSummary


class BinarySummary(ExportModel):
    lines: GenericSummary
    functions: GenericSummary
    instantiations: GenericSummary
    regions: RegionsSummary
    branches: BranchesSummary


class Expansion(ExportModel):
    """Macro expansion: the call-site region and the regions it expands to."""

    branches: List[CoverageBranch]
    filenames: List[Path]
    source_region: Region
    target_regions: List[Region]


class CoverageFile(ExportModel):
    filename: Path
    branches: List[CoverageBranch]
    segments: List[CoverageFileSegment]
    expansions: List[Expansion]
    summary: FileSummary
    # Emitted by newer exporters only; kept opaque.
    mcdc_records: Optional[List[Any]] = None


class CoverageFunction(ExportModel):
    """Coverage of one function instantiation.

    ``filenames`` is the function's own file table; ``Region.file_id``
    indexes into it.
    """

    name: str
    count: int
    regions: List[Region]
    branches: List[CoverageBranch]
    filenames: List[Path]
    mcdc_records: Optional[List[Any]] = None

    @field_validator("name")
    @classmethod
    def _demangle(cls, value: str) -> str:
        return demangle_function_name(value)

    @model_validator(mode="after")
    def _check_file_ids(self) -> "CoverageFunction":
        for region in self.regions:
            if not 0 <= region.file_id < len(self.filenames):
                raise ValueError(
                    f"region file_id {region.file_id} out of range for "
                    f"{len(self.filenames)} filename(s) in {self.name}"
                )
        return self

    def filename_of(self, region: Region) -> Path:
        """Return the source file owning ``region``."""

        return self.filenames[region.file_id]


class CoverageMapping(ExportModel):
    """Coverage of one compiled object."""

    functions: List[CoverageFunction]
    files: List[CoverageFile]
    totals: BinarySummary


class CoverageExport(ExportModel):
    """Root of the exporter's JSON document."""

    data: List[CoverageMapping]
    kind: str = Field(alias="type")
    version: str

    def to_json(self) -> str:
        """Serialise back into the exporter's wire format."""

        return self.model_dump_json(by_alias=True, exclude_none=True)


def parse_coverage_export(payload: str | bytes, *, path: Path | None = None) -> CoverageExport:
    """Decode ``payload`` into a :class:`CoverageExport`.

    Raises :class:`DecodeError` for malformed JSON, missing or unknown
    fields, and tuple arity mismatches.
    """

    try:
        return CoverageExport.model_validate_json(payload)
    except ValidationError as error:
        raise DecodeError(f"invalid coverage export: {error}", path=path) from error


def load_coverage_export(path: Path) -> CoverageExport:
    """Read and decode the exported coverage JSON at ``path``."""

    if not path.is_file():
        raise MissingInput("exported coverage file", path)
    LOGGER.debug("Reading exported coverage from %s", path)
    try:
        payload = path.read_bytes()
    except OSError as error:
        raise IoError(error, path=path) from error
    export = parse_coverage_export(payload, path=path)
    LOGGER.debug("Done reading exported coverage from %s", path)
    return export


__all__ = [
    "BinarySummary",
    "BranchesSummary",
    "CoverageBranch",
    "CoverageExport",
    "CoverageFile",
    "CoverageFileSegment",
    "CoverageFunction",
    "CoverageMapping",
    "Expansion",
    "FileSummary",
    "GenericSummary",
    "Region",
    "RegionsSummary",
    "demangle_function_name",
    "load_coverage_export",
    "parse_coverage_export",
]
