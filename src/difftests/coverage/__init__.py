"""Decoded coverage exporter output."""

from .export_model import (
    CoverageExport,
    CoverageFile,
    CoverageFunction,
    CoverageMapping,
    Region,
    demangle_function_name,
    load_coverage_export,
    parse_coverage_export,
)

__all__ = [
    "CoverageExport",
    "CoverageFile",
    "CoverageFunction",
    "CoverageMapping",
    "Region",
    "demangle_function_name",
    "load_coverage_export",
    "parse_coverage_export",
]
