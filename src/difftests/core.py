"""On-disk contract shared by the test client and the analysis engine."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

ENGINE_VERSION = "0.1.0"

VERSION_FILENAME = "cargo_difftests_version"
SELF_JSON_FILENAME = "self.json"
SELF_PROFILE_FILENAME = "self.profraw"
OTHER_PROFILE_FILENAME_TEMPLATE = "%m_%p.profraw"
PROFILE_EXTENSION = ".profraw"
PROFDATA_EXTENSION = ".profdata"
MERGED_PROFDATA_FILENAME = "merged.profdata"
EXPORTED_FILENAME = "exported.json"
CLEANED_FILENAME = "cargo_difftests_cleaned"


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class TestDesc(RecordModel):
    """Identity of a single test, as written to ``self.json`` by the test client.

    Only ``bin_path`` is interpreted by the engine (it is the binary handed to
    the export step); the remaining fields identify the test in reports.
    """

    __test__ = False  # not a pytest test class

    pkg_name: str
    crate_name: str
    bin_name: Optional[str] = None
    bin_path: Path
    test_name: str
    other_fields: Dict[str, str] = Field(default_factory=dict)

    @field_serializer("bin_path")
    def _serialise_bin_path(self, value: Path) -> str:
        # Indexes may blank the binary path; keep it blank on the wire.
        return "" if value == Path() else str(value)


__all__ = [
    "CLEANED_FILENAME",
    "ENGINE_VERSION",
    "EXPORTED_FILENAME",
    "MERGED_PROFDATA_FILENAME",
    "OTHER_PROFILE_FILENAME_TEMPLATE",
    "PROFDATA_EXTENSION",
    "PROFILE_EXTENSION",
    "RecordModel",
    "SELF_JSON_FILENAME",
    "SELF_PROFILE_FILENAME",
    "TestDesc",
    "VERSION_FILENAME",
]
