"""Compact per-test coverage indexes."""

from .compiler import (
    IndexCompilerConfig,
    IndexPathResolver,
    IndexRegion,
    TestIndex,
    TouchSameFilesDifference,
    compare_indexes_touch_same_files,
    compile_test_index,
    file_is_from_registry,
)

__all__ = [
    "IndexCompilerConfig",
    "IndexPathResolver",
    "IndexRegion",
    "TestIndex",
    "TouchSameFilesDifference",
    "compare_indexes_touch_same_files",
    "compile_test_index",
    "file_is_from_registry",
]
