"""External tool integrations used by the pipeline."""

from .profiling import REGISTRY_FILES_REGEX, LlvmProfileTools, ProfileTools
from .vcs import ChangedFile, ChangeSet, GitError, GitRepository, Hunk, parse_unified_diff

__all__ = [
    "ChangeSet",
    "ChangedFile",
    "GitError",
    "GitRepository",
    "Hunk",
    "LlvmProfileTools",
    "ProfileTools",
    "REGISTRY_FILES_REGEX",
    "parse_unified_diff",
]
