"""Error taxonomy raised by the difftests pipeline."""

from __future__ import annotations

from pathlib import Path


class DifftestsError(RuntimeError):
    """Base class for every failure the pipeline reports to its caller."""

    kind = "DifftestsError"


class DecodeError(DifftestsError):
    """Raised when a JSON document is malformed or violates its closed schema."""

    kind = "DecodeError"

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        self.path = path
        if path is not None:
            message = f"{message} (in {path})"
        super().__init__(message)


class VersionMismatch(DifftestsError):
    """Raised when an artifact was written by an incompatible engine version."""

    kind = "VersionMismatch"

    def __init__(self, found: str, expected: str, *, path: Path | None = None) -> None:
        self.found = found
        self.expected = expected
        self.path = path
        super().__init__(f"difftests version mismatch: {found} (file) != {expected} (engine)")


class MissingInput(DifftestsError):
    """Raised when a file a pipeline stage depends on does not exist."""

    kind = "MissingInput"

    def __init__(self, what: str, path: Path | None = None) -> None:
        self.what = what
        self.path = path
        message = f"{what} does not exist" if path is None else f"{what} does not exist: {path}"
        super().__init__(message)


class ExternalToolFailed(DifftestsError):
    """Raised when the merge or export tool exits unsuccessfully."""

    kind = "ExternalToolFailed"

    def __init__(self, name: str, exit_status: int | None, detail: str = "") -> None:
        self.name = name
        self.exit_status = exit_status
        if exit_status is None:
            message = f"process failed: {name}"
        else:
            message = f"process failed: {name} (exit status {exit_status})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class IoError(DifftestsError):
    """Raised when the filesystem refuses an operation."""

    kind = "IoError"

    def __init__(self, error: OSError, *, path: Path | None = None) -> None:
        self.path = path
        target = path if path is not None else error.filename
        message = f"IO error: {error.strerror or error}"
        if target:
            message = f"{message} ({target})"
        super().__init__(message)


class ArtifactCleaned(DifftestsError):
    """Raised when profiling stages are requested on a cleaned artifact."""

    kind = "ArtifactCleaned"

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        super().__init__(f"difftest has been cleaned: {directory}")


__all__ = [
    "ArtifactCleaned",
    "DecodeError",
    "DifftestsError",
    "ExternalToolFailed",
    "IoError",
    "MissingInput",
    "VersionMismatch",
]
