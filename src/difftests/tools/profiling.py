"""Merge and export steps backed by the LLVM profiling tools.

The pipeline only depends on the :class:`ProfileTools` protocol; the default
:class:`LlvmProfileTools` shells out to ``rust-profdata merge`` and
``rust-cov export`` (any compatible command prefix can be configured).
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Protocol, Sequence

from ..errors import ExternalToolFailed, IoError

LOGGER = logging.getLogger(__name__)

REGISTRY_FILES_REGEX = r"/.cargo/registry"


class ProfileTools(Protocol):
    """Capability used by the pipeline to produce merged and exported profiles."""

    def merge(self, profiles: Sequence[Path], output: Path) -> None:
        """Merge raw ``profiles`` into the database at ``output``."""

    def export(
        self,
        profdata: Path,
        binaries: Sequence[Path],
        output: Path,
        *,
        ignore_filename_regex: str | None = None,
    ) -> None:
        """Export ``profdata`` for ``binaries`` as coverage JSON written to ``output``."""


def _detail(stderr: str | bytes | None) -> str:
    if not stderr:
        return ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    lines = stderr.strip().splitlines()
    return lines[-1] if lines else ""


@dataclass(slots=True)
class LlvmProfileTools:
    """Subprocess implementation of :class:`ProfileTools`."""

    profdata_command: Sequence[str] = ("rust-profdata",)
    cov_command: Sequence[str] = ("rust-cov",)
    cwd: Path | None = None
    _checked: set[str] = field(default_factory=set, repr=False)

    def _require(self, command: Sequence[str]) -> None:
        executable = command[0]
        if executable in self._checked:
            return
        if shutil.which(executable) is None:
            raise ExternalToolFailed(executable, None, f"Executable not available: {executable}")
        self._checked.add(executable)

    def merge(self, profiles: Sequence[Path], output: Path) -> None:
        self._require(self.profdata_command)
        command: List[str] = [*self.profdata_command, "merge", "-sparse"]
        command.extend(str(path) for path in profiles)
        command.extend(["-o", str(output)])

        LOGGER.info("Merging %d profile(s) into %s", len(profiles), output)
        process = subprocess.run(  # noqa: S603 - command is sourced from configuration
            command,
            cwd=self.cwd,
            check=False,
            capture_output=True,
            text=True,
        )
        if process.returncode != 0:
            raise ExternalToolFailed(self.profdata_command[0], process.returncode, _detail(process.stderr))

    def export(
        self,
        profdata: Path,
        binaries: Sequence[Path],
        output: Path,
        *,
        ignore_filename_regex: str | None = None,
    ) -> None:
        if not binaries:
            raise ValueError("export requires at least one binary")
        self._require(self.cov_command)

        primary, *others = binaries
        command: List[str] = [*self.cov_command, "export", "-instr-profile", str(profdata), str(primary)]
        for other in others:
            command.extend(["--object", str(other)])
        if ignore_filename_regex:
            command.extend(["--ignore-filename-regex", ignore_filename_regex])

        LOGGER.info("Exporting %s to %s", profdata, output)
        try:
            with output.open("wb") as handle:
                process = subprocess.run(  # noqa: S603 - command is sourced from configuration
                    command,
                    cwd=self.cwd,
                    check=False,
                    stdout=handle,
                    stderr=subprocess.PIPE,
                )
        except OSError as error:
            raise IoError(error, path=output) from error
        if process.returncode != 0:
            raise ExternalToolFailed(self.cov_command[0], process.returncode, _detail(process.stderr))


__all__ = ["LlvmProfileTools", "ProfileTools", "REGISTRY_FILES_REGEX"]
