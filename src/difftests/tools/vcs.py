"""Minimal git helpers
The helpers below provide just enough structure to locate the repository,
resolve a base revision, and describe how the working tree differs from it.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

from unidiff import PatchSet
from unidiff.errors import UnidiffParseError

from ..errors import DifftestsError

LOGGER = logging.getLogger(__name__)

_NULL_PATH = "/dev/null"


class GitError(DifftestsError):
    """Raised when a git command fails or the repository cannot be used."""

    kind = "GitError"


@dataclass(frozen=True, slots=True)
class Hunk:
    """Contiguous changed line range (``old_lines == 0`` for pure additions)."""

    old_start: int
    old_lines: int
    new_start: int
    new_lines: int


@dataclass(frozen=True, slots=True)
class ChangedFile:
    """A file that differs between the base revision and the working tree."""

    old_path: Path | None
    new_path: Path | None
    hunks: Tuple[Hunk, ...] = ()


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """Every change between ``base`` and the working tree."""

    base: str
    files: Tuple[ChangedFile, ...]

    def paths(self) -> List[Path]:
        seen: List[Path] = []
        for changed in self.files:
            for candidate in (changed.new_path, changed.old_path):
                if candidate is not None and candidate not in seen:
                    seen.append(candidate)
        return seen


def _side_path(name: str, prefix: str) -> Path | None:
    if name == _NULL_PATH:
        return None
    if name.startswith(prefix):
        name = name[len(prefix):]
    return Path(name)


def parse_unified_diff(diff_text: str, *, base: str = "") -> ChangeSet:
    """Parse ``git diff`` output into a :class:`ChangeSet`."""

    try:
        patch = PatchSet(diff_text)
    except UnidiffParseError as error:
        raise GitError(f"unable to parse git diff output: {error}") from error

    files: List[ChangedFile] = []
    for patched in patch:
        hunks = tuple(
            Hunk(
                old_start=hunk.source_start,
                old_lines=hunk.source_length,
                new_start=hunk.target_start,
                new_lines=hunk.target_length,
            )
            for hunk in patched
        )
        old_path = _side_path(patched.source_file, "a/")
        new_path = _side_path(patched.target_file, "b/")
        if old_path is None and new_path is None:
            continue
        files.append(ChangedFile(old_path=old_path, new_path=new_path, hunks=hunks))
    return ChangeSet(base=base, files=tuple(files))


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        try:
            process = subprocess.run(
                command,
                cwd=self.root,
                capture_output=True,
                text=False,
                check=False,
            )
        except OSError as error:
            raise GitError(f"git {' '.join(args)} failed: {error}") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # ------------------------------------------------------------- revisions
    def resolve_commit(self, revision: str = "HEAD") -> str:
        """Return the full SHA of the commit ``revision`` names."""

        result = self._run_git(["rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}"], check=False)
        sha = result.stdout.strip()
        if result.returncode != 0 or not sha:
            raise GitError(f"Unknown commit: {revision}")
        return sha

    # ----------------------------------------------------------- diff helpers
    def diff_against(self, revision: str = "HEAD") -> str:
        """Return the zero-context diff from ``revision``'s tree to the working tree."""

        commit = self.resolve_commit(revision)
        args: List[str] = [
            "-c",
            "core.quotepath=off",
            "diff",
            "--no-color",
            "--no-ext-diff",
            "--no-renames",
            "--unified=0",
            "--src-prefix=a/",
            "--dst-prefix=b/",
            commit,
            "--",
        ]
        result = self._run_git(args, check=True)
        return result.stdout

    def change_set(self, revision: str | None = None) -> ChangeSet:
        """Describe how the working tree differs from ``revision`` (default ``HEAD``)."""

        revision = revision or "HEAD"
        changes = parse_unified_diff(self.diff_against(revision), base=revision)
        LOGGER.debug("%d file(s) changed since %s", len(changes.files), revision)
        return changes


__all__ = [
    "ChangeSet",
    "ChangedFile",
    "GitError",
    "GitRepository",
    "Hunk",
    "parse_unified_diff",
]
