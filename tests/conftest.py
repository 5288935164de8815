from __future__ import annotations

import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

HERE = Path(__file__).resolve().parent
ROOT = HERE.parent
SRC = ROOT / "src"

for entry in (SRC, HERE):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

from artifact_helpers import (  # noqa: E402
    ArtifactFactory,
    FakeProfileTools,
    export_payload,
    function_payload,
    set_mtime,
)


@pytest.fixture()
def artifacts(tmp_path: Path) -> ArtifactFactory:
    return ArtifactFactory(root=tmp_path / "difftests")


@pytest.fixture()
def source_file(tmp_path: Path) -> Path:
    """A source file covered by the default fake export, older than any artifact."""

    path = tmp_path / "project" / "src" / "lib.rs"
    path.parent.mkdir(parents=True)
    path.write_text("fn main() {}\n", encoding="utf-8")
    set_mtime(path, 1_000_000_000)
    return path


@pytest.fixture()
def fake_tools(source_file: Path) -> FakeProfileTools:
    document = export_payload(
        function_payload("main", [str(source_file)], [[1, 1, 2, 1, 3, 0], [4, 1, 5, 1, 0, 0]]),
    )
    return FakeProfileTools(export_document=document)


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Create a git repository whose ``src/lib.rs`` has 60 numbered lines."""

    repo_root = tmp_path / "repo"
    repo_root.mkdir()

    def run_git(*cmd: str) -> None:
        subprocess.run(
            ["git", *cmd],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )

    run_git("init")
    run_git("config", "user.email", "difftests@example.com")
    run_git("config", "user.name", "Difftests")

    source = repo_root / "src" / "lib.rs"
    source.parent.mkdir()
    source.write_text("".join(f"// line {number}\n" for number in range(1, 61)), encoding="utf-8")
    (repo_root / "README.md").write_text(
        textwrap.dedent(
            """
            # demo

            Fixture repository for dirtiness analysis tests.
            """
        ).lstrip(),
        encoding="utf-8",
    )

    run_git("add", ".")
    run_git("commit", "-m", "Initial demo state")
    return repo_root
