from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from artifact_helpers import ArtifactFactory, export_payload, function_payload
from difftests.cli import app


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    monkeypatch.chdir(root)
    return root


def _prepare_exported(directory: Path, source: Path) -> None:
    """Give ``directory`` up-to-date merged and exported files so no tool runs."""

    document = export_payload(function_payload("main", [str(source)], [[1, 1, 2, 1, 3, 0]]))
    (directory / "merged.profdata").write_bytes(b"merged")
    (directory / "exported.json").write_text(json.dumps(document), encoding="utf-8")


def _write_config(workspace: Path, body: str) -> Path:
    path = workspace / "difftests.yaml"
    path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
    return path


def test_discover_prints_json(workspace: Path, artifacts: ArtifactFactory) -> None:
    artifacts.create("adds")
    runner = CliRunner()

    result = runner.invoke(app, ["discover-difftests", "--root", str(artifacts.root)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert [Path(entry["dir"]).name for entry in payload] == ["adds"]
    assert payload[0]["state"] == "DISCOVERED"


def test_discover_reports_version_mismatch(workspace: Path, artifacts: ArtifactFactory) -> None:
    artifacts.create("old", version="0.0.0-old")
    runner = CliRunner()

    result = runner.invoke(app, ["discover-difftests", "--root", str(artifacts.root)])

    assert result.exit_code == 1
    assert "VersionMismatch" in result.output

    ignored = runner.invoke(
        app,
        ["discover-difftests", "--root", str(artifacts.root), "--ignore-incompatible"],
        catch_exceptions=False,
    )
    assert ignored.exit_code == 0
    assert json.loads(ignored.stdout) == []


def test_analyze_prints_verdict(workspace: Path, artifacts: ArtifactFactory) -> None:
    source = workspace / "lib.rs"
    source.write_text("fn main() {}\n", encoding="utf-8")
    directory = artifacts.create("adds")
    _prepare_exported(directory, source)
    runner = CliRunner()

    result = runner.invoke(app, ["analyze", "--dir", str(directory)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert result.stdout.strip() in {"clean", "dirty"}

    source.unlink()
    missing = runner.invoke(app, ["analyze", "--dir", str(directory)], catch_exceptions=False)
    assert missing.stdout.strip() == "dirty"


def test_analyze_all_exits_non_zero_on_partial_failure(workspace: Path, artifacts: ArtifactFactory) -> None:
    source = workspace / "lib.rs"
    source.write_text("fn main() {}\n", encoding="utf-8")
    good = artifacts.create("good")
    _prepare_exported(good, source)
    broken = artifacts.create("broken")
    (broken / "merged.profdata").write_bytes(b"merged")
    (broken / "exported.json").write_text("{", encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(app, ["analyze-all", "--root", str(artifacts.root)], catch_exceptions=False)

    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert len(payload) == 2
    errors = [entry for entry in payload if "error" in entry]
    assert [entry["error"]["kind"] for entry in errors] == ["DecodeError"]
    assert [Path(entry["difftest"]).name for entry in errors] == ["broken"]


def test_index_strategy_from_config(workspace: Path, artifacts: ArtifactFactory) -> None:
    source = workspace / "lib.rs"
    source.write_text("fn main() {}\n", encoding="utf-8")
    directory = artifacts.create("adds")
    _prepare_exported(directory, source)
    config_path = _write_config(
        workspace,
        f"""
        paths:
          root: {artifacts.root.as_posix()}
          index_root: indexes
        analysis:
          index_strategy: always
        """,
    )
    runner = CliRunner()

    result = runner.invoke(app, ["analyze-all", "--config", str(config_path)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert (workspace / "indexes" / "adds.json").is_file()

    from_index = runner.invoke(
        app,
        ["analyze-all-from-index", "--config", str(config_path)],
        catch_exceptions=False,
    )
    assert from_index.exit_code == 0, from_index.output
    payload = json.loads(from_index.stdout)
    assert [entry["test_desc"]["test_name"] for entry in payload] == ["adds"]
    assert payload[0]["test_desc"]["bin_path"] == ""


def test_invalid_config_is_reported(workspace: Path) -> None:
    config_path = _write_config(workspace, "analysis:\n  algorithm: [unclosed\n")
    runner = CliRunner()

    result = runner.invoke(app, ["discover-difftests", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "ConfigError" in result.output


def test_low_level_index_commands(workspace: Path, artifacts: ArtifactFactory) -> None:
    source = workspace / "lib.rs"
    source.write_text("fn main() {}\n", encoding="utf-8")
    other = workspace / "other.rs"
    other.write_text("fn other() {}\n", encoding="utf-8")
    first_dir = artifacts.create("first")
    _prepare_exported(first_dir, source)
    second_dir = artifacts.create("second")
    document = export_payload(
        function_payload("main", [str(source)], [[1, 1, 2, 1, 3, 0]]),
        function_payload("other", [str(other)], [[1, 1, 2, 1, 1, 0]]),
    )
    (second_dir / "merged.profdata").write_bytes(b"merged")
    (second_dir / "exported.json").write_text(json.dumps(document), encoding="utf-8")
    runner = CliRunner()

    first_index = workspace / "first.json"
    second_index = workspace / "second.json"
    for directory, output in ((first_dir, first_index), (second_dir, second_index)):
        compiled = runner.invoke(
            app,
            ["low-level", "compile-test-index", "--dir", str(directory), "--output", str(output)],
            catch_exceptions=False,
        )
        assert compiled.exit_code == 0, compiled.output
        assert output.is_file()

    analyzed = runner.invoke(
        app,
        ["low-level", "run-analysis-with-test-index", "--index", str(first_index)],
        catch_exceptions=False,
    )
    assert analyzed.exit_code == 0, analyzed.output
    assert analyzed.stdout.strip() in {"clean", "dirty"}

    same = runner.invoke(
        app,
        ["low-level", "indexes-touch-same-files-report", str(first_index), str(first_index), "--action", "assert"],
        catch_exceptions=False,
    )
    assert same.exit_code == 0

    report = runner.invoke(
        app,
        ["low-level", "indexes-touch-same-files-report", str(first_index), str(second_index)],
        catch_exceptions=False,
    )
    assert report.exit_code == 0
    assert json.loads(report.stdout) == [{"second_only": other.as_posix()}]

    different = runner.invoke(
        app,
        ["low-level", "indexes-touch-same-files-report", str(first_index), str(second_index), "--action", "assert"],
        catch_exceptions=False,
    )
    assert different.exit_code == 1


def test_low_level_run_analysis_requires_export(workspace: Path, artifacts: ArtifactFactory) -> None:
    directory = artifacts.create("adds")
    runner = CliRunner()

    result = runner.invoke(app, ["low-level", "run-analysis", "--dir", str(directory)])

    assert result.exit_code == 1
    assert "MissingInput" in result.output


def test_init_config_writes_defaults(workspace: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(app, ["init-config"], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert (workspace / "difftests.yaml").is_file()
    again = runner.invoke(app, ["init-config"], catch_exceptions=False)
    assert again.exit_code == 1
