from __future__ import annotations

import json
from pathlib import Path

import pytest

from artifact_helpers import ArtifactFactory, FakeProfileTools, set_mtime
from difftests.analysis import AnalysisConfig, AnalysisVerdict
from difftests.batch import (
    IndexStrategy,
    PipelineOptions,
    analyze_all,
    analyze_all_from_index,
    analyze_single_test,
)
from difftests.difftest import ArtifactState, Difftest, discover_difftests
from difftests.errors import MissingInput
from difftests.index import IndexCompilerConfig, IndexPathResolver


def _options(tools: FakeProfileTools, strategy: IndexStrategy = IndexStrategy.NEVER) -> PipelineOptions:
    return PipelineOptions(tools=tools, index_strategy=strategy, index_compiler=IndexCompilerConfig())


def _corrupt_export(directory: Path) -> None:
    (directory / "merged.profdata").write_bytes(b"merged")
    (directory / "exported.json").write_text('{"data": [', encoding="utf-8")


def test_single_test_runs_missing_stages(artifacts: ArtifactFactory, fake_tools: FakeProfileTools) -> None:
    difftest = Difftest.discover_from(artifacts.create("adds"))

    verdict = analyze_single_test(difftest, _options(fake_tools), AnalysisConfig())

    assert verdict is AnalysisVerdict.CLEAN
    assert len(fake_tools.merge_calls) == 1
    assert len(fake_tools.export_calls) == 1
    assert difftest.state is ArtifactState.ANALYZED
    assert difftest.as_dict()["verdict"] == "clean"


def test_single_test_is_dirty_after_source_change(
    artifacts: ArtifactFactory,
    fake_tools: FakeProfileTools,
    source_file: Path,
) -> None:
    difftest = Difftest.discover_from(artifacts.create("adds"))
    set_mtime(source_file, difftest.self_json.stat().st_mtime + 10)

    assert analyze_single_test(difftest, _options(fake_tools), AnalysisConfig()) is AnalysisVerdict.DIRTY


def test_batch_records_partial_failures(artifacts: ArtifactFactory, fake_tools: FakeProfileTools) -> None:
    artifacts.create("a")
    _corrupt_export(artifacts.create("b"))
    artifacts.create("c")

    report = analyze_all(discover_difftests(artifacts.root), _options(fake_tools), AnalysisConfig())

    assert report.has_failures
    by_dir = {result.difftest.name: result for result in report.results}
    assert by_dir["a"].verdict is AnalysisVerdict.CLEAN
    assert by_dir["c"].verdict is AnalysisVerdict.CLEAN
    assert by_dir["b"].verdict is None
    assert by_dir["b"].error is not None
    assert by_dir["b"].error.kind == "DecodeError"
    assert by_dir["b"].test_desc is not None
    assert [result.difftest.name for result in report.failures()] == ["b"]
    assert report.dirty() == []

    payload = json.loads(json.dumps(report.to_jsonable()))
    assert [entry["verdict"] for entry in payload if "verdict" in entry] == ["clean", "clean"]
    assert [entry["error"]["kind"] for entry in payload if "error" in entry] == ["DecodeError"]


def test_parallel_batch_matches_sequential(artifacts: ArtifactFactory, fake_tools: FakeProfileTools) -> None:
    for name in ("a", "b", "c", "d"):
        artifacts.create(name)
    difftests = discover_difftests(artifacts.root)

    sequential = analyze_all(difftests, _options(fake_tools), AnalysisConfig(), jobs=1)
    parallel = analyze_all(difftests, _options(fake_tools), AnalysisConfig(), jobs=3)

    assert sequential.to_jsonable() == parallel.to_jsonable()
    assert not parallel.has_failures


def test_always_strategy_persists_and_reuses_indexes(
    artifacts: ArtifactFactory,
    fake_tools: FakeProfileTools,
    tmp_path: Path,
) -> None:
    resolver = IndexPathResolver.remap(artifacts.root, tmp_path / "indexes")
    directory = artifacts.create("suite/adds")

    first = Difftest.discover_from(directory, resolver)
    analyze_single_test(first, _options(fake_tools, IndexStrategy.ALWAYS), AnalysisConfig())
    assert (tmp_path / "indexes" / "suite" / "adds.json").is_file()

    # Remove the profiling outputs: only the index can answer now.
    (directory / "exported.json").unlink()
    (directory / "merged.profdata").unlink()
    second = Difftest.discover_from(directory, resolver)
    verdict = analyze_single_test(second, _options(fake_tools, IndexStrategy.IF_AVAILABLE), AnalysisConfig())

    assert verdict is AnalysisVerdict.CLEAN
    assert len(fake_tools.merge_calls) == 1


def test_always_strategy_without_index_root_fails(artifacts: ArtifactFactory, fake_tools: FakeProfileTools) -> None:
    difftest = Difftest.discover_from(artifacts.create("adds"))

    with pytest.raises(MissingInput):
        analyze_single_test(difftest, _options(fake_tools, IndexStrategy.ALWAYS), AnalysisConfig())


def test_always_and_clean_keeps_only_the_index(
    artifacts: ArtifactFactory,
    fake_tools: FakeProfileTools,
    tmp_path: Path,
) -> None:
    resolver = IndexPathResolver.remap(artifacts.root, tmp_path / "indexes")
    directory = artifacts.create("adds", children=1)
    difftest = Difftest.discover_from(directory, resolver)

    analyze_single_test(difftest, _options(fake_tools, IndexStrategy.ALWAYS_AND_CLEAN), AnalysisConfig())

    assert (directory / "cargo_difftests_cleaned").exists()
    assert not (directory / "exported.json").exists()
    again = Difftest.discover_from(directory, resolver)
    assert again.cleaned and again.has_index()
    verdict = analyze_single_test(again, _options(fake_tools, IndexStrategy.ALWAYS), AnalysisConfig())
    assert verdict is AnalysisVerdict.CLEAN


def test_undecodable_index_is_recompiled(
    artifacts: ArtifactFactory,
    fake_tools: FakeProfileTools,
    tmp_path: Path,
) -> None:
    resolver = IndexPathResolver.remap(artifacts.root, tmp_path / "indexes")
    directory = artifacts.create("adds")
    analyze_single_test(
        Difftest.discover_from(directory, resolver),
        _options(fake_tools, IndexStrategy.ALWAYS),
        AnalysisConfig(),
    )
    index_path = tmp_path / "indexes" / "adds.json"
    index_path.write_text('{"regions": "nope"}', encoding="utf-8")

    verdict = analyze_single_test(
        Difftest.discover_from(directory, resolver),
        _options(fake_tools, IndexStrategy.ALWAYS),
        AnalysisConfig(),
    )

    assert verdict is AnalysisVerdict.CLEAN
    assert json.loads(index_path.read_text(encoding="utf-8"))["files"]


def test_batch_from_index_records_unreadable_indexes(
    artifacts: ArtifactFactory,
    fake_tools: FakeProfileTools,
    tmp_path: Path,
) -> None:
    index_root = tmp_path / "indexes"
    resolver = IndexPathResolver.remap(artifacts.root, index_root)
    artifacts.create("a")
    artifacts.create("nested/b")
    analyze_all(
        discover_difftests(artifacts.root, index_resolver=resolver),
        _options(fake_tools, IndexStrategy.ALWAYS),
        AnalysisConfig(),
    )
    (index_root / "broken.json").write_text("not json", encoding="utf-8")

    report = analyze_all_from_index(index_root, AnalysisConfig())

    outcomes = {result.index.relative_to(index_root).as_posix(): result for result in report.results}
    assert sorted(outcomes) == ["a.json", "broken.json", "nested/b.json"]
    assert outcomes["a.json"].verdict is AnalysisVerdict.CLEAN
    assert outcomes["nested/b.json"].test_desc.test_name == "nested::b"
    assert outcomes["broken.json"].error.kind == "DecodeError"
    assert report.has_failures


def test_batch_from_missing_index_root(tmp_path: Path) -> None:
    with pytest.raises(MissingInput):
        analyze_all_from_index(tmp_path / "absent", AnalysisConfig())


def test_batch_reports_dirty_tests(
    artifacts: ArtifactFactory,
    fake_tools: FakeProfileTools,
    source_file: Path,
) -> None:
    artifacts.create("a")
    artifacts.create("b")
    difftests = discover_difftests(artifacts.root)
    set_mtime(source_file, max(difftest.self_json.stat().st_mtime for difftest in difftests) + 10)

    report = analyze_all(difftests, _options(fake_tools), AnalysisConfig())

    assert [result.difftest.name for result in report.dirty()] == ["a", "b"]
    assert report.failures() == []


def test_batch_records_undecodable_identity_file(artifacts: ArtifactFactory, fake_tools: FakeProfileTools) -> None:
    artifacts.create("a")
    (artifacts.create("b") / "self.json").write_bytes(b"\xff\xfe{}")

    report = analyze_all(discover_difftests(artifacts.root), _options(fake_tools), AnalysisConfig())

    by_dir = {result.difftest.name: result for result in report.results}
    assert by_dir["a"].verdict is AnalysisVerdict.CLEAN
    assert by_dir["b"].error.kind == "DecodeError"
    assert by_dir["b"].test_desc is None


def test_batch_from_index_records_undecodable_bytes(
    artifacts: ArtifactFactory,
    fake_tools: FakeProfileTools,
    tmp_path: Path,
) -> None:
    index_root = tmp_path / "indexes"
    resolver = IndexPathResolver.remap(artifacts.root, index_root)
    artifacts.create("a")
    analyze_all(
        discover_difftests(artifacts.root, index_resolver=resolver),
        _options(fake_tools, IndexStrategy.ALWAYS),
        AnalysisConfig(),
    )
    (index_root / "garbage.json").write_bytes(b"\xff\xfe\x00binary")

    report = analyze_all_from_index(index_root, AnalysisConfig())

    outcomes = {result.index.name: result for result in report.results}
    assert outcomes["a.json"].verdict is AnalysisVerdict.CLEAN
    assert outcomes["garbage.json"].error.kind == "DecodeError"
