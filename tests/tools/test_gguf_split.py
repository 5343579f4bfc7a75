from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List

import pytest

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
for entry in (ROOT, SRC):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

from gguf_split.codec import read_container
from gguf_split.common import (
    ConfigurationError,
    KV_SPLIT_COUNT,
    KV_SPLIT_NO,
    KV_SPLIT_TENSORS_COUNT,
    NamingMismatchError,
    ShardIOError,
    SizeLimitError,
    SourceFormatError,
)
from gguf_split.tools import gguf_split
from tests.gguf_fixtures import write_archive


def _data_region(path: Path) -> bytes:
    container = read_container(path)
    return path.read_bytes()[container.data_offset :]


def _shard_files(directory: Path) -> List[Path]:
    return sorted(directory.glob("shard-*-of-*.gguf"))


@pytest.fixture
def archive(tmp_path: Path) -> Path:
    return write_archive(tmp_path / "model.gguf", n_tensors=10, tensor_bytes=100)


@pytest.mark.parametrize(
    "kwargs, expected_counts",
    [
        ({"max_tensors": 3}, [3, 3, 3, 1]),
        ({"max_tensors": 128}, [10]),
        ({"max_size": 256}, [2, 2, 2, 2, 2]),
        ({"max_tensors": 4, "no_tensor_in_metadata": True}, [0, 4, 4, 2]),
        ({"max_size": "1M", "no_tensor_in_metadata": True}, [0, 10]),
    ],
)
def test_split_then_merge_restores_tensor_data(
    tmp_path: Path, archive: Path, kwargs, expected_counts: List[int]
) -> None:
    out_dir = tmp_path / "out"
    out_dir.mkdir()

    summary = gguf_split.split_archive(archive, out_dir / "shard", **kwargs)

    files = _shard_files(out_dir)
    n_split = len(expected_counts)
    assert [p.name for p in files] == [f"shard-{i:05d}-of-{n_split:05d}.gguf" for i in range(1, n_split + 1)]
    assert [info.tensor_count for info in summary.shards] == expected_counts
    assert [info.file_bytes for info in summary.shards] == [p.stat().st_size for p in files]

    for index, path in enumerate(files):
        shard = read_container(path)
        assert shard.metadata.get_value(KV_SPLIT_NO) == index
        assert shard.metadata.get_value(KV_SPLIT_COUNT) == n_split
        assert shard.metadata.get_value(KV_SPLIT_TENSORS_COUNT) == 10
        assert len(shard.tensors) == expected_counts[index]
        if index > 0:
            assert "general.name" not in shard.metadata

    merged_path = tmp_path / "merged.gguf"
    merge = gguf_split.merge_archives(files[0], merged_path)

    assert merge.shard_count == n_split
    assert merge.tensor_count == 10
    assert merge.file_bytes == merged_path.stat().st_size
    assert _data_region(merged_path) == _data_region(archive)

    original = read_container(archive)
    merged = read_container(merged_path)
    assert [t.name for t in merged.tensors] == [t.name for t in original.tensors]
    assert [t.offset for t in merged.tensors] == [t.offset for t in original.tensors]
    for key in original.metadata.keys():
        assert merged.metadata.get_value(key) == original.metadata.get_value(key)
    assert merged.metadata.get_value(KV_SPLIT_COUNT) == 0


def test_split_merge_is_idempotent_on_merged_output(tmp_path: Path, archive: Path) -> None:
    first_dir = tmp_path / "first"
    second_dir = tmp_path / "second"
    first_dir.mkdir()
    second_dir.mkdir()

    gguf_split.split_archive(archive, first_dir / "shard", max_tensors=3)
    once = tmp_path / "once.gguf"
    gguf_split.merge_archives(_shard_files(first_dir)[0], once)

    gguf_split.split_archive(once, second_dir / "shard", max_tensors=4)
    twice = tmp_path / "twice.gguf"
    gguf_split.merge_archives(_shard_files(second_dir)[0], twice)

    assert twice.read_bytes() == once.read_bytes()


def test_split_of_archive_without_tensors_writes_one_shard(tmp_path: Path) -> None:
    empty = write_archive(tmp_path / "empty.gguf", n_tensors=0)

    summary = gguf_split.split_archive(empty, tmp_path / "part", max_tensors=3)

    assert summary.shard_count == 1
    shard = read_container(tmp_path / "part-00001-of-00001.gguf")
    assert shard.tensors == ()
    assert shard.metadata.get_value(KV_SPLIT_COUNT) == 1
    assert shard.metadata.get_value("general.name") == "split fixture"


def test_split_template_extension_is_not_repeated(tmp_path: Path, archive: Path) -> None:
    gguf_split.split_archive(archive, tmp_path / "named.gguf", max_tensors=5)

    assert (tmp_path / "named-00001-of-00002.gguf").exists()
    assert (tmp_path / "named-00002-of-00002.gguf").exists()


def test_split_rejects_tensor_larger_than_size_cap_before_writing(tmp_path: Path) -> None:
    source = write_archive(tmp_path / "model.gguf", tensor_bytes=[100, 400, 100])
    out_dir = tmp_path / "out"
    out_dir.mkdir()

    with pytest.raises(SizeLimitError) as excinfo:
        gguf_split.split_archive(source, out_dir / "shard", max_size=256)

    assert excinfo.value.tensor_index == 1
    assert list(out_dir.iterdir()) == []


def test_split_dry_run_plans_without_writing(tmp_path: Path, archive: Path) -> None:
    out_dir = tmp_path / "out"
    out_dir.mkdir()

    planned = gguf_split.split_archive(archive, out_dir / "shard", max_tensors=3, dry_run=True)

    assert planned.dry_run
    assert list(out_dir.iterdir()) == []

    written = gguf_split.split_archive(archive, out_dir / "shard", max_tensors=3)
    assert [info.file_bytes for info in planned.shards] == [info.file_bytes for info in written.shards]


def test_merge_dry_run_predicts_file_size(tmp_path: Path, archive: Path) -> None:
    gguf_split.split_archive(archive, tmp_path / "shard", max_tensors=4)
    first = tmp_path / "shard-00001-of-00003.gguf"

    planned = gguf_split.merge_archives(first, tmp_path / "merged.gguf", dry_run=True)
    assert not (tmp_path / "merged.gguf").exists()

    written = gguf_split.merge_archives(first, tmp_path / "merged.gguf")
    assert planned.file_bytes == written.file_bytes


def test_merge_rejects_archive_without_split_count(tmp_path: Path, archive: Path) -> None:
    with pytest.raises(SourceFormatError, match=KV_SPLIT_COUNT):
        gguf_split.merge_archives(archive, tmp_path / "merged.gguf")


def test_merge_rejects_merged_output_as_input(tmp_path: Path, archive: Path) -> None:
    gguf_split.split_archive(archive, tmp_path / "shard", max_tensors=5)
    merged = tmp_path / "merged.gguf"
    gguf_split.merge_archives(tmp_path / "shard-00001-of-00002.gguf", merged)

    with pytest.raises(SourceFormatError):
        gguf_split.merge_archives(merged, tmp_path / "again.gguf")


def test_merge_reports_missing_shard_before_writing(tmp_path: Path, archive: Path) -> None:
    gguf_split.split_archive(archive, tmp_path / "shard", max_tensors=3)
    (tmp_path / "shard-00003-of-00004.gguf").unlink()
    output = tmp_path / "merged.gguf"

    with pytest.raises(ShardIOError):
        gguf_split.merge_archives(tmp_path / "shard-00001-of-00004.gguf", output)

    assert not output.exists()


def test_merge_rejects_renamed_first_shard(tmp_path: Path, archive: Path) -> None:
    gguf_split.split_archive(archive, tmp_path / "shard", max_tensors=5)
    renamed = tmp_path / "renamed.gguf"
    (tmp_path / "shard-00001-of-00002.gguf").rename(renamed)

    with pytest.raises(NamingMismatchError):
        gguf_split.merge_archives(renamed, tmp_path / "merged.gguf")


def test_merge_refuses_to_overwrite_an_input_shard(tmp_path: Path, archive: Path) -> None:
    gguf_split.split_archive(archive, tmp_path / "shard", max_tensors=5)
    second = tmp_path / "shard-00002-of-00002.gguf"
    before = second.read_bytes()

    with pytest.raises(ConfigurationError):
        gguf_split.merge_archives(tmp_path / "shard-00001-of-00002.gguf", second)

    assert second.read_bytes() == before


def test_render_summary_formats(tmp_path: Path, archive: Path) -> None:
    summary = gguf_split.split_archive(archive, tmp_path / "shard", max_tensors=4)

    table = gguf_split.render_summary(summary)
    assert table.startswith("GGUF Split Summary")
    assert "Total shards: 3 | Total tensors: 10" in table
    assert "shard-00002-of-00003.gguf" in table

    payload = json.loads(gguf_split.render_summary(summary, format="json"))
    assert payload["operation"] == "split"
    assert payload["planner"] == "max-tensors"
    assert [shard["tensor_count"] for shard in payload["shards"]] == [4, 4, 2]

    with pytest.raises(ValueError):
        gguf_split.render_summary(summary, format="xml")


def test_main_split_and_merge(tmp_path: Path, archive: Path, capsys: pytest.CaptureFixture[str]) -> None:
    template = tmp_path / "cli"
    assert gguf_split.main(["--split-max-tensors", "6", "--summary-format", "json", str(archive), str(template)]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["shard_count"] == 2

    merged = tmp_path / "cli-merged.gguf"
    assert gguf_split.main(["--merge", "--no-summary", str(tmp_path / "cli-00001-of-00002.gguf"), str(merged)]) == 0
    assert capsys.readouterr().out == ""
    assert _data_region(merged) == _data_region(archive)


def test_main_accepts_underscore_spellings(tmp_path: Path, archive: Path) -> None:
    argv = ["--split_max_size=1M", "--no_tensor_in_metadata", "--no-summary", str(archive), str(tmp_path / "u")]

    assert gguf_split.main(argv) == 0
    assert (tmp_path / "u-00002-of-00002.gguf").exists()


def test_main_reports_failures_with_exit_code(
    tmp_path: Path, archive: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = gguf_split.main(["--merge", str(archive), str(tmp_path / "merged.gguf")])

    assert exit_code == 1
    assert "gguf-split: " in capsys.readouterr().err


@pytest.mark.parametrize(
    "argv",
    [
        ["--split", "--merge", "in.gguf", "out"],
        ["--split-max-tensors", "0", "in.gguf", "out"],
        ["in.gguf"],
    ],
)
def test_main_rejects_invalid_arguments(argv: List[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        gguf_split.main(argv)

    assert excinfo.value.code == 2


def test_parse_args_reads_verbose_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GGUF_SPLIT_VERBOSE", "1")
    assert gguf_split._parse_args(["in.gguf", "out"]).verbose
    assert not gguf_split._parse_args(["--quiet", "in.gguf", "out"]).verbose

    monkeypatch.setenv("GGUF_SPLIT_VERBOSE", "0")
    params = gguf_split._parse_args(["--split-max-size", "2G", "in.gguf", "out"])
    assert not params.verbose
    assert params.max_size == "2G"
    assert params.operation == gguf_split.SPLIT


def test_module_entry_point_runs(tmp_path: Path, archive: Path) -> None:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join([str(SRC), str(ROOT), env.get("PYTHONPATH", "")])
    result = subprocess.run(
        [sys.executable, "-m", "gguf_split", "--no-summary", str(archive), str(tmp_path / "mod")],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr
    assert (tmp_path / "mod-00001-of-00001.gguf").exists()


def test_merge_accepts_prefix_that_keeps_its_extension(tmp_path: Path, archive: Path) -> None:
    gguf_split.split_archive(archive, tmp_path / "shard", max_tensors=5)
    for index in (1, 2):
        shutil.copy(
            tmp_path / f"shard-0000{index}-of-00002.gguf",
            tmp_path / f"m.gguf-0000{index}-of-00002.gguf",
        )
        (tmp_path / f"shard-0000{index}-of-00002.gguf").unlink()
    merged = tmp_path / "merged.gguf"

    summary = gguf_split.merge_archives(tmp_path / "m.gguf-00001-of-00002.gguf", merged)

    assert [info.path.name for info in summary.shards] == [
        "m.gguf-00001-of-00002.gguf",
        "m.gguf-00002-of-00002.gguf",
    ]
    assert _data_region(merged) == _data_region(archive)


@pytest.mark.parametrize("dry_run", [False, True])
def test_split_refuses_to_overwrite_its_input(tmp_path: Path, dry_run: bool) -> None:
    source = write_archive(tmp_path / "m-00001-of-00001.gguf", n_tensors=3)
    before = source.read_bytes()

    with pytest.raises(ConfigurationError, match="refusing to overwrite input"):
        gguf_split.split_archive(source, tmp_path / "m", max_tensors=128, dry_run=dry_run)

    assert source.read_bytes() == before


def test_split_logs_estimated_shard_count(
    tmp_path: Path, archive: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.DEBUG, logger="gguf_split.tools.gguf_split"):
        gguf_split.split_archive(archive, tmp_path / "shard", max_size=256, dry_run=True)

    assert "max-size: planned 5 shards, estimated 4" in caplog.text
