"""Split a GGUF archive into shards and merge shards back into one file."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from gguf import GGUFValueType

from .. import __version__
from ..codec import ContainerFile, ContainerMetadata, read_container
from ..common import (
    ConfigurationError,
    DEFAULT_MAX_TENSORS,
    GGUFSplitError,
    KV_SPLIT_COUNT,
    KV_SPLIT_TENSORS_COUNT,
    PathLike,
    ShardIOError,
    SourceFormatError,
    describe_size,
    shard_name,
    shard_path,
    shard_prefix,
)
from .planner import ShardDescriptor, ShardPlanner, select_planner
from .shard_io import ShardWriter, TensorStreamer, build_shard_metadata

logger = logging.getLogger(__name__)

PROG = "gguf-split"
SPLIT = "split"
MERGE = "merge"


# ---------------------------------------------------------------------------
# Summaries


@dataclass(frozen=True)
class ShardInfo:
    """One file written (or planned) by a split or merge."""

    path: Path
    index: int
    tensor_count: int
    tensor_bytes: int
    file_bytes: int


@dataclass(frozen=True)
class SplitSummary:
    source: Path
    planner: str
    shards: Tuple[ShardInfo, ...]
    tensor_count: int
    tensor_bytes: int
    dry_run: bool = False

    @property
    def shard_count(self) -> int:
        return len(self.shards)

    def to_dict(self) -> Dict[str, object]:
        return {
            "operation": SPLIT,
            "source": str(self.source),
            "planner": self.planner,
            "dry_run": self.dry_run,
            "shard_count": self.shard_count,
            "tensor_count": self.tensor_count,
            "tensor_bytes": self.tensor_bytes,
            "shards": [_shard_dict(info) for info in self.shards],
        }


@dataclass(frozen=True)
class MergeSummary:
    output: Path
    shards: Tuple[ShardInfo, ...]
    tensor_count: int
    tensor_bytes: int
    file_bytes: int
    dry_run: bool = False

    @property
    def shard_count(self) -> int:
        return len(self.shards)

    def to_dict(self) -> Dict[str, object]:
        return {
            "operation": MERGE,
            "output": str(self.output),
            "dry_run": self.dry_run,
            "shard_count": self.shard_count,
            "tensor_count": self.tensor_count,
            "tensor_bytes": self.tensor_bytes,
            "file_bytes": self.file_bytes,
            "shards": [_shard_dict(info) for info in self.shards],
        }


Summary = Union[SplitSummary, MergeSummary]


def _shard_dict(info: ShardInfo) -> Dict[str, object]:
    return {
        "path": str(info.path),
        "index": info.index,
        "tensor_count": info.tensor_count,
        "tensor_bytes": info.tensor_bytes,
        "file_bytes": info.file_bytes,
    }


def _size_text(n_bytes: int) -> str:
    value, unit = describe_size(n_bytes)
    return f"{n_bytes} B" if unit == "B" else f"{value:.2f} {unit}"


def format_summary(summary: Summary) -> str:
    """Return a human-friendly multi-line report."""

    if isinstance(summary, SplitSummary):
        header = "GGUF Split Summary" + (" (dry run)" if summary.dry_run else "")
        lines = [header, "=" * len(header)]
        lines.append(f"Source : {summary.source}")
        lines.append(f"Planner: {summary.planner}")
    else:
        header = "GGUF Merge Summary" + (" (dry run)" if summary.dry_run else "")
        lines = [header, "=" * len(header)]
        lines.append(f"Output : {summary.output}")

    lines.append("")
    lines.append("Shards:")
    path_width = max(len(str(info.path)) for info in summary.shards)
    lines.append(f"  {'File'.ljust(path_width)}  Tensors  Tensor bytes  File bytes")
    for info in summary.shards:
        lines.append(
            f"  {str(info.path).ljust(path_width)}  {info.tensor_count:>7}  "
            f"{info.tensor_bytes:>12}  {info.file_bytes:>10}"
        )
    lines.append("")
    lines.append(
        f"Total shards: {summary.shard_count} | Total tensors: {summary.tensor_count}"
        f" | Tensor data: {_size_text(summary.tensor_bytes)}"
    )
    return "\n".join(lines)


def render_summary(summary: Summary, *, format: str = "table") -> str:
    normalized = format.lower()
    if normalized == "table":
        return format_summary(summary)
    if normalized == "json":
        return json.dumps(summary.to_dict(), indent=2, sort_keys=True)
    raise ValueError(f"Unsupported summary format: {format}")


# ---------------------------------------------------------------------------
# Split


def _open_source(path: Path):
    try:
        return path.open("rb")
    except OSError as exc:
        logger.error("failed to open input GGUF from %s", path)
        raise ShardIOError(f"failed to open input GGUF from {path}: {exc}") from exc


def _write_shard(
    streamer: TensorStreamer,
    fin,
    source: ContainerFile,
    shard: ShardDescriptor,
    path: Path,
) -> ShardInfo:
    metadata = build_shard_metadata(source, shard, len(source.tensors))
    logger.info("writing shard %s (%d tensors)", path, shard.tensor_count)
    with ShardWriter(path, metadata) as writer:
        for idx in shard.tensor_range:
            writer.write_tensor(streamer, fin, source.data_offset, source.tensors[idx])
    return ShardInfo(
        path=path,
        index=shard.index,
        tensor_count=shard.tensor_count,
        tensor_bytes=shard.tensor_bytes,
        file_bytes=writer.bytes_written,
    )


def _planned_info(source: ContainerFile, shard: ShardDescriptor, path: Path) -> ShardInfo:
    metadata = build_shard_metadata(source, shard, len(source.tensors))
    return ShardInfo(
        path=path,
        index=shard.index,
        tensor_count=shard.tensor_count,
        tensor_bytes=shard.tensor_bytes,
        file_bytes=metadata.meta_size() + metadata.data_region_size(),
    )


def split_archive(
    input_path: PathLike,
    output: PathLike,
    *,
    max_tensors: Optional[int] = DEFAULT_MAX_TENSORS,
    max_size: Union[int, str, None] = None,
    no_tensor_in_metadata: bool = False,
    dry_run: bool = False,
    planner: Optional[ShardPlanner] = None,
) -> SplitSummary:
    """Split ``input_path`` into shards named after the ``output`` template.

    ``max_size`` (bytes, or ``N[M|G]``) selects the size policy; otherwise
    ``max_tensors`` tensors go into each shard. With
    ``no_tensor_in_metadata`` an extra first shard holds only metadata.
    """

    input_path = Path(input_path)
    output_template = os.fspath(output)
    if planner is None:
        planner = select_planner(
            max_tensors=max_tensors,
            max_size=max_size,
            no_tensor_in_metadata=no_tensor_in_metadata,
        )

    source = read_container(input_path)
    shards = planner.plan(source.tensors)
    n_split = len(shards)
    paths = [Path(shard_path(output_template, shard.index, n_split)) for shard in shards]
    source_file = input_path.resolve()
    for path in paths:
        if path.resolve() == source_file:
            raise ConfigurationError(f"refusing to overwrite input file {input_path} with shard {path}")

    if planner.no_tensor_in_metadata:
        logger.info("first shard will only contain metadata")
    logger.debug(
        "%s: planned %d shards, estimated %d",
        planner.name,
        n_split,
        planner.estimate_shard_count(source.tensors),
    )
    logger.info(
        "%s -> %s (%s, %d shards, %d tensors)",
        input_path,
        paths[0],
        planner.name,
        n_split,
        len(source.tensors),
    )

    infos: List[ShardInfo] = []
    if dry_run:
        for shard, path in zip(shards, paths):
            infos.append(_planned_info(source, shard, path))
    else:
        streamer = TensorStreamer()
        with _open_source(input_path) as fin:
            for shard, path in zip(shards, paths):
                infos.append(_write_shard(streamer, fin, source, shard, path))

    logger.info("%d GGUF shards written with a total of %d tensors", n_split, len(source.tensors))
    return SplitSummary(
        source=input_path,
        planner=planner.name,
        shards=tuple(infos),
        tensor_count=len(source.tensors),
        tensor_bytes=source.tensor_bytes,
        dry_run=dry_run,
    )


# ---------------------------------------------------------------------------
# Merge


def _read_split_count(first: ContainerFile) -> int:
    item = first.metadata.get(KV_SPLIT_COUNT)
    if item is None:
        logger.error("%s does not contain %s metadata", first.path, KV_SPLIT_COUNT)
        raise SourceFormatError(f"input file does not contain {KV_SPLIT_COUNT} metadata: {first.path}")
    n_split = int(item.value)
    if n_split < 1:
        raise SourceFormatError(f"input file does not contain a valid split count {n_split}: {first.path}")
    return n_split


def gather_shards(input_path: PathLike) -> Tuple[str, List[ContainerFile], ContainerMetadata]:
    """First merge pass: read every shard's metadata.

    Returns the naming prefix, the parsed shards in order, and the unified
    metadata (shard 0's keys with the split count cleared, followed by every
    shard's tensor descriptors).
    """

    first_path = os.fspath(input_path)
    logger.info("reading metadata %s", first_path)
    first = read_container(first_path)
    n_split = _read_split_count(first)
    prefix = shard_prefix(first_path, 0, n_split)

    shards = [first]
    for index in range(1, n_split):
        path = shard_name(prefix, index, n_split)
        logger.info("reading metadata %s", path)
        shards.append(read_container(path))

    merged = ContainerMetadata()
    merged.copy_all_keys(first.metadata)
    # a merged file must not be picked up as a split again
    merged.set_scalar(KV_SPLIT_COUNT, 0, GGUFValueType.UINT16)
    for shard in shards:
        for descriptor in shard.tensors:
            merged.add_tensor(descriptor)

    expected = first.metadata.get(KV_SPLIT_TENSORS_COUNT)
    if expected is not None and int(expected.value) != len(merged.tensors):
        raise SourceFormatError(
            f"{KV_SPLIT_TENSORS_COUNT} is {int(expected.value)} but the shards hold "
            f"{len(merged.tensors)} tensors"
        )
    return prefix, shards, merged


def merge_archives(
    input_path: PathLike,
    output: PathLike,
    *,
    dry_run: bool = False,
) -> MergeSummary:
    """Merge the shard set whose first file is ``input_path`` into ``output``."""

    output = Path(output)
    logger.info("%s -> %s", input_path, output)
    _, shards, merged = gather_shards(input_path)
    n_split = len(shards)
    if any(output.resolve() == shard.path.resolve() for shard in shards):
        raise ConfigurationError(f"refusing to overwrite input shard {output}")

    infos = [
        ShardInfo(
            path=shard.path,
            index=index,
            tensor_count=len(shard.tensors),
            tensor_bytes=shard.tensor_bytes,
            file_bytes=shard.file_size,
        )
        for index, shard in enumerate(shards)
    ]
    tensor_bytes = sum(shard.tensor_bytes for shard in shards)

    if dry_run:
        file_bytes = merged.meta_size() + merged.data_region_size()
    else:
        streamer = TensorStreamer()
        with ShardWriter(output, merged) as writer:
            for shard in shards:
                logger.info("writing tensors %s", shard.path)
                with _open_source(shard.path) as fin:
                    for descriptor in shard.tensors:
                        writer.write_tensor(streamer, fin, shard.data_offset, descriptor)
        file_bytes = writer.bytes_written

    logger.info("%s merged from %d split with %d tensors", output, n_split, len(merged.tensors))
    return MergeSummary(
        output=output,
        shards=tuple(infos),
        tensor_count=len(merged.tensors),
        tensor_bytes=tensor_bytes,
        file_bytes=file_bytes,
        dry_run=dry_run,
    )


# ---------------------------------------------------------------------------
# Command line


@dataclass
class SplitParams:
    """Options accepted by the command line."""

    operation: str = SPLIT
    max_tensors: int = DEFAULT_MAX_TENSORS
    max_size: Optional[str] = None
    no_tensor_in_metadata: bool = False
    input: Optional[Path] = None
    output: Optional[Path] = None
    dry_run: bool = False
    verbose: bool = False
    print_summary: bool = True
    summary_format: str = "table"


def _normalise_argv(argv: Sequence[str]) -> List[str]:
    normalized = []
    for arg in argv:
        if arg.startswith("--"):
            name, sep, value = arg.partition("=")
            arg = name.replace("_", "-") + sep + value
        normalized.append(arg)
    return normalized


def _build_parser() -> argparse.ArgumentParser:
    defaults = SplitParams()
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Apply a GGUF split or merge operation on INPUT to OUTPUT.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    operation = parser.add_mutually_exclusive_group()
    operation.add_argument(
        "--split",
        dest="operation",
        action="store_const",
        const=SPLIT,
        help="split GGUF to multiple GGUF (default)",
    )
    operation.add_argument(
        "--merge",
        dest="operation",
        action="store_const",
        const=MERGE,
        help="merge multiple GGUF to a single GGUF",
    )
    parser.add_argument(
        "--split-max-tensors",
        type=int,
        default=defaults.max_tensors,
        metavar="N",
        help="max tensors in each split",
    )
    parser.add_argument(
        "--split-max-size",
        default=None,
        metavar="N(M|G)",
        help="max size of each split; a soft limit that takes precedence over --split-max-tensors",
    )
    parser.add_argument(
        "--no-tensor-in-metadata",
        action="store_true",
        help="the first shard will not contain tensor data but only metadata",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="plan the operation and print the summary without writing files",
    )
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        default=None,
        help="Enable verbose logging (can also set GGUF_SPLIT_VERBOSE=1)",
    )
    parser.add_argument(
        "--quiet",
        dest="verbose",
        action="store_false",
        help="Disable verbose logging",
    )
    parser.add_argument(
        "--no-summary",
        dest="print_summary",
        action="store_false",
        help="Do not print the summary table",
    )
    parser.add_argument(
        "--summary-format",
        choices=("table", "json"),
        default=defaults.summary_format,
        help="Format to use when rendering the summary",
    )
    parser.add_argument("input", type=Path, metavar="INPUT", help="GGUF file (or first shard when merging)")
    parser.add_argument("output", type=Path, metavar="OUTPUT", help="output file, or shard name template when splitting")
    parser.set_defaults(operation=SPLIT, print_summary=True)
    return parser


def _parse_args(argv: Optional[Sequence[str]] = None) -> SplitParams:
    parser = _build_parser()
    raw = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(_normalise_argv(raw))

    if args.split_max_size is None and args.split_max_tensors <= 0:
        parser.error("--split-max-tensors must be a positive integer")

    verbose = args.verbose
    if verbose is None:
        env_value = os.environ.get("GGUF_SPLIT_VERBOSE")
        verbose = env_value is not None and env_value.lower() not in {"", "0", "false", "no"}

    return SplitParams(
        operation=args.operation,
        max_tensors=args.split_max_tensors,
        max_size=args.split_max_size,
        no_tensor_in_metadata=args.no_tensor_in_metadata,
        input=args.input.expanduser(),
        output=args.output.expanduser(),
        dry_run=args.dry_run,
        verbose=verbose,
        print_summary=args.print_summary,
        summary_format=args.summary_format,
    )


def run(params: SplitParams) -> Summary:
    if params.operation == MERGE:
        return merge_archives(params.input, params.output, dry_run=params.dry_run)
    return split_archive(
        params.input,
        params.output,
        max_tensors=params.max_tensors,
        max_size=params.max_size,
        no_tensor_in_metadata=params.no_tensor_in_metadata,
        dry_run=params.dry_run,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    params = _parse_args(argv)
    if params.verbose and not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

    try:
        summary = run(params)
    except GGUFSplitError as exc:
        print(f"{PROG}: {exc}", file=sys.stderr)
        return 1

    if params.print_summary:
        print(render_summary(summary, format=params.summary_format))
    return 0


__all__ = [
    "MergeSummary",
    "ShardInfo",
    "SplitParams",
    "SplitSummary",
    "format_summary",
    "gather_shards",
    "main",
    "merge_archives",
    "render_summary",
    "run",
    "split_archive",
]


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
