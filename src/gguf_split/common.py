"""Shared helpers used by the split/merge engine and its command line."""

from __future__ import annotations

import os
import re
from typing import Tuple, Union

from gguf import GGUF_DEFAULT_ALIGNMENT, Keys

KV_SPLIT_NO = Keys.Split.LLM_KV_SPLIT_NO
KV_SPLIT_COUNT = Keys.Split.LLM_KV_SPLIT_COUNT
KV_SPLIT_TENSORS_COUNT = Keys.Split.LLM_KV_SPLIT_TENSORS_COUNT
KV_ALIGNMENT = Keys.General.ALIGNMENT

DEFAULT_ALIGNMENT = GGUF_DEFAULT_ALIGNMENT
DEFAULT_MAX_TENSORS = 128
# split.no and split.count are stored as u16
MAX_SPLIT_COUNT = 0xFFFF

SHARD_EXTENSION = ".gguf"
_SHARD_SUFFIX = "-{number:05d}-of-{count:05d}" + SHARD_EXTENSION
_SIZE_UNITS = {"M": 1024 * 1024, "G": 1024 * 1024 * 1024}
_SIZE_PATTERN = re.compile(r"^(\d+)([A-Za-z]?)$")

PathLike = Union[str, "os.PathLike[str]"]


class GGUFSplitError(RuntimeError):
    """Base class for fatal split/merge failures."""


class ConfigurationError(GGUFSplitError):
    """Raised when the requested operation is configured incorrectly."""


class SourceFormatError(GGUFSplitError):
    """Raised when an input file is not a usable GGUF container."""


class ShardIOError(GGUFSplitError):
    """Raised when opening, reading or writing a file fails."""


class NamingMismatchError(GGUFSplitError):
    """Raised when a shard file name does not follow the split convention."""


class PlaceholderMismatchError(GGUFSplitError):
    """Raised when a patched header does not fill its reserved space exactly."""


class SizeLimitError(GGUFSplitError):
    """Raised when a single tensor is larger than the per-shard size cap."""

    def __init__(self, tensor_index: int, requested: int, allowed: int) -> None:
        self.tensor_index = tensor_index
        self.requested = requested
        self.allowed = allowed
        super().__init__(
            f"--split-max-size too small for tensor {tensor_index}: "
            f"{requested} > {allowed}"
        )


def align_offset(n_bytes: int, alignment: int = DEFAULT_ALIGNMENT) -> int:
    """Round ``n_bytes`` up to the next multiple of ``alignment``."""

    return (n_bytes + alignment - 1) // alignment * alignment


def padding_for(n_bytes: int, alignment: int = DEFAULT_ALIGNMENT) -> int:
    return align_offset(n_bytes, alignment) - n_bytes


def parse_split_size(value: str) -> int:
    """Parse ``N[M|G]`` into a byte count.

    ``M`` is MiB and ``G`` is GiB. The unit is mandatory; anything else is a
    :class:`ConfigurationError`.
    """

    match = _SIZE_PATTERN.match(value.strip()) if value else None
    if match is None or match.group(2) not in _SIZE_UNITS:
        raise ConfigurationError(f"invalid max size {value!r}; expected N followed by M or G")
    n_bytes = int(match.group(1)) * _SIZE_UNITS[match.group(2)]
    if n_bytes <= 0:
        raise ConfigurationError(f"invalid max size {value!r}; must be positive")
    return n_bytes


def _strip_extension(template: str) -> str:
    if template.endswith(SHARD_EXTENSION):
        return template[: -len(SHARD_EXTENSION)]
    return template


def _check_index(index: int, count: int) -> None:
    if count < 1 or count > MAX_SPLIT_COUNT:
        raise ConfigurationError(f"split count {count} outside 1..{MAX_SPLIT_COUNT}")
    if not 0 <= index < count:
        raise ConfigurationError(f"split index {index} outside 0..{count - 1}")


def shard_name(prefix: PathLike, index: int, count: int) -> str:
    """Append the shard suffix to ``prefix`` as is; inverse of :func:`shard_prefix`."""

    _check_index(index, count)
    return os.fspath(prefix) + _SHARD_SUFFIX.format(number=index + 1, count=count)


def shard_path(template: PathLike, index: int, count: int) -> str:
    """Return the file name of shard ``index`` out of ``count``.

    Shard numbers in file names are 1-based, so ``shard_path("out", 0, 3)``
    is ``"out-00001-of-00003.gguf"``. A trailing ``.gguf`` on the template is
    dropped first, so ``"out.gguf"`` names the same shards as ``"out"``. Use
    :func:`shard_name` to rebuild names from a prefix recovered by
    :func:`shard_prefix`.
    """

    return shard_name(_strip_extension(os.fspath(template)), index, count)


def shard_prefix(path: PathLike, index: int, count: int) -> str:
    """Recover the template prefix from a shard file name.

    Raises :class:`NamingMismatchError` when ``path`` is not the name
    :func:`shard_name` produces for ``index``/``count``.
    """

    text = os.fspath(path)
    suffix = _SHARD_SUFFIX.format(number=index + 1, count=count)
    if not 0 <= index < count or not text.endswith(suffix) or len(text) == len(suffix):
        raise NamingMismatchError(
            f"unexpected input file name: {text} i_split={index} n_split={count}"
        )
    return text[: -len(suffix)]


def describe_size(n_bytes: int) -> Tuple[float, str]:
    for unit, scale in (("GiB", _SIZE_UNITS["G"]), ("MiB", _SIZE_UNITS["M"])):
        if n_bytes >= scale:
            return n_bytes / scale, unit
    return float(n_bytes), "B"


__all__ = [
    "ConfigurationError",
    "DEFAULT_ALIGNMENT",
    "DEFAULT_MAX_TENSORS",
    "GGUFSplitError",
    "KV_ALIGNMENT",
    "KV_SPLIT_COUNT",
    "KV_SPLIT_NO",
    "KV_SPLIT_TENSORS_COUNT",
    "MAX_SPLIT_COUNT",
    "NamingMismatchError",
    "PlaceholderMismatchError",
    "ShardIOError",
    "SizeLimitError",
    "SourceFormatError",
    "align_offset",
    "describe_size",
    "padding_for",
    "parse_split_size",
    "shard_name",
    "shard_path",
    "shard_prefix",
]
