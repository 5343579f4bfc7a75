"""Writing shard files: header reservation, tensor streaming and patching."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Optional

from gguf import GGUFValueType

from ..codec import ContainerFile, ContainerMetadata, TensorDescriptor
from ..common import (
    KV_SPLIT_COUNT,
    KV_SPLIT_NO,
    KV_SPLIT_TENSORS_COUNT,
    PathLike,
    PlaceholderMismatchError,
    ShardIOError,
    padding_for,
)
from .planner import ShardDescriptor

logger = logging.getLogger(__name__)


def write_zeros(fout: BinaryIO, n_bytes: int) -> None:
    if n_bytes:
        fout.write(bytes(n_bytes))


class TensorStreamer:
    """Copy tensor payloads between files through one reusable buffer."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def _view(self, n_bytes: int) -> memoryview:
        if len(self._buffer) < n_bytes:
            self._buffer.extend(bytes(n_bytes - len(self._buffer)))
        return memoryview(self._buffer)[:n_bytes]

    def copy_tensor(
        self,
        src: BinaryIO,
        data_offset: int,
        descriptor: TensorDescriptor,
        dst: BinaryIO,
        alignment: int,
    ) -> int:
        """Copy one tensor plus its alignment padding; return bytes written."""

        n_bytes = descriptor.n_bytes
        view = self._view(n_bytes)
        try:
            src.seek(data_offset + descriptor.offset)
            n_read = src.readinto(view)
        except OSError as exc:
            raise ShardIOError(f"failed to read tensor {descriptor.name}: {exc}") from exc
        if n_read != n_bytes:
            logger.error(
                "short read for tensor %s: expected %d bytes, got %d",
                descriptor.name,
                n_bytes,
                n_read or 0,
            )
            raise ShardIOError(
                f"short read for tensor {descriptor.name}: expected {n_bytes} bytes, got {n_read or 0}"
            )
        padding = padding_for(n_bytes, alignment)
        try:
            dst.write(view)
            write_zeros(dst, padding)
        except OSError as exc:
            raise ShardIOError(f"failed to write tensor {descriptor.name}: {exc}") from exc
        return n_bytes + padding


class ShardWriter:
    """Placeholder/patch writer for one output file.

    Entering the context creates ``path`` and fills the first
    ``metadata.meta_size()`` bytes with zeros. Tensor payloads are then
    appended through :attr:`fout`. Leaving the context normally seeks back to
    offset 0 and writes the real metadata block over the placeholder. When
    the body raises, the file is closed as is.
    """

    def __init__(self, path: PathLike, metadata: ContainerMetadata) -> None:
        self.path = Path(path)
        self.metadata = metadata
        self.reserved = 0
        self.bytes_written = 0
        self.fout: Optional[BinaryIO] = None

    def __enter__(self) -> "ShardWriter":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.patch()
        else:
            self.close()

    @property
    def alignment(self) -> int:
        return self.metadata.alignment

    def open(self) -> None:
        self.reserved = self.metadata.meta_size()
        try:
            self.fout = self.path.open("wb")
            write_zeros(self.fout, self.reserved)
        except OSError as exc:
            self.close()
            logger.error("failed to create %s", self.path)
            raise ShardIOError(f"failed to create {self.path}: {exc}") from exc
        self.bytes_written = self.reserved

    def write_tensor(self, streamer: TensorStreamer, source: BinaryIO, data_offset: int, descriptor: TensorDescriptor) -> int:
        if self.fout is None:
            raise ShardIOError(f"{self.path} is not open for writing")
        written = streamer.copy_tensor(source, data_offset, descriptor, self.fout, self.alignment)
        self.bytes_written += written
        return written

    def patch(self) -> None:
        if self.fout is None:
            raise ShardIOError(f"{self.path} is not open for writing")
        data = self.metadata.serialize()
        if len(data) != self.reserved:
            self.close()
            raise PlaceholderMismatchError(
                f"{self.path}: metadata is {len(data)} bytes but {self.reserved} were reserved"
            )
        try:
            self.fout.seek(0)
            self.fout.write(data)
        except OSError as exc:
            raise ShardIOError(f"failed to write metadata to {self.path}: {exc}") from exc
        finally:
            self.close()

    def close(self) -> None:
        if self.fout is not None:
            fout, self.fout = self.fout, None
            fout.close()


def build_shard_metadata(
    source: ContainerFile,
    shard: ShardDescriptor,
    n_tensors: int,
) -> ContainerMetadata:
    """Metadata block for ``shard``: bookkeeping keys plus its descriptors.

    Only the first shard carries a copy of every key from ``source``.
    """

    metadata = ContainerMetadata()
    if shard.index == 0:
        metadata.copy_all_keys(source.metadata)
    metadata.set_scalar(KV_SPLIT_NO, shard.index, GGUFValueType.UINT16)
    metadata.set_scalar(KV_SPLIT_COUNT, shard.count, GGUFValueType.UINT16)
    metadata.set_scalar(KV_SPLIT_TENSORS_COUNT, n_tensors, GGUFValueType.INT32)
    tensors = source.tensors
    for idx in shard.tensor_range:
        metadata.add_tensor(tensors[idx])
    return metadata


__all__ = [
    "ShardWriter",
    "TensorStreamer",
    "build_shard_metadata",
    "write_zeros",
]
