"""GGUF container codec used by the split/merge engine.

Parsing is delegated to :class:`gguf.GGUFReader`. The writer side only needs
to produce the metadata block (header, key/value pairs, tensor infos and
alignment padding) as bytes so that it can be reserved up front and patched
in place once the tensor payloads have been streamed, which is why
serialisation lives here rather than going through ``gguf.GGUFWriter``.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from gguf import GGMLQuantizationType, GGUF_MAGIC, GGUF_VERSION, GGUFReader, GGUFValueType

from .common import (
    DEFAULT_ALIGNMENT,
    KV_ALIGNMENT,
    PathLike,
    ShardIOError,
    SourceFormatError,
    align_offset,
    padding_for,
)

logger = logging.getLogger(__name__)

HEADER_STRUCT = struct.Struct("<I I Q Q")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")

_SCALAR_FORMATS: Dict[GGUFValueType, str] = {
    GGUFValueType.UINT8: "B",
    GGUFValueType.INT8: "b",
    GGUFValueType.UINT16: "H",
    GGUFValueType.INT16: "h",
    GGUFValueType.UINT32: "I",
    GGUFValueType.INT32: "i",
    GGUFValueType.FLOAT32: "f",
    GGUFValueType.BOOL: "?",
    GGUFValueType.UINT64: "Q",
    GGUFValueType.INT64: "q",
    GGUFValueType.FLOAT64: "d",
}

# pseudo fields GGUFReader exposes for the file header
_READER_HEADER_PREFIX = "GGUF."


@dataclass(frozen=True)
class MetadataValue:
    """A typed metadata value as stored in the container.

    Strings are kept as raw ``bytes`` and numeric arrays as little-endian
    :class:`numpy.ndarray` so a copied value serialises back byte for byte.
    """

    value: Any
    type: GGUFValueType
    sub_type: Optional[GGUFValueType] = None


@dataclass(frozen=True)
class TensorDescriptor:
    """Name, type, shape and location of one tensor payload.

    ``shape`` is in ggml order (fastest varying dimension first) and
    ``offset`` is relative to the start of the owning file's data region.
    """

    name: str
    tensor_type: GGMLQuantizationType
    shape: Tuple[int, ...]
    n_bytes: int
    offset: int = 0


def _pack_string(data: bytes) -> bytes:
    return _U64.pack(len(data)) + data


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _pack_value(item: MetadataValue) -> bytes:
    vtype = item.type
    if vtype == GGUFValueType.STRING:
        return _U32.pack(vtype) + _pack_string(_as_bytes(item.value))
    if vtype == GGUFValueType.ARRAY:
        sub_type = item.sub_type
        if sub_type is None or sub_type == GGUFValueType.ARRAY:
            raise SourceFormatError(f"unsupported array element type {sub_type!r}")
        header = _U32.pack(vtype) + _U32.pack(sub_type) + _U64.pack(len(item.value))
        if sub_type == GGUFValueType.STRING:
            return header + b"".join(_pack_string(_as_bytes(v)) for v in item.value)
        dtype = np.dtype("<" + _SCALAR_FORMATS[sub_type])
        return header + np.asarray(item.value, dtype=dtype).tobytes()
    fmt = _SCALAR_FORMATS.get(vtype)
    if fmt is None:
        raise SourceFormatError(f"unsupported metadata value type {vtype!r}")
    return _U32.pack(vtype) + struct.pack("<" + fmt, item.value)


def _python_value(item: MetadataValue) -> Any:
    if item.type == GGUFValueType.STRING:
        return _as_bytes(item.value).decode("utf-8")
    if item.type == GGUFValueType.ARRAY:
        if item.sub_type == GGUFValueType.STRING:
            return [_as_bytes(v).decode("utf-8") for v in item.value]
        return np.asarray(item.value).tolist()
    return item.value


class ContainerMetadata:
    """Ordered key/value metadata plus the tensor descriptors of one file."""

    def __init__(self) -> None:
        self._fields: Dict[str, MetadataValue] = {}
        self._tensors: List[TensorDescriptor] = []
        self._tensor_names: set[str] = set()

    # -- key/value access -------------------------------------------------

    def __contains__(self, key: object) -> bool:
        return key in self._fields

    def __len__(self) -> int:
        return len(self._fields)

    def keys(self) -> List[str]:
        return list(self._fields)

    def items(self) -> Iterator[Tuple[str, MetadataValue]]:
        return iter(self._fields.items())

    def find_key(self, key: str) -> Optional[int]:
        """Return the position of ``key`` or ``None`` when it is absent."""

        for index, name in enumerate(self._fields):
            if name == key:
                return index
        return None

    def get(self, key: str) -> Optional[MetadataValue]:
        return self._fields.get(key)

    def get_value(self, key: str, default: Any = None) -> Any:
        item = self._fields.get(key)
        if item is None:
            return default
        return _python_value(item)

    def set_value(self, key: str, item: MetadataValue) -> None:
        # dict assignment keeps the original position of an existing key
        self._fields[key] = item

    def set_scalar(self, key: str, value: Any, vtype: GGUFValueType) -> None:
        if vtype == GGUFValueType.ARRAY:
            raise ValueError("set_scalar does not accept array values")
        if vtype == GGUFValueType.STRING:
            value = _as_bytes(value)
        self.set_value(key, MetadataValue(value, vtype))

    def copy_all_keys(self, source: "ContainerMetadata") -> None:
        for key, item in source.items():
            self.set_value(key, item)

    @property
    def alignment(self) -> int:
        item = self._fields.get(KV_ALIGNMENT)
        if item is None or item.type == GGUFValueType.ARRAY:
            return DEFAULT_ALIGNMENT
        return int(item.value)

    # -- tensor descriptors -----------------------------------------------

    @property
    def tensors(self) -> Sequence[TensorDescriptor]:
        return tuple(self._tensors)

    def add_tensor(self, descriptor: TensorDescriptor) -> None:
        if descriptor.name in self._tensor_names:
            raise SourceFormatError(f"duplicate tensor name {descriptor.name!r}")
        self._tensor_names.add(descriptor.name)
        self._tensors.append(descriptor)

    def tensor_layout(self) -> List[Tuple[TensorDescriptor, int]]:
        """Pair every descriptor with the offset it gets when serialised."""

        alignment = self.alignment
        layout = []
        offset = 0
        for descriptor in self._tensors:
            layout.append((descriptor, offset))
            offset += align_offset(descriptor.n_bytes, alignment)
        return layout

    def data_region_size(self) -> int:
        alignment = self.alignment
        return sum(align_offset(t.n_bytes, alignment) for t in self._tensors)

    # -- serialisation ----------------------------------------------------

    def serialize(self) -> bytes:
        """Return the metadata block, padded to the alignment boundary."""

        out = bytearray(HEADER_STRUCT.pack(GGUF_MAGIC, GGUF_VERSION, len(self._tensors), len(self._fields)))
        for key, item in self._fields.items():
            out += _pack_string(key.encode("utf-8"))
            out += _pack_value(item)
        for descriptor, offset in self.tensor_layout():
            out += _pack_string(descriptor.name.encode("utf-8"))
            out += _U32.pack(len(descriptor.shape))
            out += struct.pack(f"<{len(descriptor.shape)}Q", *descriptor.shape)
            out += _U32.pack(int(descriptor.tensor_type))
            out += _U64.pack(offset)
        out += b"\x00" * padding_for(len(out), self.alignment)
        return bytes(out)

    def meta_size(self) -> int:
        return len(self.serialize())


@dataclass
class ContainerFile:
    """A parsed GGUF file: its metadata and where its data region starts."""

    path: Path
    metadata: ContainerMetadata
    data_offset: int
    file_size: int = 0

    @property
    def tensors(self) -> Sequence[TensorDescriptor]:
        return self.metadata.tensors

    @property
    def tensor_bytes(self) -> int:
        return sum(t.n_bytes for t in self.metadata.tensors)


def _field_value(reader_field) -> MetadataValue:
    vtype = GGUFValueType(int(reader_field.types[0]))
    parts = reader_field.parts
    indices = list(reader_field.data)
    if vtype == GGUFValueType.ARRAY:
        if len(reader_field.types) > 1:
            sub_type = GGUFValueType(int(reader_field.types[1]))
        else:
            # empty arrays carry their element type only in the raw parts
            sub_type = GGUFValueType(int(parts[3][0]))
        if sub_type == GGUFValueType.ARRAY:
            raise SourceFormatError(f"nested arrays are not supported ({reader_field.name})")
        if sub_type == GGUFValueType.STRING:
            return MetadataValue([bytes(parts[i]) for i in indices], vtype, sub_type)
        dtype = np.dtype("<" + _SCALAR_FORMATS[sub_type])
        if indices:
            values = np.concatenate([np.asarray(parts[i]).ravel() for i in indices]).astype(dtype)
        else:
            values = np.empty(0, dtype=dtype)
        return MetadataValue(values, vtype, sub_type)
    if vtype == GGUFValueType.STRING:
        return MetadataValue(bytes(parts[indices[0]]), vtype)
    return MetadataValue(parts[indices[0]][0].item(), vtype)


def read_container(path: PathLike) -> ContainerFile:
    """Parse ``path`` into a :class:`ContainerFile`.

    Raises :class:`ShardIOError` when the file cannot be opened and
    :class:`SourceFormatError` when it does not parse as GGUF.
    """

    path = Path(path)
    try:
        reader = GGUFReader(path, "r")
    except OSError as exc:
        logger.error("failed to open input GGUF from %s", path)
        raise ShardIOError(f"failed to open input GGUF from {path}: {exc}") from exc
    except (ValueError, IndexError, KeyError) as exc:
        logger.error("failed to load input GGUF from %s", path)
        raise SourceFormatError(f"failed to load input GGUF from {path}: {exc}") from exc

    if reader.byte_order != "I":
        raise SourceFormatError(f"{path}: big-endian GGUF files are not supported")

    metadata = ContainerMetadata()
    for reader_field in reader.fields.values():
        if reader_field.name.startswith(_READER_HEADER_PREFIX):
            continue
        metadata.set_value(reader_field.name, _field_value(reader_field))

    data_offset = int(reader.data_offset)
    for tensor in reader.tensors:
        metadata.add_tensor(
            TensorDescriptor(
                name=tensor.name,
                tensor_type=GGMLQuantizationType(int(tensor.tensor_type)),
                shape=tuple(int(dim) for dim in tensor.shape),
                n_bytes=int(tensor.n_bytes),
                offset=int(tensor.data_offset) - data_offset,
            )
        )
    file_size = int(reader.data.shape[0])
    del reader

    logger.debug(
        "Parsed %s: %d keys, %d tensors, data region at %d",
        path,
        len(metadata),
        len(metadata.tensors),
        data_offset,
    )
    return ContainerFile(path=path, metadata=metadata, data_offset=data_offset, file_size=file_size)


__all__ = [
    "ContainerFile",
    "ContainerMetadata",
    "HEADER_STRUCT",
    "MetadataValue",
    "TensorDescriptor",
    "read_container",
]
