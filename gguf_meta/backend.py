from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple, Union

from gguf import GGUFReader, GGUFValueType

logger = logging.getLogger(__name__)

# GGUFReader.fields starts with GGUF.version, GGUF.tensor_count and GGUF.kv_count
HEADER_FIELDS = 3

# ReaderField.parts layout for arrays: key length, key, value type, item type, item count
ARRAY_COUNT_PART = 4

INTEGER_TYPES = {
    GGUFValueType.UINT8,
    GGUFValueType.INT8,
    GGUFValueType.UINT16,
    GGUFValueType.INT16,
    GGUFValueType.UINT32,
    GGUFValueType.INT32,
    GGUFValueType.UINT64,
    GGUFValueType.INT64,
}
FLOAT_TYPES = {GGUFValueType.FLOAT32, GGUFValueType.FLOAT64}

_initialized = False


@dataclass
class ModelParams:
    # Header and vocabulary only. GGUFReader never reads tensor data, so this only
    # records what the caller asked for.
    vocab_only: bool = False


class ModelHandle:
    """
    A loaded model. Owns the rendered metadata table until free_model() is called.
    """

    def __init__(self, path: Path, meta: List[Tuple[bytes, bytes]]):
        self.path = path
        self._meta: Optional[List[Tuple[bytes, bytes]]] = meta

    @property
    def released(self) -> bool:
        return self._meta is None

    def meta(self) -> List[Tuple[bytes, bytes]]:
        if self._meta is None:
            raise RuntimeError(f"model handle for {self.path} has been released")
        return self._meta

    def release(self) -> None:
        self._meta = None


def init_backend() -> None:
    global _initialized
    if _initialized:
        logger.debug("Backend already initialized")
    _initialized = True
    logger.debug("Backend initialized")


def free_backend() -> None:
    global _initialized
    _initialized = False
    logger.debug("Backend released")


def is_initialized() -> bool:
    return _initialized


def default_model_params() -> ModelParams:
    return ModelParams()


def _part_bytes(part: Any) -> bytes:
    return part.tobytes()


def _scalar_to_str(vtype: GGUFValueType, part: Any) -> bytes:
    """
    Render one scalar the way llama.cpp's std::to_string based formatting does.
    """
    value = part[0]
    if vtype in INTEGER_TYPES:
        return str(int(value)).encode("ascii")
    if vtype in FLOAT_TYPES:
        return f"{float(value):f}".encode("ascii")
    if vtype == GGUFValueType.BOOL:
        return b"true" if bool(value) else b"false"
    return f"unknown type {int(vtype)}".encode("ascii")


def _quote_array_string(raw: bytes) -> bytes:
    return b'"' + raw.replace(b"\\", b"\\\\").replace(b'"', b'\\"') + b'"'


def render_value(field: Any) -> bytes:
    """
    Render a GGUF key/value field as text.

    Strings are returned verbatim (raw bytes, no decoding). Arrays become
    "[a, b, c]" with string items quoted, nested arrays become "???".
    """
    vtype = field.types[0]
    if vtype == GGUFValueType.STRING:
        return _part_bytes(field.parts[field.data[0]])
    if vtype != GGUFValueType.ARRAY:
        return _scalar_to_str(vtype, field.parts[field.data[0]])

    count = int(field.parts[ARRAY_COUNT_PART][0])
    item_type = field.types[1] if len(field.types) > 1 else None
    items: List[bytes] = []
    if item_type == GGUFValueType.ARRAY:
        items = [b"???"] * count
    elif item_type == GGUFValueType.STRING:
        items = [_quote_array_string(_part_bytes(field.parts[idx])) for idx in field.data]
    elif item_type is not None:
        items = [_scalar_to_str(item_type, field.parts[idx]) for idx in field.data]
    return b"[" + b", ".join(items) + b"]"


def read_metadata(reader: GGUFReader) -> List[Tuple[bytes, bytes]]:
    """
    Build the ordered (key, value) table from a reader, in file order.
    """
    meta: List[Tuple[bytes, bytes]] = []
    for field in list(reader.fields.values())[HEADER_FIELDS:]:
        meta.append((field.name.encode("utf-8"), render_value(field)))
    return meta


def load_model(path: Union[str, Path], params: ModelParams) -> Optional[ModelHandle]:
    """
    Load a GGUF file. Returns None if the file is missing, malformed or unsupported.
    """
    if not _initialized:
        logger.warning("load_model called before init_backend")
    try:
        reader = GGUFReader(str(path), "r")
        meta = read_metadata(reader)
    except Exception as e:
        logger.debug("GGUFReader failed for %s: %s", path, e)
        return None

    logger.debug("Loaded %d metadata entries from %s (vocab_only=%s)", len(meta), path, params.vocab_only)
    return ModelHandle(Path(path), meta)


def free_model(model: ModelHandle) -> None:
    if model.released:
        logger.debug("Model %s already released", model.path)
    model.release()


def metadata_count(model: ModelHandle) -> int:
    return len(model.meta())


def _copy_to_buffer(data: bytes, buf: bytearray) -> int:
    """
    snprintf-like copy: at most len(buf) - 1 bytes plus a NUL terminator.
    Returns the untruncated length.
    """
    size = len(buf)
    if size == 0:
        return len(data)
    n = min(len(data), size - 1)
    buf[:n] = data[:n]
    buf[n] = 0
    return len(data)


def _lookup(model: ModelHandle, index: int, buf: bytearray, slot: int) -> int:
    meta = model.meta()
    if index < 0 or index >= len(meta):
        if len(buf) > 0:
            buf[0] = 0
        return -1
    return _copy_to_buffer(meta[index][slot], buf)


def metadata_key(model: ModelHandle, index: int, buf: bytearray) -> int:
    return _lookup(model, index, buf, 0)


def metadata_value(model: ModelHandle, index: int, buf: bytearray) -> int:
    return _lookup(model, index, buf, 1)


@contextlib.contextmanager
def backend_session() -> Iterator[None]:
    init_backend()
    try:
        yield
    finally:
        free_backend()


@contextlib.contextmanager
def model_session(path: Union[str, Path], params: ModelParams) -> Iterator[Optional[ModelHandle]]:
    """
    Load a model for the duration of the block. Yields None on load failure.
    """
    model = load_model(path, params)
    try:
        yield model
    finally:
        if model is not None:
            free_model(model)
