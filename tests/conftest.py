from __future__ import annotations

import struct
from pathlib import Path
from typing import Any, Callable, List, Sequence, Tuple

import pytest

# GGUF value type ids and their struct formats
SCALAR_TYPES = {
    "u8": (0, "<B"),
    "i8": (1, "<b"),
    "u16": (2, "<H"),
    "i16": (3, "<h"),
    "u32": (4, "<I"),
    "i32": (5, "<i"),
    "f32": (6, "<f"),
    "bool": (7, "<?"),
    "u64": (10, "<Q"),
    "i64": (11, "<q"),
    "f64": (12, "<d"),
}
STRING = 8
ARRAY = 9

Value = Tuple[Any, ...]


def _string(raw: bytes) -> bytes:
    return struct.pack("<Q", len(raw)) + raw


def _type_id(kind: str) -> int:
    if kind == "string":
        return STRING
    if kind == "array":
        return ARRAY
    return SCALAR_TYPES[kind][0]


def _payload(kind: str, value: Any) -> bytes:
    if kind == "string":
        return _string(value)
    if kind == "array":
        item_kind, items = value
        out = struct.pack("<IQ", _type_id(item_kind), len(items))
        for item in items:
            out += _payload(item_kind, item)
        return out
    return struct.pack(SCALAR_TYPES[kind][1], value)


def build_gguf(kvs: Sequence[Tuple[bytes, Value]], version: int = 3) -> bytes:
    """
    Serialize a tensor-less GGUF file. Each value is (kind, payload), e.g.
    ("string", b"llama"), ("u32", 4096) or ("array", ("i32", [1, 2])).
    """
    out = b"GGUF" + struct.pack("<IQQ", version, 0, len(kvs))
    for key, (kind, value) in kvs:
        out += _string(key) + struct.pack("<I", _type_id(kind)) + _payload(kind, value)
    out += b"\x00" * (-len(out) % 32)
    return out


@pytest.fixture
def make_gguf(tmp_path: Path) -> Callable[..., Path]:
    counter: List[int] = [0]

    def _make(kvs: Sequence[Tuple[bytes, Value]], name: str = "", **kwargs: Any) -> Path:
        counter[0] += 1
        path = tmp_path / (name or f"model-{counter[0]}.gguf")
        path.write_bytes(build_gguf(kvs, **kwargs))
        return path

    return _make


@pytest.fixture
def llama_kvs() -> List[Tuple[bytes, Value]]:
    return [
        (b"general.architecture", ("string", b"llama")),
        (b"general.name", ("string", b"Llama-3-8B")),
        (b"llama.context_length", ("u32", 8192)),
        (b"llama.rope.freq_base", ("f32", 500000.0)),
        (b"llama.attention.layer_norm_rms_epsilon", ("f32", 1e-05)),
        (b"tokenizer.ggml.add_bos_token", ("bool", True)),
        (b"tokenizer.ggml.tokens", ("array", ("string", [b"<s>", b'"q"', b"a\\b"]))),
        (b"tokenizer.ggml.token_type", ("array", ("i32", [3, 1, 1]))),
    ]
