"""
Byte-level JSON writer.

Escaping works on raw bytes: control bytes and the two structural characters
are escaped, every other byte (including bytes >= 0x80) is copied verbatim, so
multi-byte sequences pass through untouched and invalid ones are not repaired.
"""

from __future__ import annotations

from typing import BinaryIO, Iterable, List, Tuple

_SHORT_ESCAPES = {
    0x22: b'\\"',
    0x5C: b"\\\\",
    0x08: b"\\b",
    0x0C: b"\\f",
    0x0A: b"\\n",
    0x0D: b"\\r",
    0x09: b"\\t",
}


def _build_table() -> List[bytes]:
    table: List[bytes] = []
    for b in range(256):
        if b in _SHORT_ESCAPES:
            table.append(_SHORT_ESCAPES[b])
        elif b <= 0x1F:
            table.append(b"\\u%04x" % b)
        else:
            table.append(bytes([b]))
    return table


_ESCAPE_TABLE = _build_table()


def escape_bytes(data: bytes) -> bytes:
    """
    Escape data for use inside a JSON string literal (without the quotes).
    """
    return b"".join([_ESCAPE_TABLE[b] for b in data])


def write_string(sink: BinaryIO, data: bytes) -> None:
    sink.write(b'"')
    sink.write(escape_bytes(data))
    sink.write(b'"')


def write_object(sink: BinaryIO, entries: Iterable[Tuple[bytes, bytes]]) -> int:
    """
    Stream a compact JSON object of string fields to sink, in iteration order.
    Returns the number of fields written.
    """
    count = 0
    sink.write(b"{")
    for key, value in entries:
        if count:
            sink.write(b",")
        write_string(sink, key)
        sink.write(b":")
        write_string(sink, value)
        count += 1
    sink.write(b"}")
    return count


def write_error(sink: BinaryIO, message: bytes) -> None:
    sink.write(b'{"error": "' + escape_bytes(message) + b'"}\n')
    sink.flush()
