from __future__ import annotations

import logging
from typing import Callable, Iterator, Optional, Tuple

from . import backend

logger = logging.getLogger(__name__)

# Buffer sizes include the NUL terminator: keys up to 255 bytes, values up to 2047.
KEY_BUFFER_SIZE = 256
VALUE_BUFFER_SIZE = 2048


class MetadataAccessor:
    """
    Reads the metadata table of a loaded model through fixed-size buffers.

    Text longer than a buffer is silently truncated. A size of None lifts the
    limit: the buffer is grown to the length reported by the backend.
    """

    def __init__(
        self,
        model: backend.ModelHandle,
        key_size: Optional[int] = KEY_BUFFER_SIZE,
        value_size: Optional[int] = VALUE_BUFFER_SIZE,
    ) -> None:
        self.model = model
        self.key_size = key_size
        self.value_size = value_size
        self._count: Optional[int] = None

    def entry_count(self) -> int:
        if self._count is None:
            self._count = backend.metadata_count(self.model)
            logger.debug("Model reports %d metadata entries", self._count)
        return self._count

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.entry_count():
            raise IndexError(f"metadata index {index} out of range [0, {self.entry_count()})")

    def _read(
        self,
        query: Callable[[backend.ModelHandle, int, bytearray], int],
        index: int,
        size: Optional[int],
    ) -> bytes:
        self._check_index(index)
        buf = bytearray(size if size is not None else 1)
        n = query(self.model, index, buf)
        if size is None and n >= len(buf):
            buf = bytearray(n + 1)
            n = query(self.model, index, buf)
        # Text ends at the first NUL, as with a C string read back from the buffer
        raw = bytes(buf[: min(n, len(buf) - 1)])
        return raw.split(b"\0", 1)[0]

    def key_at(self, index: int) -> bytes:
        return self._read(backend.metadata_key, index, self.key_size)

    def value_at(self, index: int) -> bytes:
        return self._read(backend.metadata_value, index, self.value_size)

    def entries(self) -> Iterator[Tuple[bytes, bytes]]:
        for i in range(self.entry_count()):
            yield self.key_at(i), self.value_at(i)
