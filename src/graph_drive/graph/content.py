"""Random-access upload sources and bounded, repeatable views over them.

A retried chunk must never share a read cursor with the attempt before it:
the HTTP transport may still be draining the previous body after a
timeout. Every attempt therefore builds a new ``ByteRangeView`` that keeps
its own position and reads through ``read_at``, which is safe to call
concurrently on the same source.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Protocol

BLOCK_SIZE = 64 * 1024


class RandomAccessSource(Protocol):
    """Immutable backing data readable at arbitrary offsets."""

    def read_at(self, offset: int, size: int) -> bytes: ...


class BytesSource:
    """In-memory source over bytes, bytearray or memoryview data."""

    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        self._data = memoryview(data)

    def __len__(self) -> int:
        return len(self._data)

    def read_at(self, offset: int, size: int) -> bytes:
        return bytes(self._data[offset : offset + size])


class FileSource:
    """File-backed source using positional reads (``os.pread``).

    Positional reads do not move the descriptor's offset, so any number of
    views can read the same open file at once.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._fd = os.open(path, os.O_RDONLY)

    def size(self) -> int:
        return os.fstat(self._fd).st_size

    def read_at(self, offset: int, size: int) -> bytes:
        return os.pread(self._fd, size, offset)

    def close(self) -> None:
        os.close(self._fd)

    def __enter__(self) -> FileSource:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class ByteRangeView:
    """Iterable over ``length`` bytes of ``source`` starting at ``offset``.

    Each iteration starts again from ``offset``; nothing is shared between
    iterations or between views.

    Raises:
        ValueError: During iteration, if the source ends before ``length``
            bytes were produced.
    """

    def __init__(
        self,
        source: RandomAccessSource,
        offset: int,
        length: int,
        block_size: int = BLOCK_SIZE,
    ) -> None:
        if offset < 0 or length < 0:
            raise ValueError(f"invalid byte range: offset={offset} length={length}")
        self._source = source
        self._offset = offset
        self._length = length
        self._block_size = block_size

    def __len__(self) -> int:
        return self._length

    def __iter__(self) -> Iterator[bytes]:
        position = self._offset
        remaining = self._length
        while remaining > 0:
            block = self._source.read_at(position, min(self._block_size, remaining))
            if not block:
                raise ValueError(
                    f"source ended early at offset {position}; {remaining} bytes missing"
                )
            position += len(block)
            remaining -= len(block)
            yield block
