from __future__ import annotations

import struct

from .errors import CorruptionError, MemoryFullError
from .memory_manager import Region

U64_MAX = 2**64 - 1

# magic(3s) | version(uint8) | value_len(uint32) | value(uint64)
_MAGIC = b"SCL"
_LAYOUT_VERSION = 1
_HEADER_FMT = "<3sBI"
_HEADER_SIZE = struct.calcsize(_HEADER_FMT)
_VALUE_FMT = "<Q"
_VALUE_SIZE = struct.calcsize(_VALUE_FMT)


# PUBLIC_INTERFACE
class StableCell:
    """A single unsigned 64-bit integer stored at the start of a region."""

    def __init__(self, region: Region, default: int = 0) -> None:
        self._region = region
        if region.size() == 0:
            with region.atomic():
                if region.grow(1) == -1:
                    raise MemoryFullError("cannot allocate a page for the cell")
                region.write(0, struct.pack(_HEADER_FMT, _MAGIC, _LAYOUT_VERSION, _VALUE_SIZE))
                self._write(default)
        else:
            magic, version, value_len = struct.unpack(_HEADER_FMT, region.read(0, _HEADER_SIZE))
            if magic != _MAGIC or version != _LAYOUT_VERSION or value_len != _VALUE_SIZE:
                raise CorruptionError(f"region {region.memory_id} does not hold a stable cell")

    def get(self) -> int:
        (value,) = struct.unpack(_VALUE_FMT, self._region.read(_HEADER_SIZE, _VALUE_SIZE))
        return value

    def set(self, value: int) -> int:
        """Store `value` and return the previous one."""
        with self._region.atomic():
            previous = self.get()
            self._write(value)
        return previous

    def _write(self, value: int) -> None:
        if not 0 <= value <= U64_MAX:
            raise OverflowError(f"value does not fit in 64 bits: {value}")
        self._region.write(_HEADER_SIZE, struct.pack(_VALUE_FMT, value))


# PUBLIC_INTERFACE
class DurableCounter:
    """
    Monotonic identifier source.

    next() commits its increment on its own, so an identifier handed out to
    a caller that later fails stays consumed.
    """

    def __init__(self, region: Region, initial: int = 0) -> None:
        self._region = region
        self._cell = StableCell(region, initial)

    def current(self) -> int:
        return self._cell.get()

    def next(self) -> int:
        """Increment the counter and return the new value (first call returns 1)."""
        with self._region.atomic():
            value = self._cell.get() + 1
            if value > U64_MAX:
                raise OverflowError("cannot increment id counter")
            self._cell.set(value)
        return value
