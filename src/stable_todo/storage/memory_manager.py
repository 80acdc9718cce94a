from __future__ import annotations

import logging
import struct
from threading import RLock
from typing import ContextManager, Dict, Iterator, List, Tuple

from .errors import CorruptionError, MemoryFullError
from .memory import PAGE_SIZE, StableMemory

logger = logging.getLogger(__name__)

MAX_NUM_MEMORIES = 255
MAX_NUM_BUCKETS = 32768
UNALLOCATED_BUCKET_MARKER = 255
BUCKETS_OFFSET_IN_PAGES = 1
DEFAULT_BUCKET_SIZE_IN_PAGES = 128

# ---------------- Manager header (start of page 0) ----------------
#   magic(3s) | version(uint8) | num_allocated_buckets(uint16)
#   | bucket_size_in_pages(uint16) | reserved(32)
#   memory_sizes_in_pages: MAX_NUM_MEMORIES x uint64
#   bucket table: MAX_NUM_BUCKETS x uint8 (owning memory id, 255 = free)
#
# Buckets start at page BUCKETS_OFFSET_IN_PAGES and are handed out in order,
# so the bucket table alone rebuilds every region's byte ranges on restart.
_MAGIC = b"MGR"
_LAYOUT_VERSION = 1
_HEADER_FMT = "<3sBHH32x"
_HEADER_SIZE = struct.calcsize(_HEADER_FMT)
_MEMORY_SIZES_FMT = f"<{MAX_NUM_MEMORIES}Q"
_MEMORY_SIZES_OFFSET = _HEADER_SIZE
_BUCKET_TABLE_OFFSET = _MEMORY_SIZES_OFFSET + struct.calcsize(_MEMORY_SIZES_FMT)


# PUBLIC_INTERFACE
class Region:
    """
    A growable byte range owned by one memory id.

    Offsets are relative to the region; the manager maps them onto the
    buckets assigned to this id.
    """

    def __init__(self, manager: "MemoryManager", memory_id: int) -> None:
        self._manager = manager
        self._memory_id = memory_id

    @property
    def memory_id(self) -> int:
        return self._memory_id

    def size(self) -> int:
        return self._manager._region_size(self._memory_id)

    def grow(self, pages: int) -> int:
        return self._manager._grow(self._memory_id, pages)

    def read(self, offset: int, length: int) -> bytes:
        memory = self._manager.memory
        with memory.lock:
            self._check_bounds(offset, length)
            return b"".join(
                memory.read(address, n) for address, n in self._manager._translate(self._memory_id, offset, length)
            )

    def write(self, offset: int, data: bytes) -> None:
        memory = self._manager.memory
        with memory.lock:
            self._check_bounds(offset, len(data))
            with memory.atomic():
                pos = 0
                for address, n in self._manager._translate(self._memory_id, offset, len(data)):
                    memory.write(address, data[pos:pos + n])
                    pos += n

    def atomic(self) -> ContextManager[StableMemory]:
        return self._manager.memory.atomic()

    @property
    def lock(self) -> "RLock":
        """Lock of the underlying memory; hold it to read several ranges consistently."""
        return self._manager.memory.lock

    def _check_bounds(self, offset: int, length: int) -> None:
        limit = self.size() * PAGE_SIZE
        if offset < 0 or length < 0 or offset + length > limit:
            raise IndexError(
                f"region {self._memory_id}: access out of bounds: offset={offset} length={length} size={limit}"
            )


# PUBLIC_INTERFACE
class MemoryManager:
    """
    Partitions one stable memory into up to MAX_NUM_MEMORIES regions.

    Regions grow in buckets of `bucket_size_in_pages` pages. A bucket, once
    assigned to a memory id, belongs to it forever; the assignment is kept in
    the header so that reopening the same bytes yields the same regions.
    """

    def __init__(self, memory: StableMemory, bucket_size_in_pages: int = DEFAULT_BUCKET_SIZE_IN_PAGES) -> None:
        self.memory = memory
        self._regions: Dict[int, Region] = {}
        if memory.size() == 0:
            self._create(bucket_size_in_pages)
        else:
            self._load(bucket_size_in_pages)
        memory.on_rollback(self._reload)

    # ------------------------- public API -------------------------

    @property
    def bucket_size_in_pages(self) -> int:
        return self._bucket_size_in_pages

    @property
    def num_allocated_buckets(self) -> int:
        return self._num_allocated_buckets

    def get(self, memory_id: int) -> Region:
        """Return the region owned by `memory_id` (0..MAX_NUM_MEMORIES-1)."""
        if not 0 <= memory_id < MAX_NUM_MEMORIES:
            raise ValueError(f"memory id out of range: {memory_id}")
        with self.memory.lock:
            region = self._regions.get(memory_id)
            if region is None:
                region = Region(self, memory_id)
                self._regions[memory_id] = region
        return region

    def buckets_of(self, memory_id: int) -> List[int]:
        return list(self._memory_buckets[memory_id])

    # ------------------------- internals -------------------------

    def _create(self, bucket_size_in_pages: int) -> None:
        if not 1 <= bucket_size_in_pages <= 0xFFFF:
            raise ValueError(f"bucket size must be within 1..65535 pages, got {bucket_size_in_pages}")
        self._bucket_size_in_pages = bucket_size_in_pages
        self._num_allocated_buckets = 0
        self._memory_sizes = [0] * MAX_NUM_MEMORIES
        self._memory_buckets: List[List[int]] = [[] for _ in range(MAX_NUM_MEMORIES)]
        with self.memory.atomic():
            if self.memory.grow(BUCKETS_OFFSET_IN_PAGES) == -1:
                raise MemoryFullError("stable memory cannot hold the memory manager header")
            self.memory.write(_BUCKET_TABLE_OFFSET, bytes([UNALLOCATED_BUCKET_MARKER]) * MAX_NUM_BUCKETS)
            self._save_header()
        logger.info("initialised memory manager (bucket size %d pages)", bucket_size_in_pages)

    def _load(self, bucket_size_in_pages: int) -> None:
        magic, version, num_allocated, stored_bucket_size = struct.unpack_from(
            _HEADER_FMT, self.memory.read(0, _HEADER_SIZE), 0
        )
        if magic != _MAGIC:
            raise CorruptionError("bad magic; stable memory was not written by a memory manager")
        if version != _LAYOUT_VERSION:
            raise CorruptionError(f"unsupported memory manager layout version {version}")
        if num_allocated > MAX_NUM_BUCKETS or stored_bucket_size == 0:
            raise CorruptionError("memory manager header is inconsistent")
        if stored_bucket_size != bucket_size_in_pages:
            logger.warning(
                "configured bucket size %d differs from persisted %d; keeping the persisted layout",
                bucket_size_in_pages,
                stored_bucket_size,
            )
        self._bucket_size_in_pages = stored_bucket_size
        self._num_allocated_buckets = num_allocated
        self._memory_sizes = list(
            struct.unpack(_MEMORY_SIZES_FMT, self.memory.read(_MEMORY_SIZES_OFFSET, _BUCKET_TABLE_OFFSET - _MEMORY_SIZES_OFFSET))
        )
        table = self.memory.read(_BUCKET_TABLE_OFFSET, MAX_NUM_BUCKETS)
        buckets: List[List[int]] = [[] for _ in range(MAX_NUM_MEMORIES)]
        for bucket_id in range(num_allocated):
            owner = table[bucket_id]
            if owner >= MAX_NUM_MEMORIES:
                raise CorruptionError(f"allocated bucket {bucket_id} has no owner")
            buckets[owner].append(bucket_id)
        for memory_id, size in enumerate(self._memory_sizes):
            if size > len(buckets[memory_id]) * stored_bucket_size:
                raise CorruptionError(f"memory {memory_id} is larger than its buckets")
        self._memory_buckets = buckets

    def _reload(self) -> None:
        # A discarded transaction may have allocated buckets that never reached storage.
        if self.memory.size() == 0:
            return
        self._load(self._bucket_size_in_pages)

    def _save_header(self) -> None:
        self.memory.write(
            0,
            struct.pack(_HEADER_FMT, _MAGIC, _LAYOUT_VERSION, self._num_allocated_buckets, self._bucket_size_in_pages)
            + struct.pack(_MEMORY_SIZES_FMT, *self._memory_sizes),
        )

    def _region_size(self, memory_id: int) -> int:
        return self._memory_sizes[memory_id]

    def _grow(self, memory_id: int, pages: int) -> int:
        if pages < 0:
            raise ValueError(f"cannot grow by a negative number of pages: {pages}")
        with self.memory.atomic():
            previous = self._memory_sizes[memory_id]
            new_size = previous + pages
            required = -(-new_size // self._bucket_size_in_pages)
            new_buckets = required - len(self._memory_buckets[memory_id])
            if self._num_allocated_buckets + new_buckets > MAX_NUM_BUCKETS:
                return -1

            needed_pages = BUCKETS_OFFSET_IN_PAGES + (self._num_allocated_buckets + new_buckets) * self._bucket_size_in_pages
            if needed_pages > self.memory.size() and self.memory.grow(needed_pages - self.memory.size()) == -1:
                return -1
            for _ in range(max(new_buckets, 0)):
                bucket_id = self._num_allocated_buckets
                self.memory.write(_BUCKET_TABLE_OFFSET + bucket_id, bytes([memory_id]))
                self._memory_buckets[memory_id].append(bucket_id)
                self._num_allocated_buckets += 1
                logger.debug("assigned bucket %d to memory %d", bucket_id, memory_id)
            self._memory_sizes[memory_id] = new_size
            self._save_header()
        return previous

    def _translate(self, memory_id: int, offset: int, length: int) -> Iterator[Tuple[int, int]]:
        """Yield (physical address, length) chunks covering a region range."""
        bucket_bytes = self._bucket_size_in_pages * PAGE_SIZE
        buckets = self._memory_buckets[memory_id]
        end = offset + length
        while offset < end:
            index, within = divmod(offset, bucket_bytes)
            n = min(end - offset, bucket_bytes - within)
            yield BUCKETS_OFFSET_IN_PAGES * PAGE_SIZE + buckets[index] * bucket_bytes + within, n
            offset += n
