"""
Persistent storage primitives: stable memory backends, the region
allocator, a durable u64 cell and a B-tree map, all of which rebuild their
state from the persisted bytes alone.
"""

from .btreemap import StableBTreeMap
from .cell import DurableCounter, StableCell
from .errors import (
    CorruptionError,
    MemoryFullError,
    RecordTooLargeError,
    StableStorageError,
    StorageUnavailableError,
)
from .memory import PAGE_SIZE, FileStableMemory, InMemoryStableMemory, StableMemory
from .memory_manager import MemoryManager, Region

__all__ = [
    "PAGE_SIZE",
    "CorruptionError",
    "DurableCounter",
    "FileStableMemory",
    "InMemoryStableMemory",
    "MemoryFullError",
    "MemoryManager",
    "RecordTooLargeError",
    "Region",
    "StableBTreeMap",
    "StableCell",
    "StableMemory",
    "StableStorageError",
    "StorageUnavailableError",
]
