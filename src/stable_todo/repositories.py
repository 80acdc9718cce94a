from __future__ import annotations

import logging
from threading import RLock
from typing import Iterator, Optional, Tuple

from .codec import TodoCodec
from .models import TodoEntity
from .settings import Settings, get_settings
from .storage import (
    DurableCounter,
    FileStableMemory,
    InMemoryStableMemory,
    MemoryManager,
    StableBTreeMap,
    StableMemory,
)
from .storage.memory_manager import DEFAULT_BUCKET_SIZE_IN_PAGES

logger = logging.getLogger(__name__)

# Region assignments are part of the persisted layout; never renumber them.
COUNTER_MEMORY_ID = 0
TODOS_MEMORY_ID = 1


# PUBLIC_INTERFACE
class StableTodoRepository:
    """
    Durable todo storage over one stable memory.

    Region COUNTER_MEMORY_ID holds the id counter and region TODOS_MEMORY_ID
    the id -> todo map. Constructed once at startup and shared by every
    request; all state lives in the stable memory. Request handlers run on
    a thread pool, so every method runs under `lock`; hold it yourself to
    make a read-modify-write sequence atomic.
    """

    def __init__(self, memory: StableMemory, bucket_size_in_pages: int = DEFAULT_BUCKET_SIZE_IN_PAGES) -> None:
        self._memory = memory
        self._lock = RLock()
        self._manager = MemoryManager(memory, bucket_size_in_pages)
        self._counter = DurableCounter(self._manager.get(COUNTER_MEMORY_ID))
        self._todos: StableBTreeMap[TodoEntity] = StableBTreeMap(self._manager.get(TODOS_MEMORY_ID), TodoCodec())

    @property
    def lock(self) -> "RLock":
        return self._lock

    @property
    def memory_manager(self) -> MemoryManager:
        return self._manager

    def allocate_id(self) -> int:
        """Consume and return the next identifier; identifiers are never handed out twice."""
        with self._lock:
            return self._counter.next()

    def last_id(self) -> int:
        with self._lock:
            return self._counter.current()

    def get(self, todo_id: int) -> Optional[TodoEntity]:
        with self._lock:
            return self._todos.get(todo_id)

    def insert(self, todo: TodoEntity) -> Optional[TodoEntity]:
        """Store `todo` under its id, returning the record it replaced."""
        with self._lock:
            return self._todos.insert(todo["id"], todo)

    def remove(self, todo_id: int) -> Optional[TodoEntity]:
        with self._lock:
            return self._todos.remove(todo_id)

    def items(self) -> Iterator[Tuple[int, TodoEntity]]:
        with self._lock:
            return self._todos.items()

    def __len__(self) -> int:
        with self._lock:
            return len(self._todos)

    def close(self) -> None:
        with self._lock:
            self._memory.close()


# PUBLIC_INTERFACE
def open_repository(settings: Optional[Settings] = None) -> StableTodoRepository:
    """
    Factory to return the repository for the configured backend.
    - memory: volatile InMemoryStableMemory
    - file: FileStableMemory at settings.stable_memory_path
    """
    settings = settings or get_settings()
    memory: StableMemory
    if settings.persistence_backend == "file":
        memory = FileStableMemory(settings.stable_memory_path, max_pages=settings.max_memory_pages)
    else:
        memory = InMemoryStableMemory(max_pages=settings.max_memory_pages)
    try:
        repository = StableTodoRepository(memory, settings.bucket_size_in_pages)
    except BaseException:
        memory.close()
        raise
    logger.info(
        "opened %s todo store: %d todos, last id %d",
        settings.persistence_backend,
        len(repository),
        repository.last_id(),
    )
    return repository
