from __future__ import annotations

import logging
import os
import struct
import zlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from threading import RLock
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .errors import StorageUnavailableError

logger = logging.getLogger(__name__)

# Stable memory grows in 64 KiB pages; transactions track dirty 4 KiB pages.
PAGE_SIZE = 64 * 1024
JOURNAL_PAGE_SIZE = 4096

# ---------------- Redo journal layout ----------------
#   magic(8s) | size_pages(uint64) | entry_count(uint32)
#   entry_count x [ page_no(uint64) | JOURNAL_PAGE_SIZE bytes ]
#   crc32(uint32) over everything before it
#
# A journal is only replayed when it is complete and its checksum matches;
# anything else is a transaction that never committed.
_JOURNAL_MAGIC = b"TDJRNL01"
_JOURNAL_HDR_FMT = "<8sQI"
_JOURNAL_HDR_SIZE = struct.calcsize(_JOURNAL_HDR_FMT)
_JOURNAL_ENTRY_FMT = "<Q"
_JOURNAL_ENTRY_SIZE = struct.calcsize(_JOURNAL_ENTRY_FMT) + JOURNAL_PAGE_SIZE
_JOURNAL_CRC_FMT = "<I"
_JOURNAL_CRC_SIZE = struct.calcsize(_JOURNAL_CRC_FMT)


# PUBLIC_INTERFACE
class StableMemory(ABC):
    """
    A zero-initialised, growable byte space measured in PAGE_SIZE pages.

    Writes are grouped with atomic(): nested blocks join the outermost one,
    which commits on success and discards every buffered write (and growth)
    when its body raises. A write issued outside any block is committed on
    its own.

    An atomic block holds the memory's reentrant lock from start to commit,
    so blocks opened by different threads never interleave.
    """

    def __init__(self, max_pages: Optional[int] = None) -> None:
        self._max_pages = max_pages
        self._lock = RLock()
        self._depth = 0
        self._dirty: Dict[int, bytearray] = {}
        self._pending_pages: Optional[int] = None
        self._rollback_listeners: List[Callable[[], None]] = []
        self._unavailable: Optional[str] = None

    # ------------------------- backend hooks -------------------------

    @abstractmethod
    def _committed_pages(self) -> int:
        """Return the committed size in pages."""

    @abstractmethod
    def _read_committed(self, offset: int, length: int) -> bytes:
        """Read committed bytes; anything past the committed end reads as zeros."""

    @abstractmethod
    def _apply(self, pages: Dict[int, bytearray], size_pages: int) -> None:
        """Durably apply dirty journal pages and the new size."""

    def close(self) -> None:
        """Release backend resources."""

    # ------------------------- public API -------------------------

    @property
    def lock(self) -> RLock:
        return self._lock

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def size(self) -> int:
        """Return the current size in pages, including uncommitted growth."""
        with self._lock:
            self._check_available()
            if self._pending_pages is not None:
                return self._pending_pages
            return self._committed_pages()

    def grow(self, pages: int) -> int:
        """
        Grow the memory by `pages` pages.

        Returns:
            The previous size in pages, or -1 if the configured maximum would
            be exceeded (in which case nothing changes).
        """
        if pages < 0:
            raise ValueError(f"cannot grow by a negative number of pages: {pages}")
        with self.atomic():
            previous = self.size()
            new_size = previous + pages
            if self._max_pages is not None and new_size > self._max_pages:
                return -1
            self._pending_pages = new_size
        return previous

    def read(self, offset: int, length: int) -> bytes:
        with self._lock:
            self._check_bounds(offset, length)
            if length == 0:
                return b""
            data = bytearray(self._read_committed(offset, length))
            if self._dirty:
                end = offset + length
                for page_no in range(offset // JOURNAL_PAGE_SIZE, (end - 1) // JOURNAL_PAGE_SIZE + 1):
                    page = self._dirty.get(page_no)
                    if page is None:
                        continue
                    start = page_no * JOURNAL_PAGE_SIZE
                    lo = max(offset, start)
                    hi = min(end, start + JOURNAL_PAGE_SIZE)
                    data[lo - offset:hi - offset] = page[lo - start:hi - start]
            return bytes(data)

    def write(self, offset: int, data: bytes) -> None:
        with self._lock:
            self._check_bounds(offset, len(data))
            if not data:
                return
            end = offset + len(data)
            with self.atomic():
                for page_no in range(offset // JOURNAL_PAGE_SIZE, (end - 1) // JOURNAL_PAGE_SIZE + 1):
                    start = page_no * JOURNAL_PAGE_SIZE
                    page = self._dirty.get(page_no)
                    if page is None:
                        page = bytearray(self._read_committed(start, JOURNAL_PAGE_SIZE))
                        self._dirty[page_no] = page
                    lo = max(offset, start)
                    hi = min(end, start + JOURNAL_PAGE_SIZE)
                    page[lo - start:hi - start] = data[lo - offset:hi - offset]

    @contextmanager
    def atomic(self) -> Iterator["StableMemory"]:
        """Group every write issued inside the block into one transaction."""
        with self._lock:
            self._check_available()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                self._commit()

    def on_rollback(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked after a transaction has been discarded."""
        self._rollback_listeners.append(callback)

    # ------------------------- internals -------------------------

    def _check_available(self) -> None:
        if self._unavailable is not None:
            raise StorageUnavailableError(self._unavailable)

    def _mark_unavailable(self, reason: str) -> None:
        self._unavailable = reason
        self._dirty = {}
        self._pending_pages = None
        logger.error("stable memory is unavailable until reopened: %s", reason)

    def _check_bounds(self, offset: int, length: int) -> None:
        size = self.size() * PAGE_SIZE
        if offset < 0 or length < 0 or offset + length > size:
            raise IndexError(f"access out of bounds: offset={offset} length={length} size={size}")

    def _commit(self) -> None:
        if not self._dirty and self._pending_pages is None:
            return
        size_pages = self.size()
        try:
            self._apply(self._dirty, size_pages)
        except BaseException:
            # Once a commit is journaled it is no longer ours to discard.
            if self._unavailable is None:
                self._rollback()
            raise
        self._dirty = {}
        self._pending_pages = None

    def _rollback(self) -> None:
        self._dirty = {}
        self._pending_pages = None
        for callback in self._rollback_listeners:
            callback()


# PUBLIC_INTERFACE
class InMemoryStableMemory(StableMemory):
    """Volatile stable memory backed by a bytearray, for tests and the memory backend."""

    def __init__(self, max_pages: Optional[int] = None) -> None:
        super().__init__(max_pages)
        self._buf = bytearray()

    def _committed_pages(self) -> int:
        return len(self._buf) // PAGE_SIZE

    def _read_committed(self, offset: int, length: int) -> bytes:
        chunk = bytes(self._buf[offset:offset + length])
        return chunk + bytes(length - len(chunk))

    def _apply(self, pages: Dict[int, bytearray], size_pages: int) -> None:
        missing = size_pages * PAGE_SIZE - len(self._buf)
        if missing > 0:
            self._buf.extend(bytes(missing))
        for page_no, page in pages.items():
            start = page_no * JOURNAL_PAGE_SIZE
            self._buf[start:start + JOURNAL_PAGE_SIZE] = page


# PUBLIC_INTERFACE
class FileStableMemory(StableMemory):
    """
    Stable memory persisted in a single file.

    Commits go through a redo journal next to the data file:
      1. dirty pages and the new size are written to `<path>.journal`, which
         is fsynced together with its directory
      2. the pages are applied to the data file, which is fsynced
      3. the journal is removed and the directory fsynced again
    A commit that fails before step 1 completes is rolled back. One that
    fails after it is durable: the memory then refuses access with
    StorageUnavailableError until it is reopened. Opening the file replays a
    complete journal left behind by such a failure or a crash, and discards
    a torn one.
    """

    def __init__(self, path: str, max_pages: Optional[int] = None) -> None:
        super().__init__(max_pages)
        self.path = path
        self.journal_path = path + ".journal"
        self._directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(self._directory, exist_ok=True)
        mode = "r+b" if os.path.exists(path) else "w+b"
        self._f = open(path, mode, buffering=0)
        self._size_pages = os.fstat(self._f.fileno()).st_size // PAGE_SIZE
        self._recover()
        logger.info("opened stable memory %s (%d pages)", path, self._size_pages)

    def close(self) -> None:
        with self._lock:
            if self._f.closed:
                return
            try:
                self._f.flush()
                os.fsync(self._f.fileno())
            finally:
                self._f.close()

    def _committed_pages(self) -> int:
        return self._size_pages

    def _read_committed(self, offset: int, length: int) -> bytes:
        self._f.seek(offset)
        chunk = self._f.read(length) or b""
        return chunk + bytes(length - len(chunk))

    def _apply(self, pages: Dict[int, bytearray], size_pages: int) -> None:
        try:
            self._write_journal(pages, size_pages)
        except BaseException:
            try:
                self._remove_journal()
            except OSError as exc:
                self._mark_unavailable(f"journal {self.journal_path} may hold a commit that was reported failed: {exc!r}")
            raise
        try:
            self._apply_pages(pages, size_pages)
            self._remove_journal()
        except BaseException as exc:
            self._mark_unavailable(f"commit is journaled in {self.journal_path} but was not applied: {exc!r}")
            raise

    def _write_journal(self, pages: Dict[int, bytearray], size_pages: int) -> None:
        body = bytearray(struct.pack(_JOURNAL_HDR_FMT, _JOURNAL_MAGIC, size_pages, len(pages)))
        for page_no in sorted(pages):
            body += struct.pack(_JOURNAL_ENTRY_FMT, page_no)
            body += pages[page_no]
        body += struct.pack(_JOURNAL_CRC_FMT, zlib.crc32(body))
        with open(self.journal_path, "wb") as journal:
            journal.write(body)
            journal.flush()
            os.fsync(journal.fileno())
        self._sync_directory()

    def _remove_journal(self) -> None:
        try:
            os.unlink(self.journal_path)
        except FileNotFoundError:
            return
        self._sync_directory()

    def _sync_directory(self) -> None:
        # Directory entries of the journal must be durable too; Windows cannot open directories.
        if os.name == "nt":
            return
        fd = os.open(self._directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def _apply_pages(self, pages: Dict[int, bytearray], size_pages: int) -> None:
        if size_pages > self._size_pages:
            self._f.truncate(size_pages * PAGE_SIZE)
        for page_no in sorted(pages):
            self._f.seek(page_no * JOURNAL_PAGE_SIZE)
            self._f.write(pages[page_no])
        self._f.flush()
        os.fsync(self._f.fileno())
        self._size_pages = max(self._size_pages, size_pages)

    def _recover(self) -> None:
        if not os.path.exists(self.journal_path):
            return
        with open(self.journal_path, "rb") as journal:
            raw = journal.read()
        parsed = _parse_journal(raw)
        if parsed is None:
            logger.warning("discarding incomplete journal %s", self.journal_path)
        else:
            pages, size_pages = parsed
            self._apply_pages(pages, size_pages)
            logger.info("replayed journal %s (%d pages)", self.journal_path, len(pages))
        self._remove_journal()


def _parse_journal(raw: bytes) -> Optional[Tuple[Dict[int, bytearray], int]]:
    if len(raw) < _JOURNAL_HDR_SIZE + _JOURNAL_CRC_SIZE:
        return None
    body = raw[:-_JOURNAL_CRC_SIZE]
    (crc,) = struct.unpack(_JOURNAL_CRC_FMT, raw[-_JOURNAL_CRC_SIZE:])
    if zlib.crc32(body) != crc:
        return None
    magic, size_pages, count = struct.unpack_from(_JOURNAL_HDR_FMT, body, 0)
    if magic != _JOURNAL_MAGIC or len(body) != _JOURNAL_HDR_SIZE + count * _JOURNAL_ENTRY_SIZE:
        return None
    pages: Dict[int, bytearray] = {}
    pos = _JOURNAL_HDR_SIZE
    for _ in range(count):
        (page_no,) = struct.unpack_from(_JOURNAL_ENTRY_FMT, body, pos)
        pos += struct.calcsize(_JOURNAL_ENTRY_FMT)
        pages[page_no] = bytearray(body[pos:pos + JOURNAL_PAGE_SIZE])
        pos += JOURNAL_PAGE_SIZE
    return pages, size_pages
