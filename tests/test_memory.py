import errno
import os
import struct
from concurrent.futures import ThreadPoolExecutor

import pytest

from stable_todo.storage import PAGE_SIZE, FileStableMemory, InMemoryStableMemory, StorageUnavailableError
from stable_todo.storage.memory import JOURNAL_PAGE_SIZE


@pytest.fixture(params=["memory", "file"])
def memory(request, tmp_path):
    if request.param == "memory":
        mem = InMemoryStableMemory()
    else:
        mem = FileStableMemory(str(tmp_path / "stable.bin"))
    yield mem
    mem.close()


class TestStableMemory:
    def test_starts_empty_and_grows_in_pages(self, memory):
        assert memory.size() == 0
        assert memory.grow(2) == 0
        assert memory.grow(1) == 2
        assert memory.size() == 3
        assert memory.read(0, 16) == bytes(16)

    def test_write_across_journal_pages(self, memory):
        memory.grow(1)
        data = bytes(range(256)) * 40
        offset = JOURNAL_PAGE_SIZE - 100
        memory.write(offset, data)
        assert memory.read(offset, len(data)) == data
        assert memory.read(offset - 1, 1) == b"\x00"

    def test_out_of_bounds_access(self, memory):
        memory.grow(1)
        with pytest.raises(IndexError):
            memory.read(PAGE_SIZE - 1, 2)
        with pytest.raises(IndexError):
            memory.write(PAGE_SIZE, b"x")
        with pytest.raises(IndexError):
            memory.read(-1, 1)

    def test_grow_beyond_maximum(self):
        memory = InMemoryStableMemory(max_pages=2)
        assert memory.grow(2) == 0
        assert memory.grow(1) == -1
        assert memory.size() == 2

    def test_reads_inside_a_transaction_see_its_writes(self, memory):
        memory.grow(1)
        with memory.atomic():
            memory.write(10, b"pending")
            assert memory.in_transaction
            assert memory.read(10, 7) == b"pending"
        assert not memory.in_transaction
        assert memory.read(10, 7) == b"pending"

    def test_failed_transaction_leaves_no_trace(self, memory):
        memory.grow(1)
        memory.write(0, b"committed")
        with pytest.raises(RuntimeError):
            with memory.atomic():
                memory.write(0, b"discarded")
                memory.grow(3)
                raise RuntimeError("abort")
        assert memory.read(0, 9) == b"committed"
        assert memory.size() == 1

    def test_nested_blocks_commit_with_the_outermost(self, memory):
        memory.grow(1)
        with pytest.raises(RuntimeError):
            with memory.atomic():
                with memory.atomic():
                    memory.write(0, b"inner")
                raise RuntimeError("abort")
        assert memory.read(0, 5) == bytes(5)

    def test_rollback_listeners_are_called(self, memory):
        calls = []
        memory.on_rollback(lambda: calls.append("rolled back"))
        memory.grow(1)
        with pytest.raises(ValueError):
            with memory.atomic():
                memory.write(0, b"x")
                raise ValueError("abort")
        assert calls == ["rolled back"]

    def test_blocks_from_threads_do_not_interleave(self, memory):
        memory.grow(1)

        def bump(_):
            with memory.atomic():
                (value,) = struct.unpack("<Q", memory.read(0, 8))
                memory.write(0, struct.pack("<Q", value + 1))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(bump, range(100)))
        assert struct.unpack("<Q", memory.read(0, 8)) == (100,)
        assert not memory.in_transaction


class TestFileStableMemory:
    def test_contents_survive_reopen(self, tmp_path):
        path = str(tmp_path / "stable.bin")
        memory = FileStableMemory(path)
        memory.grow(2)
        memory.write(PAGE_SIZE + 5, b"durable")
        memory.close()

        reopened = FileStableMemory(path)
        assert reopened.size() == 2
        assert reopened.read(PAGE_SIZE + 5, 7) == b"durable"
        assert not os.path.exists(reopened.journal_path)
        reopened.close()

    def test_complete_journal_is_replayed_on_open(self, tmp_path):
        path = str(tmp_path / "stable.bin")
        memory = FileStableMemory(path)
        memory.grow(1)
        page = bytearray(JOURNAL_PAGE_SIZE)
        page[:8] = b"replayed"
        # Crash after the journal was written but before it was applied
        memory._write_journal({1: page}, 2)
        memory.close()

        reopened = FileStableMemory(path)
        assert reopened.size() == 2
        assert reopened.read(JOURNAL_PAGE_SIZE, 8) == b"replayed"
        assert not os.path.exists(reopened.journal_path)
        reopened.close()

    def test_torn_journal_is_discarded(self, tmp_path):
        path = str(tmp_path / "stable.bin")
        memory = FileStableMemory(path)
        memory.grow(1)
        memory.write(0, b"original")
        memory.close()

        page = bytearray(JOURNAL_PAGE_SIZE)
        page[:8] = b"mangled!"
        memory._write_journal({0: page}, 1)
        with open(memory.journal_path, "r+b") as journal:
            journal.truncate(os.path.getsize(memory.journal_path) - 3)

        reopened = FileStableMemory(path)
        assert reopened.read(0, 8) == b"original"
        assert not os.path.exists(reopened.journal_path)
        reopened.close()

    def test_commit_that_fails_after_journaling_completes_on_reopen(self, tmp_path):
        path = str(tmp_path / "stable.bin")
        memory = FileStableMemory(path)
        memory.grow(1)
        memory.write(0, b"original")
        memory.write(JOURNAL_PAGE_SIZE, b"original")

        memory._f = FailingWrites(memory._f, fail_on=2)
        with pytest.raises(OSError):
            with memory.atomic():
                memory.write(0, b"AAAAAAAA")
                memory.write(JOURNAL_PAGE_SIZE, b"BBBBBBBB")

        # The data file is half written; nothing may be read from it until recovery.
        with pytest.raises(StorageUnavailableError):
            memory.read(0, 8)
        with pytest.raises(StorageUnavailableError):
            memory.write(0, b"x")
        assert os.path.exists(memory.journal_path)
        memory.close()

        reopened = FileStableMemory(path)
        assert reopened.read(0, 8) == b"AAAAAAAA"
        assert reopened.read(JOURNAL_PAGE_SIZE, 8) == b"BBBBBBBB"
        assert not os.path.exists(reopened.journal_path)
        reopened.close()

    def test_commit_that_fails_while_journaling_is_rolled_back(self, tmp_path, monkeypatch):
        path = str(tmp_path / "stable.bin")
        memory = FileStableMemory(path)
        memory.grow(1)
        memory.write(0, b"original")

        def torn_journal(pages, size_pages):
            with open(memory.journal_path, "wb") as journal:
                journal.write(b"TDJRNL01")
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(memory, "_write_journal", torn_journal)
        with pytest.raises(OSError):
            memory.write(0, b"mangled!")
        monkeypatch.undo()

        assert not os.path.exists(memory.journal_path)
        assert memory.read(0, 8) == b"original"
        memory.write(0, b"accepted")
        memory.close()

        reopened = FileStableMemory(path)
        assert reopened.read(0, 8) == b"accepted"
        reopened.close()

    def test_directory_is_synced_when_the_journal_comes_and_goes(self, tmp_path, monkeypatch):
        memory = FileStableMemory(str(tmp_path / "stable.bin"))
        synced = []
        monkeypatch.setattr(memory, "_sync_directory", lambda: synced.append(os.path.exists(memory.journal_path)))
        memory.grow(1)
        assert synced == [True, False]
        memory.close()


class FailingWrites:
    """File wrapper whose n-th write fails as if the disk were full."""

    def __init__(self, f, fail_on):
        self._f = f
        self._fail_on = fail_on
        self._writes = 0

    def write(self, data):
        self._writes += 1
        if self._writes == self._fail_on:
            raise OSError(errno.ENOSPC, "No space left on device")
        return self._f.write(data)

    def __getattr__(self, name):
        return getattr(self._f, name)
