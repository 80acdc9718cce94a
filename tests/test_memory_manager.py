import pytest

from stable_todo.storage import PAGE_SIZE, CorruptionError, FileStableMemory, InMemoryStableMemory, MemoryManager


@pytest.fixture
def manager():
    return MemoryManager(InMemoryStableMemory(), bucket_size_in_pages=1)


class TestRegions:
    def test_new_regions_are_empty(self, manager):
        region = manager.get(7)
        assert region.memory_id == 7
        assert region.size() == 0
        with pytest.raises(IndexError):
            region.read(0, 1)

    def test_same_id_returns_same_handle(self, manager):
        assert manager.get(3) is manager.get(3)

    def test_invalid_ids(self, manager):
        with pytest.raises(ValueError):
            manager.get(255)
        with pytest.raises(ValueError):
            manager.get(-1)

    def test_grow_returns_previous_size(self, manager):
        region = manager.get(0)
        assert region.grow(2) == 0
        assert region.grow(1) == 2
        assert region.size() == 3

    def test_regions_do_not_overlap(self, manager):
        a, b = manager.get(0), manager.get(1)
        a.grow(1)
        b.grow(1)
        a.write(0, b"a" * PAGE_SIZE)
        b.write(0, b"b" * PAGE_SIZE)
        assert a.read(0, PAGE_SIZE) == b"a" * PAGE_SIZE
        assert b.read(0, PAGE_SIZE) == b"b" * PAGE_SIZE

    def test_interleaved_buckets_stay_contiguous_to_the_region(self, manager):
        a, b = manager.get(0), manager.get(1)
        a.grow(1)
        b.grow(1)
        a.grow(1)
        assert manager.buckets_of(0) == [0, 2]
        assert manager.buckets_of(1) == [1]
        assert manager.num_allocated_buckets == 3

        payload = bytes(range(200))
        a.write(PAGE_SIZE - 100, payload)
        assert a.read(PAGE_SIZE - 100, 200) == payload
        assert b.read(0, 16) == bytes(16)

    def test_writes_past_the_region_end_are_rejected(self, manager):
        region = manager.get(0)
        region.grow(1)
        with pytest.raises(IndexError):
            region.write(PAGE_SIZE - 1, b"xy")

    def test_grow_fails_when_memory_is_full(self):
        manager = MemoryManager(InMemoryStableMemory(max_pages=2), bucket_size_in_pages=1)
        assert manager.get(0).grow(1) == 0
        assert manager.get(1).grow(1) == -1
        assert manager.get(1).size() == 0
        assert manager.num_allocated_buckets == 1


class TestPersistedLayout:
    def test_layout_survives_reopen(self, tmp_path):
        path = str(tmp_path / "stable.bin")
        memory = FileStableMemory(path)
        manager = MemoryManager(memory, bucket_size_in_pages=1)
        manager.get(0).grow(1)
        manager.get(4).grow(2)
        manager.get(0).grow(1)
        manager.get(4).write(PAGE_SIZE + 10, b"region four")
        manager.get(0).write(PAGE_SIZE, b"region zero")
        memory.close()

        memory = FileStableMemory(path)
        reopened = MemoryManager(memory, bucket_size_in_pages=1)
        assert reopened.get(0).size() == 2
        assert reopened.get(4).size() == 2
        assert reopened.buckets_of(0) == [0, 3]
        assert reopened.buckets_of(4) == [1, 2]
        assert reopened.get(4).read(PAGE_SIZE + 10, 11) == b"region four"
        assert reopened.get(0).read(PAGE_SIZE, 11) == b"region zero"
        memory.close()

    def test_persisted_bucket_size_wins(self):
        memory = InMemoryStableMemory()
        MemoryManager(memory, bucket_size_in_pages=1).get(0).grow(1)
        reopened = MemoryManager(memory, bucket_size_in_pages=128)
        assert reopened.bucket_size_in_pages == 1
        assert reopened.get(0).size() == 1

    def test_foreign_bytes_are_rejected(self):
        memory = InMemoryStableMemory()
        memory.grow(1)
        memory.write(0, b"not a manager")
        with pytest.raises(CorruptionError):
            MemoryManager(memory)

    def test_invalid_bucket_size(self):
        with pytest.raises(ValueError):
            MemoryManager(InMemoryStableMemory(), bucket_size_in_pages=0)

    def test_discarded_growth_is_forgotten(self, manager):
        region = manager.get(0)
        region.grow(1)
        with pytest.raises(RuntimeError):
            with region.atomic():
                region.grow(3)
                manager.get(1).grow(1)
                raise RuntimeError("abort")
        assert region.size() == 1
        assert manager.get(1).size() == 0
        assert manager.num_allocated_buckets == 1
        assert manager.get(1).grow(1) == 0
        assert manager.buckets_of(1) == [1]
