import random

import pytest

from stable_todo.storage import (
    CorruptionError,
    InMemoryStableMemory,
    MemoryManager,
    RecordTooLargeError,
    StableBTreeMap,
)


class BytesCodec:
    def __init__(self, max_size=64):
        self.MAX_SIZE = max_size

    def encode(self, value):
        return bytes(value)

    def decode(self, data):
        return bytes(data)


@pytest.fixture
def manager():
    return MemoryManager(InMemoryStableMemory(), bucket_size_in_pages=1)


@pytest.fixture
def btree(manager):
    return StableBTreeMap(manager.get(1), BytesCodec())


def value_for(key):
    return f"value-{key}".encode()


class TestBasics:
    def test_empty_map(self, btree):
        assert len(btree) == 0
        assert btree.get(1) is None
        assert btree.remove(1) is None
        assert list(btree.items()) == []
        assert 1 not in btree

    def test_insert_get_and_overwrite(self, btree):
        assert btree.insert(5, b"five") is None
        assert btree.get(5) == b"five"
        assert btree.insert(5, b"FIVE") == b"five"
        assert btree.get(5) == b"FIVE"
        assert len(btree) == 1
        assert 5 in btree
        assert "5" not in btree

    def test_extreme_keys(self, btree):
        btree.insert(0, b"min")
        btree.insert(2**64 - 1, b"max")
        assert list(btree.keys()) == [0, 2**64 - 1]

    def test_keys_outside_u64(self, btree):
        with pytest.raises(ValueError):
            btree.insert(-1, b"x")
        with pytest.raises(ValueError):
            btree.insert(2**64, b"x")

    def test_value_too_large(self, btree):
        with pytest.raises(RecordTooLargeError):
            btree.insert(1, b"x" * 65)
        assert len(btree) == 0

    def test_value_of_maximum_size(self, btree):
        btree.insert(1, b"x" * 64)
        assert btree.get(1) == b"x" * 64


class TestManyEntries:
    def test_matches_a_dict_under_random_workload(self, btree):
        rng = random.Random(7)
        keys = list(range(1, 501))
        rng.shuffle(keys)
        expected = {}
        for key in keys:
            btree.insert(key, value_for(key))
            expected[key] = value_for(key)

        assert len(btree) == 500
        assert list(btree.items()) == sorted(expected.items())

        rng.shuffle(keys)
        for i, key in enumerate(keys):
            assert btree.remove(key) == expected.pop(key)
            assert btree.get(key) is None
            if i % 50 == 0:
                assert list(btree.items()) == sorted(expected.items())
        assert len(btree) == 0
        assert list(btree.items()) == []

    def test_freed_nodes_are_reused(self, manager, btree):
        region = manager.get(1)
        for key in range(300):
            btree.insert(key, value_for(key))
        size_after_first_fill = region.size()
        for key in range(300):
            btree.remove(key)
        for key in range(300):
            btree.insert(key, value_for(key))
        assert region.size() == size_after_first_fill
        assert len(btree) == 300

    def test_contents_survive_reopen(self, manager, btree):
        for key in range(0, 200, 3):
            btree.insert(key, value_for(key))
        reopened = StableBTreeMap(manager.get(1), BytesCodec())
        assert len(reopened) == len(range(0, 200, 3))
        assert reopened.get(99) == value_for(99)
        assert reopened.get(100) is None


class TestDurability:
    def test_reopen_with_different_value_size(self, manager, btree):
        btree.insert(1, b"one")
        with pytest.raises(CorruptionError):
            StableBTreeMap(manager.get(1), BytesCodec(max_size=32))

    def test_region_holding_other_data(self, manager):
        region = manager.get(2)
        region.grow(1)
        region.write(0, b"something else")
        with pytest.raises(CorruptionError):
            StableBTreeMap(region, BytesCodec())

    def test_failed_block_leaves_map_unchanged(self, manager, btree):
        for key in range(20):
            btree.insert(key, value_for(key))
        with pytest.raises(RuntimeError):
            with manager.get(1).atomic():
                for key in range(20, 60):
                    btree.insert(key, value_for(key))
                btree.remove(3)
                raise RuntimeError("abort")
        assert len(btree) == 20
        assert list(btree.keys()) == list(range(20))
        btree.insert(20, b"after")
        assert btree.get(20) == b"after"
