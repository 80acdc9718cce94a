from __future__ import annotations

import logging
import struct
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Generic, Iterator, List, Optional, Protocol, Tuple, TypeVar

from .errors import CorruptionError, MemoryFullError, RecordTooLargeError
from .memory import PAGE_SIZE
from .memory_manager import Region

logger = logging.getLogger(__name__)

V = TypeVar("V")

U64_MAX = 2**64 - 1
NULL = 0

# Minimum degree of the B-tree: every node but the root keeps B-1..2B-1 entries.
B = 6
CAPACITY = 2 * B - 1
MIN_ENTRIES = B - 1

# ---------------- Map header (region offset 0) ----------------
#   magic(3s) | version(uint8) | max_key_size(uint32) | max_value_size(uint32)
#   | root_addr(uint64) | length(uint64) | free_head(uint64) | next_addr(uint64)
_MAGIC = b"BTR"
_LAYOUT_VERSION = 1
_HEADER_FMT = "<3sBIIQQQQ"
_HEADER_SIZE = 64
_KEY_SIZE = 8

# ---------------- Node layout ----------------
#   magic(3s) | version(uint8) | node_type(uint8) | pad | count(uint16)
#   CAPACITY x [ key(uint64) | value_len(uint32) | value(max_value_size) ]
#   (CAPACITY + 1) x child_addr(uint64)          (internal nodes only)
_NODE_MAGIC = b"BTN"
_NODE_HEADER_FMT = "<3sBBxH"
_NODE_HEADER_SIZE = struct.calcsize(_NODE_HEADER_FMT)
_ENTRY_PREFIX_FMT = "<QI"
_ENTRY_PREFIX_SIZE = struct.calcsize(_ENTRY_PREFIX_FMT)
_LEAF = 0
_INTERNAL = 1
_FREE_LINK_FMT = "<Q"


class ValueCodec(Protocol[V]):
    MAX_SIZE: int

    def encode(self, value: V) -> bytes: ...

    def decode(self, data: bytes) -> V: ...


@dataclass
class _Header:
    root: int
    length: int
    free_head: int
    next_addr: int


@dataclass
class _Node:
    address: int
    leaf: bool
    keys: List[int] = field(default_factory=list)
    values: List[bytes] = field(default_factory=list)
    children: List[int] = field(default_factory=list)


# PUBLIC_INTERFACE
class StableBTreeMap(Generic[V]):
    """
    Ordered map from u64 keys to bounded values, stored entirely in one region.

    Nodes have fixed-size slots sized from the value codec's MAX_SIZE, so any
    node can be rewritten in place. Every mutation runs inside one atomic
    block of the underlying stable memory. Nothing is cached between calls:
    the header is read from the region at the start of each operation.
    """

    def __init__(self, region: Region, value_codec: ValueCodec[V]) -> None:
        self._region = region
        self._codec = value_codec
        self._max_value_size = value_codec.MAX_SIZE
        self._entry_size = _ENTRY_PREFIX_SIZE + self._max_value_size
        self._children_offset = _NODE_HEADER_SIZE + CAPACITY * self._entry_size
        self.node_size = self._children_offset + (CAPACITY + 1) * 8
        if region.size() == 0:
            self._create()
        else:
            self._check_header()

    # ------------------------- public API -------------------------

    def get(self, key: int) -> Optional[V]:
        with self._region.lock:
            found = self._find(self._read_header().root, key)
        if found is None:
            return None
        node, i = found
        return self._codec.decode(node.values[i])

    def insert(self, key: int, value: V) -> Optional[V]:
        """Insert or overwrite `key`; return the previous value if there was one."""
        _check_key(key)
        encoded = self._encode(value)
        with self._region.atomic():
            header = self._read_header()
            if header.root == NULL:
                root = _Node(self._allocate(header), leaf=True, keys=[key], values=[encoded])
                self._save_node(root)
                header.root = root.address
                header.length = 1
                self._write_header(header)
                return None

            found = self._find(header.root, key)
            if found is not None:
                node, i = found
                previous = node.values[i]
                node.values[i] = encoded
                self._save_node(node)
                return self._codec.decode(previous)

            root = self._load_node(header.root)
            if len(root.keys) == CAPACITY:
                new_root = _Node(self._allocate(header), leaf=False, children=[root.address])
                self._split_child(header, new_root, 0, root)
                header.root = new_root.address
                root = new_root
            self._insert_non_full(header, root, key, encoded)
            header.length += 1
            self._write_header(header)
        return None

    def remove(self, key: int) -> Optional[V]:
        """Delete `key`; return its value, or None if it was absent."""
        with self._region.atomic():
            header = self._read_header()
            if self._find(header.root, key) is None:
                return None
            removed = self._remove_from(header, self._load_node(header.root), key)

            root = self._load_node(header.root)
            if not root.keys:
                header.root = NULL if root.leaf else root.children[0]
                self._free(header, root.address)
            header.length -= 1
            self._write_header(header)
        return self._codec.decode(removed)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, int):
            return False
        with self._region.lock:
            return self._find(self._read_header().root, key) is not None

    def __len__(self) -> int:
        return self._read_header().length

    def items(self) -> Iterator[Tuple[int, V]]:
        """Iterate entries in key order, as of the moment of the call."""
        with self._region.lock:
            root = self._read_header().root
            entries = list(self._iter_node(root)) if root != NULL else []
        return iter(entries)

    def keys(self) -> Iterator[int]:
        for key, _ in self.items():
            yield key

    # ------------------------- header -------------------------

    def _create(self) -> None:
        with self._region.atomic():
            if self._region.grow(1) == -1:
                raise MemoryFullError("cannot allocate a page for the map header")
            self._region.write(
                0,
                struct.pack(_HEADER_FMT, _MAGIC, _LAYOUT_VERSION, _KEY_SIZE, self._max_value_size, NULL, 0, NULL, _HEADER_SIZE),
            )

    def _check_header(self) -> None:
        magic, version, max_key_size, max_value_size, *_ = struct.unpack_from(
            _HEADER_FMT, self._region.read(0, struct.calcsize(_HEADER_FMT)), 0
        )
        if magic != _MAGIC:
            raise CorruptionError(f"region {self._region.memory_id} does not hold a btree map")
        if version != _LAYOUT_VERSION:
            raise CorruptionError(f"unsupported btree layout version {version}")
        if max_key_size != _KEY_SIZE or max_value_size != self._max_value_size:
            raise CorruptionError(
                f"btree slot sizes differ from the codec: key={max_key_size} value={max_value_size}"
            )

    def _read_header(self) -> _Header:
        _, _, _, _, root, length, free_head, next_addr = struct.unpack_from(
            _HEADER_FMT, self._region.read(0, struct.calcsize(_HEADER_FMT)), 0
        )
        return _Header(root, length, free_head, next_addr)

    def _write_header(self, header: _Header) -> None:
        self._region.write(
            0,
            struct.pack(
                _HEADER_FMT,
                _MAGIC,
                _LAYOUT_VERSION,
                _KEY_SIZE,
                self._max_value_size,
                header.root,
                header.length,
                header.free_head,
                header.next_addr,
            ),
        )

    # ------------------------- node storage -------------------------

    def _allocate(self, header: _Header) -> int:
        if header.free_head != NULL:
            address = header.free_head
            (header.free_head,) = struct.unpack(_FREE_LINK_FMT, self._region.read(address, 8))
            return address
        address = header.next_addr
        end = address + self.node_size
        capacity = self._region.size() * PAGE_SIZE
        if end > capacity:
            pages = -(-(end - capacity) // PAGE_SIZE)
            if self._region.grow(pages) == -1:
                raise MemoryFullError(f"cannot grow region {self._region.memory_id} for a new node")
        header.next_addr = end
        logger.debug("allocated btree node at %d", address)
        return address

    def _free(self, header: _Header, address: int) -> None:
        self._region.write(address, struct.pack(_FREE_LINK_FMT, header.free_head))
        header.free_head = address

    def _load_node(self, address: int) -> _Node:
        raw = self._region.read(address, self.node_size)
        magic, version, node_type, count = struct.unpack_from(_NODE_HEADER_FMT, raw, 0)
        if magic != _NODE_MAGIC or version != _LAYOUT_VERSION or node_type not in (_LEAF, _INTERNAL) or count > CAPACITY:
            raise CorruptionError(f"bad btree node at address {address}")
        node = _Node(address, leaf=node_type == _LEAF)
        pos = _NODE_HEADER_SIZE
        for _ in range(count):
            key, value_len = struct.unpack_from(_ENTRY_PREFIX_FMT, raw, pos)
            if value_len > self._max_value_size:
                raise CorruptionError(f"bad value length {value_len} in node at address {address}")
            start = pos + _ENTRY_PREFIX_SIZE
            node.keys.append(key)
            node.values.append(raw[start:start + value_len])
            pos += self._entry_size
        if not node.leaf:
            node.children = list(struct.unpack_from(f"<{count + 1}Q", raw, self._children_offset))
        return node

    def _save_node(self, node: _Node) -> None:
        buf = bytearray(self.node_size)
        struct.pack_into(_NODE_HEADER_FMT, buf, 0, _NODE_MAGIC, _LAYOUT_VERSION, _LEAF if node.leaf else _INTERNAL, len(node.keys))
        pos = _NODE_HEADER_SIZE
        for key, value in zip(node.keys, node.values):
            struct.pack_into(_ENTRY_PREFIX_FMT, buf, pos, key, len(value))
            start = pos + _ENTRY_PREFIX_SIZE
            buf[start:start + len(value)] = value
            pos += self._entry_size
        if not node.leaf:
            struct.pack_into(f"<{len(node.children)}Q", buf, self._children_offset, *node.children)
        self._region.write(node.address, bytes(buf))

    def _encode(self, value: V) -> bytes:
        data = self._codec.encode(value)
        if len(data) > self._max_value_size:
            raise RecordTooLargeError(f"value is {len(data)} bytes; the limit is {self._max_value_size}")
        return data

    # ------------------------- search -------------------------

    def _find(self, address: int, key: int) -> Optional[Tuple[_Node, int]]:
        while address != NULL:
            node = self._load_node(address)
            i = bisect_left(node.keys, key)
            if i < len(node.keys) and node.keys[i] == key:
                return node, i
            if node.leaf:
                return None
            address = node.children[i]
        return None

    def _iter_node(self, address: int) -> Iterator[Tuple[int, V]]:
        node = self._load_node(address)
        for i, key in enumerate(node.keys):
            if not node.leaf:
                yield from self._iter_node(node.children[i])
            yield key, self._codec.decode(node.values[i])
        if not node.leaf:
            yield from self._iter_node(node.children[-1])

    # ------------------------- insertion -------------------------

    def _split_child(self, header: _Header, parent: _Node, i: int, child: _Node) -> None:
        """Split the full `child` (parent.children[i]) around its median entry."""
        sibling = _Node(self._allocate(header), leaf=child.leaf)
        sibling.keys = child.keys[B:]
        sibling.values = child.values[B:]
        if not child.leaf:
            sibling.children = child.children[B:]
            child.children = child.children[:B]
        median_key, median_value = child.keys[B - 1], child.values[B - 1]
        child.keys = child.keys[:B - 1]
        child.values = child.values[:B - 1]

        parent.keys.insert(i, median_key)
        parent.values.insert(i, median_value)
        parent.children.insert(i + 1, sibling.address)
        self._save_node(child)
        self._save_node(sibling)
        self._save_node(parent)

    def _insert_non_full(self, header: _Header, node: _Node, key: int, value: bytes) -> None:
        while True:
            i = bisect_left(node.keys, key)
            if node.leaf:
                node.keys.insert(i, key)
                node.values.insert(i, value)
                self._save_node(node)
                return
            child = self._load_node(node.children[i])
            if len(child.keys) == CAPACITY:
                self._split_child(header, node, i, child)
                if key > node.keys[i]:
                    child = self._load_node(node.children[i + 1])
            node = child

    # ------------------------- removal -------------------------

    def _remove_from(self, header: _Header, node: _Node, key: int) -> bytes:
        """
        Remove `key` from the subtree rooted at `node`, which is known to
        contain it. Every child descended into is first topped up to at least
        B entries so that removing one never underflows it.
        """
        while True:
            i = bisect_left(node.keys, key)
            if i < len(node.keys) and node.keys[i] == key:
                if node.leaf:
                    node.keys.pop(i)
                    value = node.values.pop(i)
                    self._save_node(node)
                    return value

                value = node.values[i]
                left = self._load_node(node.children[i])
                if len(left.keys) > MIN_ENTRIES:
                    pred_key, pred_value = self._max_entry(left)
                    self._remove_from(header, left, pred_key)
                    node.keys[i], node.values[i] = pred_key, pred_value
                    self._save_node(node)
                    return value
                right = self._load_node(node.children[i + 1])
                if len(right.keys) > MIN_ENTRIES:
                    succ_key, succ_value = self._min_entry(right)
                    self._remove_from(header, right, succ_key)
                    node.keys[i], node.values[i] = succ_key, succ_value
                    self._save_node(node)
                    return value
                self._merge(header, node, i, left, right)
                node = left
                continue

            if node.leaf:
                raise CorruptionError(f"key {key} vanished while removing it")
            child = self._load_node(node.children[i])
            if len(child.keys) <= MIN_ENTRIES:
                child = self._fill_child(header, node, i, child)
            node = child

    def _fill_child(self, header: _Header, parent: _Node, i: int, child: _Node) -> _Node:
        """Give parent.children[i] an extra entry; return the node to descend into."""
        left = self._load_node(parent.children[i - 1]) if i > 0 else None
        if left is not None and len(left.keys) > MIN_ENTRIES:
            child.keys.insert(0, parent.keys[i - 1])
            child.values.insert(0, parent.values[i - 1])
            parent.keys[i - 1] = left.keys.pop()
            parent.values[i - 1] = left.values.pop()
            if not left.leaf:
                child.children.insert(0, left.children.pop())
            self._save_node(left)
            self._save_node(child)
            self._save_node(parent)
            return child

        if i < len(parent.keys):
            right = self._load_node(parent.children[i + 1])
            if len(right.keys) > MIN_ENTRIES:
                child.keys.append(parent.keys[i])
                child.values.append(parent.values[i])
                parent.keys[i] = right.keys.pop(0)
                parent.values[i] = right.values.pop(0)
                if not right.leaf:
                    child.children.append(right.children.pop(0))
                self._save_node(right)
                self._save_node(child)
                self._save_node(parent)
                return child
            self._merge(header, parent, i, child, right)
            return child

        assert left is not None
        self._merge(header, parent, i - 1, left, child)
        return left

    def _merge(self, header: _Header, parent: _Node, i: int, left: _Node, right: _Node) -> None:
        """Fold parent entry i and `right` into `left`; free `right`."""
        left.keys.append(parent.keys.pop(i))
        left.values.append(parent.values.pop(i))
        left.keys.extend(right.keys)
        left.values.extend(right.values)
        left.children.extend(right.children)
        parent.children.pop(i + 1)
        self._save_node(left)
        self._save_node(parent)
        self._free(header, right.address)

    def _max_entry(self, node: _Node) -> Tuple[int, bytes]:
        while not node.leaf:
            node = self._load_node(node.children[-1])
        return node.keys[-1], node.values[-1]

    def _min_entry(self, node: _Node) -> Tuple[int, bytes]:
        while not node.leaf:
            node = self._load_node(node.children[0])
        return node.keys[0], node.values[0]


def _check_key(key: int) -> None:
    if not 0 <= key <= U64_MAX:
        raise ValueError(f"key does not fit in 64 bits: {key}")
