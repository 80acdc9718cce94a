"""
Binary encoding of todo records for the stable map.

Layout (little-endian):
  version(uint8)
  id(uint64)
  title: len(uint32) + utf-8 bytes
  description: len(uint32) + utf-8 bytes
  status tag(uint8) | priority tag(uint8)
  due_date: presence(uint8) [+ uint64]
  created_at(uint64)
  updated_at: presence(uint8) [+ uint64]
  owner: len(uint32) + utf-8 bytes

Enum tags are part of the persisted format: new variants get new numbers,
existing numbers never change.
"""
from __future__ import annotations

import struct
from typing import Dict, Optional, Tuple

from .models import Priority, TaskStatus, TodoEntity
from .storage.errors import CorruptionError, RecordTooLargeError

FORMAT_VERSION = 1
MAX_SIZE = 2048

STATUS_TAGS: Dict[TaskStatus, int] = {
    TaskStatus.PENDING: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.COMPLETED: 2,
}
PRIORITY_TAGS: Dict[Priority, int] = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}
_STATUS_BY_TAG = {tag: status for status, tag in STATUS_TAGS.items()}
_PRIORITY_BY_TAG = {tag: priority for priority, tag in PRIORITY_TAGS.items()}

_ABSENT = 0
_PRESENT = 1


# PUBLIC_INTERFACE
def encode_todo(todo: TodoEntity) -> bytes:
    """
    Serialize a todo.

    Raises:
        RecordTooLargeError: if the result exceeds MAX_SIZE bytes or a numeric
            field does not fit its fixed width.
    """
    out = bytearray()
    try:
        out += struct.pack("<BQ", FORMAT_VERSION, todo["id"])
        _pack_text(out, todo["title"])
        _pack_text(out, todo["description"])
        out += struct.pack(
            "<BB",
            STATUS_TAGS[TaskStatus(todo["status"])],
            PRIORITY_TAGS[Priority(todo["priority"])],
        )
        _pack_optional_u64(out, todo["due_date"])
        out += struct.pack("<Q", todo["created_at"])
        _pack_optional_u64(out, todo["updated_at"])
        _pack_text(out, todo["owner"])
    except struct.error as e:
        raise RecordTooLargeError(f"todo id={todo['id']} has a field outside its fixed width") from e
    if len(out) > MAX_SIZE:
        raise RecordTooLargeError(f"encoded todo id={todo['id']} is {len(out)} bytes; the limit is {MAX_SIZE}")
    return bytes(out)


# PUBLIC_INTERFACE
def decode_todo(data: bytes) -> TodoEntity:
    """
    Deserialize bytes produced by encode_todo.

    Raises:
        CorruptionError: on any malformed input. Stored records are only
            written by encode_todo, so this is never an expected outcome.
    """
    if len(data) > MAX_SIZE:
        raise CorruptionError(f"todo record is {len(data)} bytes; the limit is {MAX_SIZE}")
    reader = _Reader(bytes(data))
    (version,) = reader.unpack("<B")
    if version != FORMAT_VERSION:
        raise CorruptionError(f"unsupported todo format version {version}")
    (todo_id,) = reader.unpack("<Q")
    title = reader.text()
    description = reader.text()
    status_tag, priority_tag = reader.unpack("<BB")
    status = _STATUS_BY_TAG.get(status_tag)
    if status is None:
        raise CorruptionError(f"unknown status tag {status_tag}")
    priority = _PRIORITY_BY_TAG.get(priority_tag)
    if priority is None:
        raise CorruptionError(f"unknown priority tag {priority_tag}")
    due_date = reader.optional_u64()
    (created_at,) = reader.unpack("<Q")
    updated_at = reader.optional_u64()
    owner = reader.text()
    reader.finish()
    return {
        "id": todo_id,
        "title": title,
        "description": description,
        "status": status,
        "priority": priority,
        "due_date": due_date,
        "created_at": created_at,
        "updated_at": updated_at,
        "owner": owner,
    }


# PUBLIC_INTERFACE
class TodoCodec:
    """Value codec plugging the todo encoding into StableBTreeMap."""

    MAX_SIZE = MAX_SIZE

    def encode(self, value: TodoEntity) -> bytes:
        return encode_todo(value)

    def decode(self, data: bytes) -> TodoEntity:
        return decode_todo(data)


def _pack_text(out: bytearray, value: str) -> None:
    raw = value.encode("utf-8")
    out += struct.pack("<I", len(raw))
    out += raw


def _pack_optional_u64(out: bytearray, value: Optional[int]) -> None:
    if value is None:
        out += struct.pack("<B", _ABSENT)
    else:
        out += struct.pack("<BQ", _PRESENT, value)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, n: int) -> bytes:
        end = self._pos + n
        if end > len(self._data):
            raise CorruptionError("truncated todo record")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def unpack(self, fmt: str) -> Tuple[int, ...]:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))

    def text(self) -> str:
        (n,) = self.unpack("<I")
        try:
            return self.take(n).decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptionError("todo record holds invalid utf-8") from e

    def optional_u64(self) -> Optional[int]:
        (flag,) = self.unpack("<B")
        if flag == _ABSENT:
            return None
        if flag != _PRESENT:
            raise CorruptionError(f"bad presence tag {flag}")
        (value,) = self.unpack("<Q")
        return value

    def finish(self) -> None:
        if self._pos != len(self._data):
            raise CorruptionError(f"{len(self._data) - self._pos} trailing bytes after todo record")
