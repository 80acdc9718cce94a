from __future__ import annotations

from enum import Enum
from typing import Optional, TypedDict


# PUBLIC_INTERFACE
class TaskStatus(str, Enum):
    """Lifecycle state of a todo. Any state may be set from any other."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


# PUBLIC_INTERFACE
class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"


# PUBLIC_INTERFACE
class TodoEntity(TypedDict):
    """
    A todo record as persisted in the stable map.

    Fields:
    - id: Unique u64 identifier, never reused
    - title: Short title, never empty after trimming
    - description: Free text
    - status: TaskStatus, Pending on creation
    - priority: Priority, Low by default
    - due_date: Optional timestamp (nanoseconds since the Unix epoch)
    - created_at: Creation timestamp, immutable
    - updated_at: Timestamp of the last mutation, None until the first one
    - owner: Caller identity captured at creation; only it may mutate the record
    """

    id: int
    title: str
    description: str
    status: TaskStatus
    priority: Priority
    due_date: Optional[int]
    created_at: int
    updated_at: Optional[int]
    owner: str
