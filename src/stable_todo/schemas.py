from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import Priority, TaskStatus, TodoEntity
from .utils import datetime_to_nanos

U64_MAX = 2**64 - 1

# Worst case 4 bytes per character: these limits keep every accepted record
# within the 2048-byte encoding bound together with a 63-char owner.
TITLE_MAX_LENGTH = 120
DESCRIPTION_MAX_LENGTH = 300

# Shared type for incoming due_date: nanoseconds, a date, a datetime, or an ISO8601 string
DueDateInput = Union[int, date, datetime, str]


def _parse_due_date(value: Optional[DueDateInput]) -> Optional[int]:
    """
    Internal helper to normalize due_date input into nanoseconds since the Unix epoch.
    - If value is an int, it is already a timestamp.
    - If value is a string of digits, it is parsed as a timestamp; otherwise as ISO8601
      (a bare date means 00:00 UTC).
    - If value is a date (not datetime), convert to 00:00 UTC that day.
    - If value is a datetime, convert it (naive means UTC).
    """
    if value is None:
        return None

    if isinstance(value, bool):
        raise ValueError("Invalid type for due_date; expected a timestamp, date, datetime, or ISO8601 string.")

    if isinstance(value, int):
        return value

    if isinstance(value, datetime):
        return datetime_to_nanos(value)

    if isinstance(value, date):
        return datetime_to_nanos(datetime(value.year, value.month, value.day))

    if isinstance(value, str):
        s = value.strip()
        if s.isdigit():
            return int(s)
        try:
            return datetime_to_nanos(datetime.fromisoformat(s))
        except ValueError:
            try:
                d = date.fromisoformat(s)
            except ValueError as e:
                raise ValueError(
                    "Invalid due_date format. Use a nanosecond timestamp or an ISO8601 date or datetime string "
                    "(e.g., '2025-01-31' or '2025-01-31T13:45:00')."
                ) from e
            return datetime_to_nanos(datetime(d.year, d.month, d.day))

    raise ValueError("Invalid type for due_date; expected a timestamp, date, datetime, or ISO8601 string.")


# PUBLIC_INTERFACE
class TodoPayload(BaseModel):
    """
    Schema for creating or replacing the editable fields of a todo.

    The title is stored as given; whether it is blank is decided by the
    service, which reports it as InvalidInput.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Buy milk",
                "description": "Two litres, semi-skimmed",
                "priority": "Low",
                "due_date": "2025-02-01",
            }
        }
    )

    title: str = Field(..., description="Short title for the todo item", max_length=TITLE_MAX_LENGTH)
    description: str = Field(default="", description="Detailed description", max_length=DESCRIPTION_MAX_LENGTH)
    priority: Priority = Field(default=Priority.LOW, description="Priority of the todo item")
    due_date: Optional[int] = Field(
        default=None,
        ge=0,
        le=U64_MAX,
        description=(
            "Due timestamp in nanoseconds since the Unix epoch. Also accepts ISO8601 dates or datetimes; "
            "dates are set to 00:00 UTC"
        ),
    )

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v: Optional[DueDateInput]) -> Optional[int]:
        """
        Normalize due_date from int/str/date/datetime to nanoseconds.
        """
        return _parse_due_date(v)


# PUBLIC_INTERFACE
class StatusPayload(BaseModel):
    """
    Schema for changing the status of a todo.
    """

    model_config = ConfigDict(json_schema_extra={"example": {"status": "InProgress"}})

    status: TaskStatus = Field(..., description="New status of the todo item")


# PUBLIC_INTERFACE
class TodoOut(BaseModel):
    """
    Schema returned by the API for a todo item.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": 1,
                "title": "Buy milk",
                "description": "Two litres, semi-skimmed",
                "status": "InProgress",
                "priority": "Low",
                "due_date": 1738368000000000000,
                "created_at": 1737800130123456000,
                "updated_at": 1737885600000001000,
                "owner": "2vxsx-fae",
            }
        }
    )

    id: int = Field(..., description="Unique identifier of the todo item")
    title: str = Field(..., description="Short title for the todo item")
    description: str = Field(..., description="Detailed description")
    status: TaskStatus = Field(..., description="Lifecycle status")
    priority: Priority = Field(..., description="Priority")
    due_date: Optional[int] = Field(default=None, description="Due timestamp (ns since the Unix epoch)")
    created_at: int = Field(..., description="Creation timestamp (ns since the Unix epoch)")
    updated_at: Optional[int] = Field(default=None, description="Last update timestamp (ns since the Unix epoch)")
    owner: str = Field(..., description="Identity of the caller that created the item")

    @classmethod
    def from_entity(cls, todo: TodoEntity) -> "TodoOut":
        return cls(**todo)


# PUBLIC_INTERFACE
class ErrorOut(BaseModel):
    """
    Error envelope for NotFound and InvalidInput failures.
    """

    error: str = Field(..., description="Error kind: NotFound or InvalidInput")
    message: str = Field(..., description="Human readable reason")
