from __future__ import annotations

import logging
from typing import Callable

from .errors import InvalidInputError, NotFoundError
from .models import TaskStatus, TodoEntity
from .repositories import StableTodoRepository
from .schemas import TodoPayload
from .utils import now_nanos

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
class TodoService:
    """
    Todo operations on top of the stable repository.

    The caller identity is an opaque string supplied by the call boundary and
    compared by exact equality with the stored owner. Failures are raised as
    NotFoundError or InvalidInputError; storage errors propagate untouched.
    Each operation holds the repository lock for its whole read-modify-write
    sequence, so concurrent requests are processed one at a time.

    delete_todo removes the record before checking ownership unless
    `strict_delete` is set, so by default a non-owner's delete both fails
    and destroys the record.
    """

    def __init__(
        self,
        repository: StableTodoRepository,
        clock: Callable[[], int] = now_nanos,
        strict_delete: bool = False,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._strict_delete = strict_delete

    def get_todo(self, todo_id: int) -> TodoEntity:
        todo = self._repository.get(todo_id)
        if todo is None:
            raise NotFoundError(f"Todo with id={todo_id} not found")
        return todo

    def add_todo(self, payload: TodoPayload, caller: str) -> TodoEntity:
        _require_title(payload.title)
        with self._repository.lock:
            todo: TodoEntity = {
                "id": self._repository.allocate_id(),
                "title": payload.title,
                "description": payload.description,
                "status": TaskStatus.PENDING,
                "priority": payload.priority,
                "due_date": payload.due_date,
                "created_at": self._clock(),
                "updated_at": None,
                "owner": caller,
            }
            self._repository.insert(todo)
        logger.info("created todo id=%d owner=%s", todo["id"], caller)
        return todo

    def update_todo(self, todo_id: int, payload: TodoPayload, caller: str) -> TodoEntity:
        with self._repository.lock:
            todo = self._repository.get(todo_id)
            if todo is None:
                raise NotFoundError(f"Couldn't update todo with id={todo_id}. Todo not found")
            _require_owner(todo, caller, f"Not authorized to update todo with id={todo_id}")
            _require_title(payload.title)

            todo["title"] = payload.title
            todo["description"] = payload.description
            todo["priority"] = payload.priority
            todo["due_date"] = payload.due_date
            todo["updated_at"] = self._clock()
            self._repository.insert(todo)
        return todo

    def delete_todo(self, todo_id: int, caller: str) -> TodoEntity:
        with self._repository.lock:
            if self._strict_delete:
                existing = self._repository.get(todo_id)
                if existing is None:
                    raise NotFoundError(f"Couldn't delete todo with id={todo_id}. Todo not found.")
                _require_owner(existing, caller, f"Not authorized to delete todo with id={todo_id}")

            todo = self._repository.remove(todo_id)
        if todo is None:
            raise NotFoundError(f"Couldn't delete todo with id={todo_id}. Todo not found.")
        if todo["owner"] != caller:
            logger.warning("todo id=%d was removed by non-owner %s before its ownership check", todo_id, caller)
            raise NotFoundError(f"Not authorized to delete todo with id={todo_id}")
        logger.info("deleted todo id=%d", todo_id)
        return todo

    def update_status(self, todo_id: int, status: TaskStatus, caller: str) -> TodoEntity:
        with self._repository.lock:
            todo = self._repository.get(todo_id)
            if todo is None:
                raise NotFoundError(f"Couldn't update todo status with id={todo_id}. Todo not found")
            _require_owner(todo, caller, f"Not authorized to update todo with id={todo_id}")

            todo["status"] = status
            todo["updated_at"] = self._clock()
            self._repository.insert(todo)
        return todo


def _require_title(title: str) -> None:
    if not title.strip():
        raise InvalidInputError("Title cannot be empty")


def _require_owner(todo: TodoEntity, caller: str, message: str) -> None:
    if todo["owner"] != caller:
        logger.warning("rejected %s: todo id=%d is owned by %s", caller, todo["id"], todo["owner"])
        raise NotFoundError(message)
