from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Request, status

from ..auth import get_caller
from ..schemas import U64_MAX, ErrorOut, StatusPayload, TodoOut, TodoPayload
from ..service import TodoService

router = APIRouter(
    prefix="/api/v1/todos",
    tags=["todos"],
)

_NOT_FOUND = {404: {"model": ErrorOut, "description": "Todo not found or caller is not its owner"}}
_INVALID = {400: {"model": ErrorOut, "description": "Invalid input"}}

TodoId = Annotated[int, Path(ge=0, le=U64_MAX, description="Identifier of the todo item")]


def _get_service(request: Request) -> TodoService:
    """
    Dependency returning the service built once at application startup.
    """
    return request.app.state.todo_service


# PUBLIC_INTERFACE
@router.post(
    "/",
    response_model=TodoOut,
    status_code=status.HTTP_201_CREATED,
    summary="Add Todo",
    description="Create a new todo owned by the caller. New todos start as Pending.",
    responses={
        201: {"description": "Todo created successfully"},
        **_INVALID,
    },
)
def add_todo(
    payload: TodoPayload,
    caller: str = Depends(get_caller),
    service: TodoService = Depends(_get_service),
) -> TodoOut:
    """
    Create a new todo.
    """
    return TodoOut.from_entity(service.add_todo(payload, caller))


# PUBLIC_INTERFACE
@router.get(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Get Todo",
    description="Get a single todo by ID. Reading does not require ownership.",
    responses={
        200: {"description": "Todo found"},
        **_NOT_FOUND,
    },
)
def get_todo(todo_id: TodoId, service: TodoService = Depends(_get_service)) -> TodoOut:
    """
    Retrieve a single todo by its ID.
    """
    return TodoOut.from_entity(service.get_todo(todo_id))


# PUBLIC_INTERFACE
@router.put(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Update Todo",
    description=(
        "Replace the title, description, priority and due date of a todo owned by the caller. "
        "Status, owner and creation time are left unchanged."
    ),
    responses={
        200: {"description": "Todo updated"},
        **_INVALID,
        **_NOT_FOUND,
    },
)
def update_todo(
    payload: TodoPayload,
    todo_id: TodoId,
    caller: str = Depends(get_caller),
    service: TodoService = Depends(_get_service),
) -> TodoOut:
    """
    Full update of the editable fields of a todo.
    """
    return TodoOut.from_entity(service.update_todo(todo_id, payload, caller))


# PUBLIC_INTERFACE
@router.patch(
    "/{todo_id}/status",
    response_model=TodoOut,
    summary="Update Status",
    description="Set the status of a todo owned by the caller. Any status may follow any other.",
    responses={
        200: {"description": "Status updated"},
        **_NOT_FOUND,
    },
)
def update_status(
    payload: StatusPayload,
    todo_id: TodoId,
    caller: str = Depends(get_caller),
    service: TodoService = Depends(_get_service),
) -> TodoOut:
    """
    Change the status of a todo.
    """
    return TodoOut.from_entity(service.update_status(todo_id, payload.status, caller))


# PUBLIC_INTERFACE
@router.delete(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Delete Todo",
    description="Delete a todo owned by the caller and return the deleted item.",
    responses={
        200: {"description": "Todo deleted"},
        **_NOT_FOUND,
    },
)
def delete_todo(
    todo_id: TodoId,
    caller: str = Depends(get_caller),
    service: TodoService = Depends(_get_service),
) -> TodoOut:
    """
    Delete a todo. Returns the removed item, 404 if it is missing or not owned by the caller.
    """
    return TodoOut.from_entity(service.delete_todo(todo_id, caller))
