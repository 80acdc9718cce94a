from __future__ import annotations


# PUBLIC_INTERFACE
class TodoServiceError(Exception):
    """
    A business-rule failure returned to the caller.

    Only two kinds exist. NotFound also covers "not authorized", so a
    non-owner cannot tell a foreign record from a missing one.
    """

    kind = "Error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(TodoServiceError):
    kind = "NotFound"


class InvalidInputError(TodoServiceError):
    kind = "InvalidInput"
