from __future__ import annotations

from fastapi import Request

from .errors import InvalidInputError
from .settings import MAX_PRINCIPAL_LENGTH, Settings


# PUBLIC_INTERFACE
def get_caller(request: Request) -> str:
    """
    FastAPI dependency returning the opaque identity of the caller.

    Behavior:
    - The identity is read verbatim from the configured caller header
      (settings.caller_header, 'X-Caller-Principal' by default).
    - If the header is missing or blank, the anonymous principal is used.
    - Identities longer than MAX_PRINCIPAL_LENGTH fail with InvalidInput,
      whichever of the two they come from.

    No credential checks happen here: ownership of a todo is the only
    authorization, decided by the service through exact string equality.
    """
    settings: Settings = request.app.state.settings
    caller = request.headers.get(settings.caller_header)
    if caller is None or not caller.strip():
        caller = settings.anonymous_principal
    if len(caller) > MAX_PRINCIPAL_LENGTH:
        raise InvalidInputError(f"Caller identity exceeds {MAX_PRINCIPAL_LENGTH} characters")
    return caller
