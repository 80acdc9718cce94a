"""
ASGI entry point.

Run with:
    uvicorn stable_todo.main:app

Importing this module opens the store configured by the environment; tools
that only need the application factory import stable_todo.application.
"""
from __future__ import annotations

from .application import create_app

app = create_app()
