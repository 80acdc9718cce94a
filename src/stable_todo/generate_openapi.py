"""
Utility script to generate and write the OpenAPI schema for the todo service.

This script builds the FastAPI application on a throwaway in-memory store and
serializes its OpenAPI schema to interfaces/openapi.json so that API clients
and documentation tools can consume a stable interface description without
running the server or touching persisted data.

Usage:
    python -m stable_todo.generate_openapi
"""
from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Optional

from .application import create_app, openapi_tags
from .settings import Settings

_DEFAULT_OUT_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))), "interfaces")


def _ensure_tags(schema: Dict[str, Any]) -> None:
    """
    Ensure the OpenAPI schema contains the expected tags metadata, particularly
    the 'todos' tag with its description. This does not override existing tag
    definitions unless missing.
    """
    existing_tags: List[Dict[str, Any]] = schema.get("tags", []) or []
    existing_names = {t.get("name") for t in existing_tags if isinstance(t, dict)}
    for tag in openapi_tags:
        if tag.get("name") not in existing_names:
            existing_tags.append(tag)
    if existing_tags:
        schema["tags"] = existing_tags


def build_schema() -> Dict[str, Any]:
    """Return the OpenAPI schema of an application backed by a volatile store."""
    app = create_app(Settings(persistence_backend="memory", bucket_size_in_pages=1))
    schema = app.openapi()
    _ensure_tags(schema)
    return schema


# PUBLIC_INTERFACE
def generate_openapi(out_path: Optional[str] = None) -> str:
    """Generate the OpenAPI schema file and return the written file path."""
    out_path = out_path or os.path.join(_DEFAULT_OUT_DIR, "openapi.json")
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(build_schema(), f, indent=2, ensure_ascii=False)
    return out_path


def main() -> None:
    path = generate_openapi()
    print(f"Wrote OpenAPI schema to: {path}")


if __name__ == "__main__":
    main()
