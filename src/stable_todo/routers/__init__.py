"""HTTP routers exposing the todo operations."""
