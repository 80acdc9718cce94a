"""
Stable Todo Backend package.

Todo records are kept in a stable memory partitioned into regions: an id
counter in region 0 and a B-tree map of records in region 1. The FastAPI
application is built by stable_todo.application.create_app.
"""

__version__ = "0.1.0"
