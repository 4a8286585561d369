"""
Taskboard MCP - Kanban ordering for tasks

Core principle: the server owns the order of every column.
- move_task() shifts neighbours atomically around the dropped task
- rebalance_tasks() restores even spacing
"""

from .server import main

__all__ = ["main"]
