"""
Taskboard MCP Server - Kanban ordering for tasks

Uses libSQL for local task storage.
Tasks live in columns (todo, in-progress, review, done, archived) and are
ordered inside each owner's column by an integer position.

Tools:
- create_task: Create a task at the end of its column
- get_task: Get one task
- update_task: Edit title, description, priority, tags or due date
- list_tasks: Page through tasks in board order
- get_board: All columns with their tasks
- allocate_position: Position the next task in a column would get
- move_task: Drag a task to another column and/or position
- rebalance_tasks: Renumber columns to even spacing
- delete_task: Delete a task

Database: ~/.taskboard/taskboard.db
"""

import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from . import engine
from .config import DB_PATH, DEFAULT_PAGE_SIZE
from .errors import TaskboardError
from .store import TaskStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP(
    "taskboard",
    instructions="""Kanban task board with server-side ordering.

Positions are integers spaced 1000 apart after a rebalance. To drop a task
between two neighbours, pass a position between theirs (or the neighbour's
own position to take its slot); the server shifts the rest of the column.
Call rebalance_tasks() when positions get crowded.""",
)

_store: TaskStore | None = None


def _get_store() -> TaskStore:
    """Get the shared task store, creating it on first use."""
    global _store
    if _store is None:
        _store = TaskStore(DB_PATH)
    return _store


def _error(e: Exception) -> dict[str, Any]:
    """Translate an exception into a tool error payload."""
    if isinstance(e, TaskboardError):
        return {"error": str(e), "code": e.code}
    logger.exception("Unexpected error")
    return {"error": str(e), "code": "internal"}


# ============================================
# Task Tools
# ============================================


@mcp.tool()
def create_task(
    owner: str,
    title: str,
    status: str = "todo",
    priority: str = "medium",
    description: str | None = None,
    tags: list[str] | None = None,
    due_date: str | None = None,
) -> dict[str, Any]:
    """
    Create a new task at the end of its column.

    Args:
        owner: Owning user ID
        title: Task title (max 100 characters)
        status: Column (todo, in-progress, review, done, archived)
        priority: low, medium, high or urgent (default medium)
        description: Optional longer description
        tags: Optional unique tags (trimmed, lower-cased)
        due_date: Optional ISO 8601 date or datetime

    Returns:
        Created task with its allocated position
    """
    try:
        task = engine.create_task(
            _get_store(),
            owner,
            title,
            status=status,
            priority=priority,
            description=description,
            tags=tags,
            due_date=due_date,
        )
        return {"created": True, "task": task.to_dict()}
    except Exception as e:
        return _error(e)


@mcp.tool()
def get_task(task_id: int, owner: str) -> dict[str, Any]:
    """
    Get one task.

    Args:
        task_id: Task ID
        owner: Owning user ID

    Returns:
        Full task
    """
    try:
        task = engine.get_task(_get_store(), task_id, owner)
        return {"found": True, "task": task.to_dict()}
    except Exception as e:
        return _error(e)


@mcp.tool()
def update_task(
    task_id: int,
    owner: str,
    title: str | None = None,
    description: str | None = None,
    priority: str | None = None,
    tags: list[str] | None = None,
    due_date: str | None = None,
) -> dict[str, Any]:
    """
    Update a task's details. Use move_task to change its column or position.

    Args:
        task_id: Task ID to update
        owner: Owning user ID
        title: New title
        description: New description
        priority: New priority
        tags: Replacement tag list
        due_date: New due date (ISO 8601)

    Returns:
        The updated task
    """
    fields = {
        "title": title,
        "description": description,
        "priority": priority,
        "tags": tags,
        "due_date": due_date,
    }
    try:
        task = engine.update_task(
            _get_store(),
            task_id,
            owner,
            **{name: value for name, value in fields.items() if value is not None},
        )
        return {"updated": True, "task": task.to_dict()}
    except Exception as e:
        return _error(e)


@mcp.tool()
def list_tasks(
    owner: str,
    status: str | None = None,
    priority: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    tag: str | None = None,
    search: str | None = None,
    due_date_start: str | None = None,
    due_date_end: str | None = None,
) -> dict[str, Any]:
    """
    List tasks in board order (column, then position).

    Args:
        owner: Owning user ID
        status: Filter by column; comma-separated for several
        priority: Filter by priority
        page: Page number, starting at 1
        limit: Page size, 1-100 (default 20)
        tag: Only tasks with this tag
        search: Text to find in title or description
        due_date_start: Earliest due date (inclusive, ISO 8601)
        due_date_end: Latest due date (inclusive, ISO 8601)

    Returns:
        Tasks plus pagination counts
    """
    try:
        statuses = [s.strip() for s in status.split(",")] if status else None
        result = engine.list_tasks(
            _get_store(),
            owner,
            statuses=statuses,
            priority=priority,
            page=page,
            limit=limit,
            tag=tag,
            search=search,
            due_date_start=due_date_start,
            due_date_end=due_date_end,
        )
        return {
            "tasks": [task.to_dict() for task in result["tasks"]],
            "count": len(result["tasks"]),
            "total": result["total"],
            "page": result["page"],
            "pages": result["pages"],
        }
    except Exception as e:
        return _error(e)


@mcp.tool()
def get_board(owner: str) -> dict[str, Any]:
    """
    Get every column of the board with its tasks in order.

    Args:
        owner: Owning user ID

    Returns:
        Mapping of column to ordered task summaries
    """
    try:
        columns = engine.board(_get_store(), owner)
        return {
            "board": {
                status.value: [
                    {"id": t.id, "title": t.title, "position": t.position, "priority": t.priority.value}
                    for t in tasks
                ]
                for status, tasks in columns.items()
            },
        }
    except Exception as e:
        return _error(e)


@mcp.tool()
def delete_task(task_id: int, owner: str) -> dict[str, Any]:
    """
    Delete a task. Other positions in its column are not compacted.

    Args:
        task_id: Task ID to delete
        owner: Owning user ID

    Returns:
        Deletion confirmation
    """
    try:
        engine.delete_task(_get_store(), task_id, owner)
        return {"deleted": True, "id": task_id}
    except Exception as e:
        return _error(e)


# ============================================
# Ordering Tools
# ============================================


@mcp.tool()
def allocate_position(owner: str, status: str) -> dict[str, Any]:
    """
    Position the next task created in a column would get.

    Args:
        owner: Owning user ID
        status: Column

    Returns:
        Allocated position
    """
    try:
        position = engine.allocate(_get_store(), owner, status)
        return {"status": status, "position": position}
    except Exception as e:
        return _error(e)


@mcp.tool()
def move_task(
    task_id: int,
    owner: str,
    status: str,
    position: int,
    timeout: float | None = None,
) -> dict[str, Any]:
    """
    Move a task to a column and position; neighbours shift to make room.

    Args:
        task_id: Task ID to move
        owner: Owning user ID
        status: Destination column
        position: Destination position
        timeout: Optional seconds before giving up

    Returns:
        The moved task
    """
    try:
        task = engine.move_task(
            _get_store(),
            task_id,
            status,
            position,
            owner=owner,
            timeout=timeout,
        )
        return {"moved": True, "task": task.to_dict()}
    except Exception as e:
        return _error(e)


@mcp.tool()
def rebalance_tasks(owner: str, status: str | None = None) -> dict[str, Any]:
    """
    Renumber positions to 1000, 2000, 3000, ... keeping the current order.

    Args:
        owner: Owning user ID
        status: Single column to rebalance (default: every column)

    Returns:
        Number of tasks renumbered per column
    """
    try:
        results = engine.rebalance(_get_store(), owner, status)
        return {
            "rebalanced": True,
            "columns": {column.value: count for column, count in results.items()},
        }
    except Exception as e:
        return _error(e)


def main() -> None:
    """Entry point for the Taskboard MCP server."""
    logger.info("Starting Taskboard MCP server, database: %s", DB_PATH)
    mcp.run()


if __name__ == "__main__":
    main()
