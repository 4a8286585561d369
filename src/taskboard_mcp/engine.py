"""
Position engine for the kanban board.

- allocate: position for a task appended to a column
- move_task: relocate a task to another column and/or position, shifting
  its neighbours by the store's spacing in the same transaction
- rebalance: renumber columns to spacing, 2*spacing, ...

Every operation runs through TaskStore.transaction() and retries write
conflicts a bounded number of times before surfacing ConflictError.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from .config import DEFAULT_PAGE_SIZE, MAX_CONFLICT_RETRIES, MAX_PAGE_SIZE, RETRY_BACKOFF_SECONDS
from .errors import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    OperationCancelledError,
    StorageError,
)
from .models import (
    Task,
    TaskFilters,
    TaskPriority,
    TaskStatus,
    normalize_description,
    normalize_tags,
    normalize_title,
    parse_due_date,
    parse_owner,
    parse_position,
    parse_priority,
    parse_status,
    parse_task_id,
)
from .store import TaskStore, TaskTransaction

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _deadline(timeout: float | None) -> float | None:
    if timeout is None:
        return None
    return time.monotonic() + timeout


def _run(
    store: TaskStore,
    work: Callable[[TaskTransaction], T],
    *,
    label: str,
    write: bool = True,
    deadline: float | None = None,
    cancel_event: threading.Event | None = None,
) -> T:
    """Run ``work`` in one transaction, retrying on write conflicts.

    Retries up to MAX_CONFLICT_RETRIES times with linear backoff. A conflict
    that outlives the deadline is reported as OperationCancelledError and is
    never retried.
    """
    attempt = 0
    while True:
        try:
            with store.transaction(
                write=write, deadline=deadline, cancel_event=cancel_event
            ) as tx:
                return work(tx)
        except ConflictError as e:
            if deadline is not None and time.monotonic() >= deadline:
                raise OperationCancelledError("Operation deadline exceeded") from e
            attempt += 1
            if attempt > MAX_CONFLICT_RETRIES:
                raise
            logger.warning(
                "%s hit a write conflict, retrying (%d/%d)",
                label,
                attempt,
                MAX_CONFLICT_RETRIES,
            )
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)


# ============================================
# Allocation
# ============================================


def _next_position(tx: TaskTransaction, owner: str, status: TaskStatus, spacing: int) -> int:
    highest = tx.max_position(owner, status)
    if highest is None:
        return spacing
    return highest + spacing


def allocate(
    store: TaskStore,
    owner: str,
    status: "str | TaskStatus",
    *,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> int:
    """
    Position a new task appended to ``(owner, status)`` would get.

    Args:
        store: Task store
        owner: Owning principal
        status: Column to append to

    Returns:
        max(position) + spacing, or spacing for an empty column
    """
    owner = parse_owner(owner)
    status = parse_status(status)
    return _run(
        store,
        lambda tx: _next_position(tx, owner, status, store.spacing),
        label="allocate",
        write=False,
        deadline=_deadline(timeout),
        cancel_event=cancel_event,
    )


def create_task(
    store: TaskStore,
    owner: str,
    title: str,
    status: "str | TaskStatus" = TaskStatus.TODO,
    priority: "str | TaskPriority" = TaskPriority.MEDIUM,
    description: str | None = None,
    tags: list[str] | None = None,
    due_date: str | None = None,
    *,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> Task:
    """Create a task at the end of its column.

    Allocation and insert share one write transaction, so concurrent
    creations never read the same maximum.
    """
    owner = parse_owner(owner)
    status = parse_status(status)
    priority = parse_priority(priority)
    title = normalize_title(title)
    description = normalize_description(description)
    tags = normalize_tags(tags)
    due_date = parse_due_date(due_date)

    def work(tx: TaskTransaction) -> Task:
        position = _next_position(tx, owner, status, store.spacing)
        return tx.insert_task(
            owner,
            status,
            position,
            title,
            description=description,
            priority=priority,
            tags=tags,
            due_date=due_date,
        )

    task = _run(
        store,
        work,
        label="create_task",
        deadline=_deadline(timeout),
        cancel_event=cancel_event,
    )
    logger.info("Created task %d in %s/%s at %d", task.id, owner, status.value, task.position)
    return task


# ============================================
# Move
# ============================================


def _move(
    tx: TaskTransaction,
    task_id: int,
    new_status: TaskStatus,
    new_position: int,
    owner: str | None,
    spacing: int,
) -> Task:
    task = tx.get_task(task_id)
    if task is None or (owner is not None and task.owner != owner):
        raise NotFoundError(task_id)

    old_status, old_position = task.status, task.position

    if new_status != old_status:
        # Open a slot in the destination, close the gap in the source
        tx.shift(task.owner, new_status, spacing, gte=new_position)
        tx.shift(task.owner, old_status, -spacing, gt=old_position)
    elif new_position < old_position:
        tx.shift(
            task.owner,
            old_status,
            spacing,
            gte=new_position,
            lt=old_position,
            exclude_id=task.id,
        )
    elif new_position > old_position:
        tx.shift(
            task.owner,
            old_status,
            -spacing,
            gt=old_position,
            lte=new_position,
            exclude_id=task.id,
        )
    else:
        return task

    tx.place(task.id, new_status, new_position)
    moved = tx.get_task(task.id)
    if moved is None:
        raise StorageError(f"Task '{task_id}' disappeared during move")
    return moved


def move_task(
    store: TaskStore,
    task_id: int,
    status: "str | TaskStatus",
    position: Any,
    *,
    owner: str | None = None,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> Task:
    """
    Move a task to ``status`` at ``position`` atomically.

    The caller picks the target position; neighbours are shifted by the
    store's spacing to make room but the value itself is not snapped to the
    spacing grid.

    Args:
        store: Task store
        task_id: Task to move
        status: Destination column
        position: Destination position (non-negative integer)
        owner: When given, tasks of other owners are reported as not found
        timeout: Seconds before the transaction is abandoned
        cancel_event: Event that aborts the move once set

    Returns:
        The task as stored after the move

    Raises:
        NotFoundError: Task does not exist (or belongs to another owner)
        InvalidArgumentError: Unknown status or malformed position
        StorageError: Store failure, timeout or cancellation; nothing persisted
    """
    task_id = parse_task_id(task_id)
    status = parse_status(status)
    position = parse_position(position)
    if owner is not None:
        owner = parse_owner(owner)

    task = _run(
        store,
        lambda tx: _move(tx, task_id, status, position, owner, store.spacing),
        label="move_task",
        deadline=_deadline(timeout),
        cancel_event=cancel_event,
    )
    logger.info("Moved task %d to %s at %d", task.id, task.status.value, task.position)
    return task


# ============================================
# Rebalance
# ============================================


def _rebalance_partition(
    tx: TaskTransaction, owner: str, status: TaskStatus, spacing: int
) -> int:
    tasks = tx.partition(owner, status)
    for index, task in enumerate(tasks, start=1):
        target = index * spacing
        if task.position != target:
            tx.place(task.id, status, target)
    return len(tasks)


def rebalance(
    store: TaskStore,
    owner: str,
    status: "str | TaskStatus | None" = None,
    *,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[TaskStatus, int]:
    """
    Renumber columns to spacing, 2*spacing, 3*spacing, ...

    Each column is committed in its own transaction. A failing column does
    not stop the others; once all were attempted a StorageError naming the
    failed columns is raised. Cancellation stops immediately.

    Args:
        store: Task store
        owner: Owning principal
        status: Single column to rebalance; every non-empty column if None

    Returns:
        Number of tasks renumbered per column
    """
    owner = parse_owner(owner)
    deadline = _deadline(timeout)

    if status is None:
        statuses = _run(
            store,
            lambda tx: tx.statuses(owner),
            label="rebalance",
            write=False,
            deadline=deadline,
            cancel_event=cancel_event,
        )
    else:
        statuses = [parse_status(status)]

    results: dict[TaskStatus, int] = {}
    failures: dict[TaskStatus, StorageError] = {}
    for current in statuses:
        try:
            results[current] = _run(
                store,
                lambda tx, current=current: _rebalance_partition(
                    tx, owner, current, store.spacing
                ),
                label=f"rebalance {current.value}",
                deadline=deadline,
                cancel_event=cancel_event,
            )
        except OperationCancelledError:
            raise
        except StorageError as e:
            logger.error("Rebalance of %s/%s failed: %s", owner, current.value, e)
            failures[current] = e

    if failures:
        failed = ", ".join(column.value for column in failures)
        first = next(iter(failures.values()))
        raise StorageError(f"Rebalance failed for status(es): {failed}") from first

    logger.info(
        "Rebalanced %s: %s",
        owner,
        ", ".join(f"{column.value}={count}" for column, count in results.items()) or "nothing",
    )
    return results


# ============================================
# Task queries
# ============================================


def get_task(
    store: TaskStore,
    task_id: int,
    owner: str,
    *,
    timeout: float | None = None,
) -> Task:
    task_id = parse_task_id(task_id)
    owner = parse_owner(owner)
    task = _run(
        store,
        lambda tx: tx.get_task(task_id),
        label="get_task",
        write=False,
        deadline=_deadline(timeout),
    )
    if task is None or task.owner != owner:
        raise NotFoundError(task_id)
    return task


def list_tasks(
    store: TaskStore,
    owner: str,
    statuses: "list[str] | list[TaskStatus] | None" = None,
    priority: "str | TaskPriority | None" = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    tag: str | None = None,
    search: str | None = None,
    due_date_start: str | None = None,
    due_date_end: str | None = None,
    *,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Page through an owner's tasks in board order.

    Args:
        tag: Only tasks carrying this tag (case-insensitive)
        search: Substring matched against title and description
        due_date_start: Earliest due date, inclusive
        due_date_end: Latest due date, inclusive

    Returns:
        Dict with ``tasks``, ``total``, ``page`` and ``pages``
    """
    owner = parse_owner(owner)
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise InvalidArgumentError("Page must be a positive integer")
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
        raise InvalidArgumentError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")

    filters = TaskFilters(
        statuses=[parse_status(s) for s in statuses] if statuses else None,
        priority=parse_priority(priority) if priority else None,
        tag=tag.strip().lower() if tag and tag.strip() else None,
        search=search.strip() if search and search.strip() else None,
        due_start=parse_due_date(due_date_start) if due_date_start else None,
        due_end=parse_due_date(due_date_end) if due_date_end else None,
    )
    if filters.due_start and filters.due_end and filters.due_start > filters.due_end:
        raise InvalidArgumentError("Due date range start must not be after its end")

    def work(tx: TaskTransaction) -> tuple[list[Task], int]:
        total = tx.count_tasks(owner, filters)
        tasks = tx.list_tasks(owner, filters, limit=limit, offset=(page - 1) * limit)
        return tasks, total

    tasks, total = _run(
        store, work, label="list_tasks", write=False, deadline=_deadline(timeout)
    )
    return {
        "tasks": tasks,
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit,
    }


def board(store: TaskStore, owner: str, *, timeout: float | None = None) -> dict[TaskStatus, list[Task]]:
    """Every column of the owner's board with its tasks in order."""
    owner = parse_owner(owner)
    return _run(
        store,
        lambda tx: {status: tx.partition(owner, status) for status in TaskStatus},
        label="board",
        write=False,
        deadline=_deadline(timeout),
    )


def delete_task(
    store: TaskStore,
    task_id: int,
    owner: str,
    *,
    timeout: float | None = None,
) -> None:
    """Delete a task. Neighbouring positions are left as they are."""
    task_id = parse_task_id(task_id)
    owner = parse_owner(owner)
    deleted = _run(
        store,
        lambda tx: tx.delete_task(task_id, owner),
        label="delete_task",
        deadline=_deadline(timeout),
    )
    if not deleted:
        raise NotFoundError(task_id)
    logger.info("Deleted task %d of %s", task_id, owner)


# Fields update_task accepts; status and position belong to move_task
_UPDATE_FIELDS = {
    "title": normalize_title,
    "description": normalize_description,
    "priority": parse_priority,
    "tags": normalize_tags,
    "due_date": parse_due_date,
}


def update_task(
    store: TaskStore,
    task_id: int,
    owner: str,
    *,
    timeout: float | None = None,
    **fields: Any,
) -> Task:
    """
    Update a task's descriptive fields.

    Args:
        store: Task store
        task_id: Task to update
        owner: Owning principal
        **fields: Any of title, description, priority, tags, due_date.
            description and due_date may be None to clear them.

    Returns:
        The task as stored after the update

    Raises:
        InvalidArgumentError: Unknown field, invalid value, or an attempt to
            change status or position (use move_task for those)
        NotFoundError: Task does not exist or belongs to another owner
    """
    task_id = parse_task_id(task_id)
    owner = parse_owner(owner)

    ordering = sorted({"status", "position"} & set(fields))
    if ordering:
        raise InvalidArgumentError(
            f"Cannot update {', '.join(ordering)} here; use move_task to reorder"
        )
    unknown = sorted(set(fields) - set(_UPDATE_FIELDS))
    if unknown:
        raise InvalidArgumentError(
            f"Unknown field(s): {', '.join(unknown)}. "
            f"Must be one of: {', '.join(_UPDATE_FIELDS)}"
        )

    values = {name: _UPDATE_FIELDS[name](value) for name, value in fields.items()}

    def work(tx: TaskTransaction) -> Task | None:
        if values and not tx.update_fields(task_id, owner, values):
            return None
        task = tx.get_task(task_id)
        if task is None or task.owner != owner:
            return None
        return task

    task = _run(store, work, label="update_task", deadline=_deadline(timeout))
    if task is None:
        raise NotFoundError(task_id)
    logger.info("Updated task %d (%s)", task_id, ", ".join(values) or "no changes")
    return task

