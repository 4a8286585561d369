"""Task model, enumerations and boundary validation."""

import json
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .config import MAX_POSITION
from .errors import InvalidArgumentError

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 2000
MAX_TAG_LENGTH = 30


class TaskStatus(str, Enum):
    """Kanban column a task sits in."""

    TODO = "todo"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    DONE = "done"
    ARCHIVED = "archived"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class Task:
    """A task row as stored on the board."""

    id: int
    owner: str
    status: TaskStatus
    position: int
    title: str
    description: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    tags: list[str] = field(default_factory=list)
    due_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dict."""
        data = asdict(self)
        data["status"] = self.status.value
        data["priority"] = self.priority.value
        return data


@dataclass
class TaskFilters:
    """Optional narrowing for task listings. Unset fields match everything."""

    statuses: list[TaskStatus] | None = None
    priority: TaskPriority | None = None
    tag: str | None = None
    search: str | None = None
    due_start: str | None = None
    due_end: str | None = None


# Columns selected for every task read, in _row_to_task order
TASK_COLUMNS = [
    "id",
    "owner",
    "status",
    "position",
    "title",
    "description",
    "priority",
    "tags",
    "created_at",
    "updated_at",
    "due_date",
]


def _json_loads(val: str | None) -> list[str] | None:
    """Parse JSON array or return None."""
    if val is None:
        return None
    try:
        result = json.loads(val)
        if isinstance(result, list):
            return result
        return None
    except (json.JSONDecodeError, TypeError):
        return None


def _json_dumps(val: list[str] | None) -> str | None:
    """Serialize list to JSON or return None."""
    if val is None:
        return None
    return json.dumps(val)


def _row_to_task(row: tuple[Any, ...], columns: list[str]) -> Task:
    """Convert database row to a Task, decoding enum and JSON fields."""
    data = dict(zip(columns, row, strict=False))
    return Task(
        id=data["id"],
        owner=data["owner"],
        status=TaskStatus(data["status"]),
        position=data["position"],
        title=data["title"],
        description=data.get("description"),
        priority=TaskPriority(data.get("priority") or TaskPriority.MEDIUM.value),
        tags=_json_loads(data.get("tags")) or [],
        created_at=data.get("created_at"),
        updated_at=data.get("updated_at"),
        due_date=data.get("due_date"),
    )


def _choices(enum_cls: type[Enum]) -> str:
    return ", ".join(member.value for member in enum_cls)


def parse_status(value: "str | TaskStatus") -> TaskStatus:
    """Validate a status key coming from outside the engine."""
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(value)
    except ValueError:
        raise InvalidArgumentError(
            f"Invalid status '{value}'. Must be one of: {_choices(TaskStatus)}"
        ) from None


def parse_priority(value: "str | TaskPriority") -> TaskPriority:
    if isinstance(value, TaskPriority):
        return value
    try:
        return TaskPriority(value)
    except ValueError:
        raise InvalidArgumentError(
            f"Invalid priority '{value}'. Must be one of: {_choices(TaskPriority)}"
        ) from None


def parse_position(value: Any) -> int:
    """Validate a caller-supplied position.

    Accepts integers and integral floats up to MAX_POSITION. Booleans,
    negative values, NaN and infinities are rejected.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgumentError(f"Position must be a number, got {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidArgumentError(f"Position must be finite, got {value!r}")
        if not value.is_integer():
            raise InvalidArgumentError(f"Position must be an integer, got {value!r}")
        value = int(value)
    if value < 0:
        raise InvalidArgumentError(f"Position must not be negative, got {value}")
    if value > MAX_POSITION:
        raise InvalidArgumentError(
            f"Position must not be greater than {MAX_POSITION}, got {value}"
        )
    return value


def normalize_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise InvalidArgumentError("Task title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise InvalidArgumentError(
            f"Title cannot be more than {MAX_TITLE_LENGTH} characters"
        )
    return title


def normalize_description(description: str | None) -> str | None:
    if description is None:
        return None
    description = description.strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise InvalidArgumentError(
            f"Description cannot be more than {MAX_DESCRIPTION_LENGTH} characters"
        )
    return description


def normalize_tags(tags: list[str] | None) -> list[str]:
    """Trim and lower-case tags, rejecting duplicates and overlong tags."""
    if not tags:
        return []
    normalized = [tag.strip().lower() for tag in tags]
    if any(not tag for tag in normalized):
        raise InvalidArgumentError("Tags cannot be empty")
    if any(len(tag) > MAX_TAG_LENGTH for tag in normalized):
        raise InvalidArgumentError(
            f"Tags cannot be more than {MAX_TAG_LENGTH} characters"
        )
    if len(set(normalized)) != len(normalized):
        raise InvalidArgumentError("Tags must be unique")
    return normalized


def parse_task_id(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(f"Task id must be an integer, got {value!r}")
    return value


def parse_owner(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError("Owner is required")
    return value.strip()


def parse_due_date(value: str | None) -> str | None:
    """Normalize an ISO 8601 date or datetime to a comparable string.

    Aware datetimes are converted to naive UTC so stored values sort
    lexicographically in time order.
    """
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError("Due date must be a valid ISO 8601 date")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidArgumentError(
            f"Due date must be a valid ISO 8601 date, got {value!r}"
        ) from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.isoformat(timespec="seconds")
