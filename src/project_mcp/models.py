"""
Data models for the project management server.

Stories are persisted as camelCase JSON records. Older records only carry a
``played`` flag; newer ones carry ``progressState`` as well. Internally the
progress state is the only lifecycle field and ``played`` is derived from it.
"""

import datetime
from dataclasses import dataclass, field, fields as dataclass_fields
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class StoryStatus(str, Enum):
    NEW = "New"
    IN_PROGRESS = "In Progress"
    REVIEW = "In Review"
    DONE = "Done"
    BLOCKED = "Blocked"


class StoryPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class ProgressState(str, Enum):
    UNSTARTED = "Unstarted"
    STARTED = "Started"
    PLAYED = "Played"


def utcnow() -> datetime.datetime:
    """Current time in UTC, truncated to milliseconds."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def format_timestamp(value: datetime.datetime) -> str:
    """Format a timestamp as ISO-8601 UTC, e.g. ``2024-05-01T09:30:00.000Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    value = value.astimezone(datetime.timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse a stored timestamp. Accepts a trailing ``Z`` or an explicit offset."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


# Keys owned by Story; anything else in a record is carried in Story.extra
RECORD_KEYS = frozenset(
    [
        "id",
        "title",
        "description",
        "status",
        "priority",
        "assignee",
        "points",
        "played",
        "progressState",
        "createdAt",
        "updatedAt",
    ]
)


@dataclass
class Story:
    """A user story tracked by the server.

    Fields:
        id: uuid4 string assigned on creation, never reused.
        title / description: free text.
        status: workflow status (New, In Progress, ...).
        priority: Low, Medium, High or Critical.
        assignee: optional free text.
        points: optional numeric estimate.
        progress_state: Unstarted, Started or Played. Only Unstarted stories
            can be reordered.
        created_at / updated_at: UTC timestamps.
        extra: persisted keys this model does not know, written back unchanged.
    """

    id: str
    title: str
    description: str
    status: StoryStatus
    priority: StoryPriority
    progress_state: ProgressState
    created_at: datetime.datetime
    updated_at: datetime.datetime
    assignee: Optional[str] = None
    points: Optional[Union[int, float]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def played(self) -> bool:
        return self.progress_state == ProgressState.PLAYED

    @property
    def is_unstarted(self) -> bool:
        return self.progress_state == ProgressState.UNSTARTED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
        }
        if self.assignee is not None:
            data["assignee"] = self.assignee
        if self.points is not None:
            data["points"] = self.points
        data["played"] = self.played
        data["progressState"] = self.progress_state.value
        data["createdAt"] = format_timestamp(self.created_at)
        data["updatedAt"] = format_timestamp(self.updated_at)
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Story":
        """Build a story from a persisted record.

        ``progressState`` wins when present. Records written before it existed
        get their state inferred from the legacy ``played`` flag.

        Raises:
            KeyError, TypeError, ValueError: if the record is malformed.
        """
        raw_state = data.get("progressState")
        if raw_state:
            progress_state = ProgressState(raw_state)
        elif data.get("played"):
            progress_state = ProgressState.PLAYED
        else:
            progress_state = ProgressState.UNSTARTED

        return cls(
            id=str(data["id"]),
            title=data["title"],
            description=data["description"],
            status=StoryStatus(data.get("status", StoryStatus.NEW.value)),
            priority=StoryPriority(data.get("priority", StoryPriority.MEDIUM.value)),
            progress_state=progress_state,
            created_at=parse_timestamp(data["createdAt"]),
            updated_at=parse_timestamp(data["updatedAt"]),
            assignee=data.get("assignee"),
            points=data.get("points"),
            extra={k: v for k, v in data.items() if k not in RECORD_KEYS},
        )


@dataclass
class StoryPatch:
    """Partial update for a story. ``None`` means "leave unchanged"."""

    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[StoryStatus] = None
    priority: Optional[StoryPriority] = None
    assignee: Optional[str] = None
    points: Optional[Union[int, float]] = None

    def fields(self) -> List[str]:
        return [f.name for f in dataclass_fields(self) if getattr(self, f.name) is not None]

    def apply(self, story: Story) -> Story:
        for name in self.fields():
            setattr(story, name, getattr(self, name))
        return story
