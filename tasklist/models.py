import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import DateTime, FetchedValue
from sqlmodel import Column, Field, SQLModel

from tasklist.core.errors import ValidationError

TITLE_MAX_LENGTH = 200
UPDATABLE_FIELDS = frozenset({"title", "description", "is_complete"})


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


class SortKey(str, Enum):
    created_at = "created_at"
    name = "name"
    status = "status"


class StatusFilter(str, Enum):
    all = "all"
    complete = "complete"
    incomplete = "incomplete"


class TaskBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=TITLE_MAX_LENGTH, index=True)
    description: str | None = Field(default=None)


class Task(TaskBase, table=True):
    """Database model"""

    __tablename__ = "tasks"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    is_complete: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    # Filled in by the database (default auth.uid()) from the session
    # identity. FetchedValue keeps the column out of every INSERT.
    user_id: str | None = Field(
        default=None,
        index=True,
        sa_column_kwargs={"server_default": FetchedValue()},
    )


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    pass


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional, unset means untouched"""

    title: str | None = Field(default=None, min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str | None = None
    is_complete: bool | None = None

    @field_validator("title", "is_complete")
    @classmethod
    def not_null(cls, value, info):
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value


class TaskResponse(TaskBase):
    """Schema for task responses, also the record type cached by the client"""

    id: uuid.UUID
    is_complete: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class TaskQuery(BaseModel):
    """
    Query descriptor for a list view: (search, sort, status).

    Hashable, so it doubles as the partition key of the client cache.
    """

    model_config = ConfigDict(frozen=True)

    search: str = ""
    sort: SortKey = SortKey.created_at
    status: StatusFilter = StatusFilter.all

    def matches(self, task: TaskResponse) -> bool:
        """Same predicate the store applies: status filter plus ILIKE search."""
        if self.status is StatusFilter.complete and not task.is_complete:
            return False
        if self.status is StatusFilter.incomplete and task.is_complete:
            return False
        if self.search and self.search.lower() not in task.title.lower():
            return False
        return True

    def sort_key(self, task: TaskResponse) -> tuple:
        if self.sort is SortKey.name:
            return (task.title,)
        if self.sort is SortKey.status:
            return (task.is_complete,)
        # newest first
        return (-task.created_at.timestamp(),)

    def params(self) -> dict[str, str]:
        """HTTP query parameters, defaults omitted."""
        params = {}
        if self.search:
            params["search"] = self.search
        if self.sort is not SortKey.created_at:
            params["sort"] = self.sort.value
        if self.status is not StatusFilter.all:
            params["status"] = self.status.value
        return params


def require_title(title: str | None) -> str:
    """Client-side title check, run before any network call."""
    if not title:
        raise ValidationError("Title is required")
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(f"Title is longer than {TITLE_MAX_LENGTH} characters")
    return title


class ChangeKind(str, Enum):
    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """A change notification for the tasks table, tagged with its owner."""

    kind: ChangeKind
    task_id: uuid.UUID
    owner: str | None
    task: TaskResponse | None = None
