from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from tasksync.errors import InvalidArgument, invalid_from_validation

TaskPriority = Literal["critical", "high", "medium", "low"]
TaskStatus = Literal["new", "inProgress", "review", "done", "cancelled"]
NotificationType = Literal["task", "system", "mention"]

TASK_STATUSES: tuple[str, ...] = ("new", "inProgress", "review", "done", "cancelled")
TASK_PRIORITIES: tuple[str, ...] = ("critical", "high", "medium", "low")
OPEN_STATUSES: tuple[str, ...] = ("new", "inProgress", "review")

# Fields a patch may touch, in the order history entries are emitted.
MUTABLE_FIELDS: tuple[str, ...] = (
  "status",
  "assignee",
  "progress",
  "title",
  "description",
  "priority",
  "project",
  "deadline",
  "estimatedTime",
  "tags",
)


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def new_id() -> str:
  return str(uuid.uuid4())


def _as_utc(value: object) -> object:
  if value is None:
    return None
  if isinstance(value, str):
    s = value.strip()
    if not s:
      return None
    value = datetime.fromisoformat(s.replace("Z", "+00:00"))
  if isinstance(value, datetime):
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
  return value


def _normalize_tags(value: object) -> object:
  if value is None:
    return ()
  if isinstance(value, str):
    value = [value]
  if isinstance(value, (list, tuple, set, frozenset)):
    return tuple(sorted({str(t).strip() for t in value if str(t).strip()}))
  return value


class _Entity(BaseModel):
  model_config = ConfigDict(frozen=True)


class TaskAttachment(_Entity):
  id: str
  name: str
  url: str
  type: str = ""
  size: int = Field(default=0, ge=0)
  uploadedBy: str
  uploadedAt: datetime

  @field_validator("uploadedAt", mode="before")
  @classmethod
  def _to_utc(cls, v: object) -> object:
    return _as_utc(v)


class TaskComment(_Entity):
  id: str
  content: str
  createdBy: str
  createdAt: datetime
  updatedAt: datetime | None = None
  mentions: tuple[str, ...] = ()

  @field_validator("createdAt", "updatedAt", mode="before")
  @classmethod
  def _to_utc(cls, v: object) -> object:
    return _as_utc(v)

  @field_validator("mentions", mode="before")
  @classmethod
  def _mentions(cls, v: object) -> object:
    if v is None:
      return ()
    if isinstance(v, (list, tuple, set, frozenset)):
      # keep first-seen order, drop duplicates
      return tuple(dict.fromkeys(str(u) for u in v if u))
    return v


class TaskHistoryEntry(_Entity):
  id: str
  field: str
  oldValue: Any = None
  newValue: Any = None
  changedBy: str
  changedAt: datetime

  @field_validator("changedAt", mode="before")
  @classmethod
  def _to_utc(cls, v: object) -> object:
    return _as_utc(v)


class Task(_Entity):
  id: str
  title: str
  description: str = ""
  assignee: str = ""
  priority: TaskPriority = "medium"
  status: TaskStatus = "new"
  project: str = ""
  deadline: datetime | None = None
  estimatedTime: float = Field(default=0, ge=0)
  progress: int = Field(default=0, ge=0, le=100)
  tags: tuple[str, ...] = ()
  attachments: tuple[TaskAttachment, ...] = ()
  comments: tuple[TaskComment, ...] = ()
  history: tuple[TaskHistoryEntry, ...] = ()
  createdBy: str = ""
  createdAt: datetime
  updatedAt: datetime
  actualTime: float | None = None

  @field_validator("deadline", "createdAt", "updatedAt", mode="before")
  @classmethod
  def _to_utc(cls, v: object) -> object:
    return _as_utc(v)

  @field_validator("tags", mode="before")
  @classmethod
  def _tags(cls, v: object) -> object:
    return _normalize_tags(v)

  @field_validator("description", "assignee", "project", "createdBy", mode="before")
  @classmethod
  def _empty_str(cls, v: object) -> object:
    return "" if v is None else v

  @model_validator(mode="after")
  def _timestamps_ordered(self) -> Task:
    if self.updatedAt < self.createdAt:
      raise ValueError("updatedAt must not precede createdAt")
    return self

  def to_document(self) -> dict[str, Any]:
    return self.model_dump(mode="json")


class TaskPatch(BaseModel):
  """Partial update of a task's mutable fields. Only explicitly set fields count."""

  model_config = ConfigDict(extra="forbid")

  status: TaskStatus | None = None
  assignee: str | None = None
  progress: int | None = Field(default=None, ge=0, le=100)
  title: str | None = Field(default=None, min_length=1, max_length=500)
  description: str | None = None
  priority: TaskPriority | None = None
  project: str | None = None
  deadline: datetime | None = None
  estimatedTime: float | None = Field(default=None, ge=0)
  tags: tuple[str, ...] | None = None

  @field_validator("deadline", mode="before")
  @classmethod
  def _to_utc(cls, v: object) -> object:
    return _as_utc(v)

  @field_validator("tags", mode="before")
  @classmethod
  def _tags(cls, v: object) -> object:
    return None if v is None else _normalize_tags(v)

  @field_validator("title", mode="before")
  @classmethod
  def _strip_title(cls, v: object) -> object:
    return v.strip() if isinstance(v, str) else v

  def changes(self) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in MUTABLE_FIELDS:
      if name not in self.model_fields_set:
        continue
      val = getattr(self, name)
      if val is None:
        if name in {"assignee", "project", "description"}:
          val = ""
        elif name != "deadline":
          raise InvalidArgument(f"{name} cannot be cleared")
      out[name] = val
    return out


def parse_patch(patch: TaskPatch | dict[str, Any]) -> dict[str, Any]:
  if isinstance(patch, TaskPatch):
    parsed = patch
  else:
    if not isinstance(patch, dict):
      raise InvalidArgument("patch must be a mapping of task fields")
    try:
      parsed = TaskPatch.model_validate(patch)
    except ValidationError as e:
      raise invalid_from_validation(e) from e
  changes = parsed.changes()
  if not changes:
    raise InvalidArgument("patch must not be empty")
  return changes


def patch_to_document(changes: dict[str, Any]) -> dict[str, Any]:
  return TaskPatch.model_validate(changes).model_dump(mode="json", include=set(changes))


class TaskCreateIn(BaseModel):
  model_config = ConfigDict(extra="forbid")

  title: str = Field(min_length=1, max_length=500)
  description: str = ""
  assignee: str = ""
  priority: TaskPriority = "medium"
  status: TaskStatus = "new"
  project: str = ""
  deadline: datetime | None = None
  estimatedTime: float = Field(default=0, ge=0)
  progress: int = Field(default=0, ge=0, le=100)
  tags: tuple[str, ...] = ()
  actualTime: float | None = Field(default=None, ge=0)

  @field_validator("deadline", mode="before")
  @classmethod
  def _to_utc(cls, v: object) -> object:
    return _as_utc(v)

  @field_validator("tags", mode="before")
  @classmethod
  def _tags(cls, v: object) -> object:
    return _normalize_tags(v)

  @field_validator("title", mode="before")
  @classmethod
  def _strip_title(cls, v: object) -> object:
    return v.strip() if isinstance(v, str) else v

  @field_validator("description", "assignee", "project", mode="before")
  @classmethod
  def _empty_str(cls, v: object) -> object:
    return "" if v is None else v


class Notification(_Entity):
  id: str
  recipient: str
  title: str
  message: str
  type: NotificationType = "system"
  read: bool = False
  createdAt: datetime
  taskId: str | None = None

  @field_validator("createdAt", mode="before")
  @classmethod
  def _to_utc(cls, v: object) -> object:
    return _as_utc(v)

  def to_document(self) -> dict[str, Any]:
    return self.model_dump(mode="json")
