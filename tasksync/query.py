from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from tasksync.errors import invalid_from_validation
from tasksync.models import OPEN_STATUSES, Task, TaskPriority, TaskStatus, _as_utc

SortField = Literal[
  "id",
  "title",
  "assignee",
  "priority",
  "status",
  "project",
  "deadline",
  "estimatedTime",
  "progress",
  "createdAt",
  "updatedAt",
]

# Rank order so that "asc" on priority means most urgent first.
_PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}
_STATUS_RANK = {"new": 0, "inProgress": 1, "review": 2, "done": 3, "cancelled": 4}


class TaskFilter(BaseModel):
  model_config = ConfigDict(frozen=True, extra="forbid")

  assignee: str | None = None
  project: str | None = None
  status: tuple[TaskStatus, ...] = ()
  priority: tuple[TaskPriority, ...] = ()
  tags: tuple[str, ...] = ()
  deadlineFrom: datetime | None = None
  deadlineTo: datetime | None = None
  search: str | None = None

  @field_validator("deadlineFrom", "deadlineTo", mode="before")
  @classmethod
  def _to_utc(cls, v: object) -> object:
    return _as_utc(v)

  @field_validator("status", "priority", "tags", mode="before")
  @classmethod
  def _as_tuple(cls, v: object) -> object:
    if v is None:
      return ()
    if isinstance(v, str):
      return (v,)
    return v

  def store_where(self) -> dict[str, Any]:
    """Equality/membership constraints a document store can evaluate on its own."""
    where: dict[str, Any] = {}
    if self.assignee is not None:
      where["assignee"] = self.assignee
    if self.project is not None:
      where["project"] = self.project
    if self.status:
      where["status"] = list(self.status)
    if self.priority:
      where["priority"] = list(self.priority)
    return where

  def matches(self, t: Task) -> bool:
    if self.assignee is not None and t.assignee != self.assignee:
      return False
    if self.project is not None and t.project != self.project:
      return False
    if self.status and t.status not in self.status:
      return False
    if self.priority and t.priority not in self.priority:
      return False
    if self.tags and not set(self.tags) & set(t.tags):
      return False
    if self.deadlineFrom is not None and (t.deadline is None or t.deadline < self.deadlineFrom):
      return False
    if self.deadlineTo is not None and (t.deadline is None or t.deadline > self.deadlineTo):
      return False
    if self.search:
      needle = self.search.strip().lower()
      if needle and needle not in t.title.lower() and needle not in t.description.lower():
        return False
    return True


class TaskSort(BaseModel):
  model_config = ConfigDict(frozen=True, extra="forbid")

  field: SortField = "updatedAt"
  direction: Literal["asc", "desc"] = "desc"


DEFAULT_SORT = TaskSort()


def coerce_filter(value: TaskFilter | dict[str, Any] | None) -> TaskFilter:
  if value is None:
    return TaskFilter()
  if isinstance(value, TaskFilter):
    return value
  try:
    return TaskFilter.model_validate(value)
  except ValidationError as e:
    raise invalid_from_validation(e) from e


def coerce_sort(value: TaskSort | dict[str, Any] | None) -> TaskSort:
  if value is None:
    return DEFAULT_SORT
  if isinstance(value, TaskSort):
    return value
  try:
    return TaskSort.model_validate(value)
  except ValidationError as e:
    raise invalid_from_validation(e) from e


def _sort_value(t: Task, field: str) -> Any:
  v = getattr(t, field)
  if field == "priority":
    return _PRIORITY_RANK.get(v, len(_PRIORITY_RANK))
  if field == "status":
    return _STATUS_RANK.get(v, len(_STATUS_RANK))
  if isinstance(v, str):
    return v.lower()
  return v


def sort_tasks(tasks: list[Task] | tuple[Task, ...], sort: TaskSort | None = None) -> list[Task]:
  """
  Order tasks per `sort`; ties are broken by id ascending regardless of direction.

  Tasks with no value for the sort field (e.g. no deadline) always come last.
  """
  s = sort or DEFAULT_SORT
  by_id = sorted(tasks, key=lambda t: t.id)
  present = [t for t in by_id if getattr(t, s.field) is not None]
  missing = [t for t in by_id if getattr(t, s.field) is None]
  # list.sort is stable for reverse=True too, so equal keys keep id order
  present.sort(key=lambda t: _sort_value(t, s.field), reverse=(s.direction == "desc"))
  return present + missing


def is_overdue(t: Task, now: datetime) -> bool:
  return t.deadline is not None and t.deadline < now and t.status in OPEN_STATUSES


def is_due_on(t: Task, day_start: datetime) -> bool:
  if t.deadline is None or t.status not in OPEN_STATUSES:
    return False
  return day_start <= t.deadline < day_start + timedelta(days=1)
