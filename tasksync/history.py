from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from fastapi.encoders import jsonable_encoder

from tasksync.errors import InvalidArgument
from tasksync.models import MUTABLE_FIELDS, Task, TaskHistoryEntry, new_id, utcnow


def _unchanged(field: str, old: Any, new: Any) -> bool:
  if field == "tags":
    return set(old or ()) == set(new or ())
  return old == new


class HistoryRecorder:
  """
  Turns a (before, after) pair of task snapshots into field-level audit entries.

  Pure with respect to its inputs: nothing is written here. Entries come out in
  `MUTABLE_FIELDS` order and share one `changedAt`.
  """

  def __init__(self, *, clock: Callable[[], datetime] = utcnow, id_factory: Callable[[], str] = new_id) -> None:
    self._clock = clock
    self._new_id = id_factory

  def changed_fields(self, old: Task, new: Task) -> list[str]:
    if old.id != new.id:
      raise InvalidArgument(f"history diff across different tasks: {old.id} != {new.id}")
    return [f for f in MUTABLE_FIELDS if not _unchanged(f, getattr(old, f), getattr(new, f))]

  def record(
    self,
    old: Task,
    new: Task,
    acting_user: str,
    *,
    changed_at: datetime | None = None,
    previous: Sequence[TaskHistoryEntry] = (),
  ) -> list[TaskHistoryEntry]:
    fields = self.changed_fields(old, new)
    if not fields:
      return []
    when = changed_at or self._clock()
    # history stays ordered by changedAt even if clocks disagree
    for prior in (*old.history, *previous):
      if prior.changedAt > when:
        when = prior.changedAt
    return [
      TaskHistoryEntry(
        id=self._new_id(),
        field=f,
        oldValue=jsonable_encoder(getattr(old, f)),
        newValue=jsonable_encoder(getattr(new, f)),
        changedBy=acting_user,
        changedAt=when,
      )
      for f in fields
    ]

  @staticmethod
  def append(task: Task, entries: Sequence[TaskHistoryEntry]) -> Task:
    if not entries:
      return task
    return task.model_copy(update={"history": (*task.history, *entries)})
