from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, NamedTuple

from tasksync.models import TASK_STATUSES, Task
from tasksync.query import TaskFilter, TaskSort, coerce_filter, coerce_sort, sort_tasks

logger = logging.getLogger(__name__)

Selector = Callable[[tuple[Task, ...]], Any]
OnChange = Callable[[Any], None]

_UNSET = object()


def _same(a: Any, b: Any) -> bool:
  return a is b or a == b


def shallow_equal(a: Any, b: Any) -> bool:
  """Compare two derived shapes one level deep: mapping values or sequence items."""
  if a is b:
    return True
  if isinstance(a, Mapping) and isinstance(b, Mapping):
    if a.keys() != b.keys():
      return False
    return all(_same(a[k], b[k]) for k in a)
  if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
    if len(a) != len(b):
      return False
    return all(_same(x, y) for x, y in zip(a, b))
  return a == b


@dataclass
class _Subscription:
  selector: Selector
  on_change: OnChange
  last: Any = _UNSET
  active: bool = True


class ViewSubscriptions:
  """
  Lets any number of read-models share one task cache.

  The repository calls `publish` with the full cached collection after every
  cache change; each subscriber's selector is re-evaluated and `on_change`
  fires only when the derived shape differs from the previous delivery.
  """

  def __init__(self) -> None:
    self._subs: list[_Subscription] = []
    self._snapshot: tuple[Task, ...] = ()

  def subscribe(self, selector: Selector, on_change: OnChange, *, emit_initial: bool = False) -> Callable[[], None]:
    sub = _Subscription(selector=selector, on_change=on_change)
    sub.last = selector(self._snapshot)
    self._subs.append(sub)
    if emit_initial:
      on_change(sub.last)

    def unsubscribe() -> None:
      sub.active = False
      if sub in self._subs:
        self._subs.remove(sub)

    return unsubscribe

  def publish(self, tasks: tuple[Task, ...]) -> None:
    self._snapshot = tasks
    for sub in list(self._subs):
      # unsubscribed by an earlier callback in this same pass
      if not sub.active:
        continue
      try:
        derived = sub.selector(tasks)
      except Exception:
        logger.exception("View selector failed")
        continue
      if sub.last is not _UNSET and shallow_equal(derived, sub.last):
        continue
      sub.last = derived
      try:
        sub.on_change(derived)
      except Exception:
        logger.exception("View change callback failed")

  @property
  def subscriber_count(self) -> int:
    return len(self._subs)

  def clear(self) -> None:
    for sub in self._subs:
      sub.active = False
    self._subs.clear()
    self._snapshot = ()


def by_status(tasks: tuple[Task, ...]) -> dict[str, tuple[Task, ...]]:
  """Board read-model: one bucket per status, every status present, cards ordered by id."""
  buckets: dict[str, list[Task]] = {s: [] for s in TASK_STATUSES}
  for t in sorted(tasks, key=lambda x: x.id):
    buckets[t.status].append(t)
  return {s: tuple(v) for s, v in buckets.items()}


def flat_list(filter: TaskFilter | dict | None = None, sort: TaskSort | dict | None = None) -> Selector:
  f = coerce_filter(filter)
  s = coerce_sort(sort)

  def select(tasks: tuple[Task, ...]) -> tuple[Task, ...]:
    return tuple(sort_tasks([t for t in tasks if f.matches(t)], s))

  return select


class CalendarEntry(NamedTuple):
  id: str
  title: str
  status: str
  priority: str
  assignee: str
  deadline: datetime


def by_deadline_date(tasks: tuple[Task, ...]) -> dict[str, tuple[CalendarEntry, ...]]:
  """
  Calendar read-model keyed by ISO date (UTC) of the deadline.

  Entries carry only what a calendar cell shows, so comment or progress edits
  do not count as a change for this view.
  """
  days: dict[str, list[CalendarEntry]] = {}
  for t in tasks:
    if t.deadline is None:
      continue
    days.setdefault(t.deadline.date().isoformat(), []).append(
      CalendarEntry(id=t.id, title=t.title, status=t.status, priority=t.priority, assignee=t.assignee, deadline=t.deadline)
    )
  return {d: tuple(sorted(v, key=lambda e: (e.deadline, e.id))) for d, v in sorted(days.items())}
