from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from tasksync.errors import InvalidArgument
from tasksync.models import TASK_STATUSES, Task
from tasksync.repository import TaskRepository

logger = logging.getLogger(__name__)


class DragState(str, Enum):
  IDLE = "idle"
  DRAGGING = "dragging"
  COMMITTING = "committing"
  CANCELLED = "cancelled"


class DropOutcome(str, Enum):
  CANCELLED = "cancelled"
  REORDERED = "reordered"
  COMMITTED = "committed"


@dataclass(frozen=True)
class DropResult:
  outcome: DropOutcome
  task: Task | None = None


class DragSession:
  """
  One drag gesture: Idle -> Dragging -> (Committing -> Idle | Cancelled).

  Hovering only re-orders the manager's local column view. A drop into a
  different column issues exactly one status mutation; whatever its outcome,
  the session ends Idle. A failed mutation is rolled back by the repository
  and shows up through the view layer, never by re-issuing the drag.
  """

  def __init__(self, manager: DragSessionManager, task_id: str, source_status: str, source_index: int) -> None:
    self._manager = manager
    self.task_id = task_id
    self.source_status = source_status
    self.source_index = source_index
    self.destination_status: str | None = None
    self.destination_index: int | None = None
    self.state = DragState.DRAGGING
    # local column order as it was at pick-up; put back on cancel
    self._saved_order = {s: list(ids) for s, ids in manager._order.items()}

  def _require(self, *states: DragState) -> None:
    if self.state not in states:
      raise InvalidArgument(f"drag of {self.task_id} is {self.state.value}")

  def hover(self, destination_status: str | None, destination_index: int | None = None) -> None:
    self._require(DragState.DRAGGING)
    if destination_status is not None and destination_status not in TASK_STATUSES:
      destination_status = None
    self.destination_status = destination_status
    self.destination_index = destination_index
    if destination_status is not None:
      self._manager._place(self.task_id, destination_status, destination_index)

  def cancel(self) -> DropResult:
    self._require(DragState.DRAGGING)
    self.state = DragState.CANCELLED
    self._manager._order = self._saved_order
    self._manager._release(self)
    logger.debug("Drag cancelled task_id=%s", self.task_id)
    return DropResult(outcome=DropOutcome.CANCELLED)

  async def drop(self, destination_status: str | None = None, destination_index: int | None = None) -> DropResult:
    self._require(DragState.DRAGGING)
    if destination_status is not None or destination_index is not None:
      self.hover(destination_status, destination_index)

    dest = self.destination_status
    idx = self.destination_index if self.destination_index is not None else self.source_index
    if dest is None or (dest == self.source_status and idx == self.source_index):
      return self.cancel()

    self.state = DragState.COMMITTING
    self._manager._release(self)
    try:
      if dest == self.source_status:
        # in-column reorder is display-only
        self._manager._place(self.task_id, dest, idx)
        return DropResult(outcome=DropOutcome.REORDERED)
      logger.debug("Drag commit task_id=%s %s -> %s", self.task_id, self.source_status, dest)
      task = await self._manager.repository.mutate(self.task_id, {"status": dest}, self._manager.acting_user)
      return DropResult(outcome=DropOutcome.COMMITTED, task=task)
    finally:
      self.state = DragState.IDLE


class DragSessionManager:
  """
  Board-side drag handling for one acting user.

  Keeps an ephemeral per-column card order for display; it is never persisted.
  Only one card can be in the Dragging state at a time, but earlier drops may
  still be committing.
  """

  def __init__(self, repository: TaskRepository, acting_user: str) -> None:
    self.repository = repository
    self.acting_user = acting_user
    self.active: DragSession | None = None
    self._order: dict[str, list[str]] = {s: [] for s in TASK_STATUSES}

  @property
  def state(self) -> DragState:
    return self.active.state if self.active else DragState.IDLE

  def pick_up(self, task_id: str, source_index: int | None = None, source_status: str | None = None) -> DragSession:
    if self.active is not None:
      raise InvalidArgument("another card is already being dragged")
    task = self.repository.get(task_id)
    status = source_status or task.status
    if status not in TASK_STATUSES:
      raise InvalidArgument(f"unknown column {status}")
    if source_index is None:
      ids = [t.id for t in self.column(status)]
      source_index = ids.index(task_id) if task_id in ids else 0
    self.active = DragSession(self, task_id, status, source_index)
    return self.active

  def _release(self, session: DragSession) -> None:
    if self.active is session:
      self.active = None

  def _place(self, task_id: str, status: str, index: int | None) -> None:
    for ids in self._order.values():
      if task_id in ids:
        ids.remove(task_id)
    col = self._order[status]
    pos = len(col) if index is None else max(0, min(index, len(col)))
    col.insert(pos, task_id)

  def column(self, status: str) -> list[Task]:
    """
    Cards shown in a column: cache members of that status, locally placed cards
    first in their placed order, the rest by id.
    """
    if status not in TASK_STATUSES:
      raise InvalidArgument(f"unknown column {status}")
    members = {t.id: t for t in self.repository.snapshot() if t.status == status}
    placed = [members[tid] for tid in self._order[status] if tid in members]
    placed_ids = {t.id for t in placed}
    rest = [t for tid, t in sorted(members.items()) if tid not in placed_ids]
    return placed + rest

  def columns(self) -> dict[str, list[Task]]:
    return {s: self.column(s) for s in TASK_STATUSES}
