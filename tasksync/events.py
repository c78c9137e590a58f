from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

from tasksync.models import Notification, Task, TaskComment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MutationApplied:
  name: ClassVar[str] = "mutation-applied"

  task_id: str
  optimistic: bool


@dataclass(frozen=True)
class MutationRolledBack:
  name: ClassVar[str] = "mutation-rolled-back"

  task_id: str
  reason: str


@dataclass(frozen=True)
class MutationCommitted:
  name: ClassVar[str] = "mutation-committed"

  task_id: str
  patch: dict[str, Any]
  acting_user: str
  before: Task
  after: Task


@dataclass(frozen=True)
class TaskCreated:
  name: ClassVar[str] = "task-created"

  task: Task
  acting_user: str


@dataclass(frozen=True)
class TaskDeleted:
  name: ClassVar[str] = "task-deleted"

  task_id: str


@dataclass(frozen=True)
class CommentAdded:
  name: ClassVar[str] = "comment-added"

  task_id: str
  comment: TaskComment
  acting_user: str
  task: Task


@dataclass(frozen=True)
class NotificationCreated:
  name: ClassVar[str] = "notification-created"

  notification: Notification


Handler = Callable[[Any], "Awaitable[None] | None"]


@dataclass
class EventBus:
  """
  In-process publish/subscribe.

  Plain handlers run synchronously inside `emit`; coroutine handlers are
  scheduled as background tasks so they never block the emitter. Handler
  failures are logged and never propagate to the emitter.
  """

  _handlers: dict[type, list[Handler]] = field(default_factory=lambda: defaultdict(list))
  _background: set[asyncio.Task] = field(default_factory=set)

  def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
    self._handlers[event_type].append(handler)

    def unsubscribe() -> None:
      handlers = self._handlers.get(event_type) or []
      if handler in handlers:
        handlers.remove(handler)

    return unsubscribe

  def emit(self, event: Any) -> None:
    for handler in list(self._handlers.get(type(event)) or []):
      try:
        result = handler(event)
      except Exception:
        logger.exception("Event handler failed event=%s", getattr(event, "name", type(event).__name__))
        continue
      if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        self._background.add(task)
        task.add_done_callback(self._finished)

  def _finished(self, task: asyncio.Task) -> None:
    self._background.discard(task)
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Background event handler failed", exc_info=exc)

  @property
  def pending(self) -> int:
    return len(self._background)

  async def drain(self) -> None:
    """Wait until every scheduled background handler (and any it spawned) has finished."""
    while self._background:
      await asyncio.gather(*list(self._background), return_exceptions=True)

  async def aclose(self) -> None:
    await self.drain()
    self._handlers.clear()
