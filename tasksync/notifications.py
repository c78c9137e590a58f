from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from tasksync.config import Settings, settings as default_settings
from tasksync.errors import AdapterError, NotFound
from tasksync.events import CommentAdded, EventBus, MutationCommitted, NotificationCreated
from tasksync.models import OPEN_STATUSES, Notification, NotificationType, Task, utcnow
from tasksync.store.base import DocumentStore

logger = logging.getLogger(__name__)

_STATUS_LABELS = {
  "new": "New",
  "inProgress": "In progress",
  "review": "Review",
  "done": "Done",
  "cancelled": "Cancelled",
}


@dataclass(frozen=True)
class NotificationDraft:
  recipient: str
  title: str
  message: str
  type: NotificationType
  task_id: str | None = None

  def to_document(self) -> dict[str, Any]:
    return {
      "recipient": self.recipient,
      "title": self.title,
      "message": self.message,
      "type": self.type,
      "read": False,
      "taskId": self.task_id,
    }


def _to_notification(doc: dict[str, Any]) -> Notification:
  try:
    return Notification.model_validate(doc)
  except ValidationError as e:
    raise AdapterError(f"malformed notification document {doc.get('id')}") from e


class NotificationFanout:
  """
  Turns committed task changes into recipient-addressed notifications.

  Listens only to post-confirmation events, so nothing is ever sent for a
  change that may still be rolled back. Delivery is best-effort: a failed
  write is logged and the originating mutation stays committed.
  """

  def __init__(self, store: DocumentStore, bus: EventBus, *, settings: Settings | None = None) -> None:
    self._store = store
    self._bus = bus
    self._settings = settings or default_settings
    self._unsubscribe = [
      bus.subscribe(MutationCommitted, self._on_mutation_committed),
      bus.subscribe(CommentAdded, self._on_comment_added),
    ]

  def close(self) -> None:
    for unsub in self._unsubscribe:
      unsub()
    self._unsubscribe = []

  def _wanted(self, recipient: str, acting_user: str) -> bool:
    if not recipient:
      return False
    return self._settings.notify_actor or recipient != acting_user

  def drafts_for_mutation(self, ev: MutationCommitted) -> list[NotificationDraft]:
    before, after = ev.before, ev.after
    out: list[NotificationDraft] = []

    if "assignee" in ev.patch and after.assignee and after.assignee != before.assignee:
      if self._wanted(after.assignee, ev.acting_user):
        out.append(
          NotificationDraft(
            recipient=after.assignee,
            title="Task assigned",
            message=f"You were assigned a task: {after.title}",
            type="task",
            task_id=after.id,
          )
        )

    if "status" in ev.patch and after.status != before.status and self._wanted(after.assignee, ev.acting_user):
      out.append(
        NotificationDraft(
          recipient=after.assignee,
          title="Task status changed",
          message=f'"{after.title}" moved from {_STATUS_LABELS[before.status]} to {_STATUS_LABELS[after.status]}',
          type="task",
          task_id=after.id,
        )
      )
    return out

  def drafts_for_comment(self, ev: CommentAdded) -> list[NotificationDraft]:
    return [
      NotificationDraft(
        recipient=uid,
        title="You were mentioned",
        message=f'{ev.acting_user} mentioned you in a comment on "{ev.task.title}"',
        type="mention",
        task_id=ev.task_id,
      )
      for uid in ev.comment.mentions
      if self._wanted(uid, ev.acting_user)
    ]

  async def _on_mutation_committed(self, ev: MutationCommitted) -> None:
    for draft in self.drafts_for_mutation(ev):
      await self.deliver(draft)

  async def _on_comment_added(self, ev: CommentAdded) -> None:
    for draft in self.drafts_for_comment(ev):
      await self.deliver(draft)

  async def deliver(self, draft: NotificationDraft) -> Notification | None:
    try:
      n = _to_notification(await self._store.create(draft.to_document()))
    except Exception:
      logger.exception("Notification fanout failed recipient=%s task_id=%s", draft.recipient, draft.task_id)
      return None
    logger.debug("Notification created id=%s recipient=%s type=%s", n.id, n.recipient, n.type)
    self._bus.emit(NotificationCreated(notification=n))
    return n

  async def remind_deadlines(self, tasks: list[Task] | tuple[Task, ...], now: datetime | None = None) -> list[Notification]:
    """One reminder per open, assigned task whose deadline falls within the reminder window."""
    now = now or utcnow()
    horizon = now + timedelta(days=self._settings.deadline_reminder_days)
    sent: list[Notification] = []
    for t in sorted(tasks, key=lambda x: (x.deadline or now, x.id)):
      if not t.assignee or t.deadline is None or t.status not in OPEN_STATUSES:
        continue
      if not (now <= t.deadline <= horizon):
        continue
      days_left = max(0, (t.deadline - now).days)
      when = "today" if days_left == 0 else ("in 1 day" if days_left == 1 else f"in {days_left} days")
      n = await self.deliver(
        NotificationDraft(
          recipient=t.assignee,
          title="Deadline approaching",
          message=f'"{t.title}" is due {when}',
          type="task",
          task_id=t.id,
        )
      )
      if n is not None:
        sent.append(n)
    return sent


class NotificationInbox:
  """Per-user reads over the notifications store plus the read-flag flip."""

  def __init__(self, store: DocumentStore) -> None:
    self._store = store

  async def list_for_user(self, user_id: str, *, unread_only: bool = False, limit: int | None = None) -> list[Notification]:
    where: dict[str, Any] = {"recipient": user_id}
    if unread_only:
      where["read"] = False
    docs = await self._store.query(where, order_by="createdAt", descending=True, limit=limit)
    return [_to_notification(d) for d in docs]

  async def unread_count(self, user_id: str) -> int:
    return len(await self._store.query({"recipient": user_id, "read": False}))

  async def mark_read(self, notification_id: str) -> Notification:
    doc = await self._store.fetch(notification_id)
    if doc is None:
      raise NotFound(f"Notification {notification_id} not found", entity_id=notification_id)
    if doc.get("read"):
      return _to_notification(doc)
    return _to_notification(await self._store.patch(notification_id, {"read": True}))

  async def mark_all_read(self, user_id: str) -> int:
    docs = await self._store.query({"recipient": user_id, "read": False})
    for d in docs:
      await self._store.patch(d["id"], {"read": True})
    return len(docs)
