from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from tasksync.errors import AdapterError, InvalidArgument, NotFound, SyncFailed, TaskSyncError, invalid_from_validation
from tasksync.events import (
  CommentAdded,
  EventBus,
  MutationApplied,
  MutationCommitted,
  MutationRolledBack,
  TaskCreated,
  TaskDeleted,
)
from tasksync.history import HistoryRecorder
from tasksync.models import (
  OPEN_STATUSES,
  Task,
  TaskAttachment,
  TaskComment,
  TaskCreateIn,
  TaskPatch,
  new_id,
  parse_patch,
  patch_to_document,
  utcnow,
)
from tasksync.query import TaskFilter, TaskSort, coerce_filter, coerce_sort, is_due_on, is_overdue, sort_tasks
from tasksync.store.base import DocumentStore
from tasksync.views import ViewSubscriptions

logger = logging.getLogger(__name__)

# Append-only list fields; safe to take from the store even while a patch is in flight.
_APPEND_ONLY = ("history", "comments", "attachments")

# Sort fields whose stored JSON values order the same way as `sort_tasks`, so a
# store-side limit keeps the right rows.
_STORE_ORDERED = ("progress", "estimatedTime", "createdAt", "updatedAt")


class TaskRepository:
  """
  Single point of mutation for tasks in one session.

  Owns the in-memory task cache (a cache of the remote store, never the system
  of record). Field edits are optimistic: applied to the cache and shown to
  views at once, then confirmed or rolled back. Creation, deletion and
  comment/attachment appends wait for the store first.

  Concurrent `mutate` calls on the same task are not serialized: each rolls
  back to the snapshot it captured, so an older failure can overwrite a newer
  success in the cache.
  """

  def __init__(
    self,
    store: DocumentStore,
    *,
    bus: EventBus | None = None,
    views: ViewSubscriptions | None = None,
    recorder: HistoryRecorder | None = None,
  ) -> None:
    self._store = store
    self.bus = bus or EventBus()
    self.views = views or ViewSubscriptions()
    self.recorder = recorder or HistoryRecorder()
    self._cache: dict[str, Task] = {}
    self._inflight: Counter[str] = Counter()
    self._append_lock = asyncio.Lock()
    self._closed = False

  # ---- cached reads ----

  def __contains__(self, task_id: object) -> bool:
    return task_id in self._cache

  def __len__(self) -> int:
    return len(self._cache)

  def get(self, task_id: str) -> Task:
    t = self._cache.get(task_id)
    if t is None:
      raise NotFound(f"Task {task_id} not found", entity_id=task_id)
    return t

  def peek(self, task_id: str) -> Task | None:
    return self._cache.get(task_id)

  def snapshot(self) -> tuple[Task, ...]:
    return tuple(sorted(self._cache.values(), key=lambda t: t.id))

  def all(self, filter: TaskFilter | dict | None = None, sort: TaskSort | dict | None = None) -> list[Task]:
    f = coerce_filter(filter)
    return sort_tasks([t for t in self._cache.values() if f.matches(t)], coerce_sort(sort))

  def is_pending(self, task_id: str) -> bool:
    return self._inflight[task_id] > 0

  # ---- cache plumbing ----

  def _ensure_open(self) -> None:
    if self._closed:
      raise TaskSyncError("repository is closed")

  def _publish(self) -> None:
    self.views.publish(self.snapshot())

  def _to_task(self, doc: dict[str, Any] | None) -> Task:
    if doc is None:
      raise AdapterError("store returned no document")
    try:
      return Task.model_validate(doc)
    except ValidationError as e:
      raise AdapterError(f"malformed task document {doc.get('id')}: {e.errors()[0].get('msg')}") from e

  def _absorb(self, fresh: Task) -> Task:
    """Take a store copy into the cache without clobbering an optimistic edit still in flight."""
    if self._closed:
      return fresh
    cached = self._cache.get(fresh.id)
    if cached is not None and self.is_pending(fresh.id):
      merged = cached.model_copy(update={f: getattr(fresh, f) for f in _APPEND_ONLY})
      self._cache[fresh.id] = merged
      return merged
    self._cache[fresh.id] = fresh
    return fresh

  # ---- optimistic field edits ----

  async def mutate(self, task_id: str, patch: TaskPatch | dict[str, Any], acting_user: str) -> Task:
    """
    Apply `patch` optimistically, persist it, then record history and commit.

    Everything up to the store call runs before the first suspension point, so
    the cache and every view already show the patched task when a caller that
    scheduled this coroutine gets control back.
    """
    self._ensure_open()
    changes = parse_patch(patch)
    old = self.get(task_id)

    optimistic = old.model_copy(update=changes)
    self._inflight[task_id] += 1
    self._cache[task_id] = optimistic
    self._publish()
    self.bus.emit(MutationApplied(task_id=task_id, optimistic=True))
    logger.debug("Optimistic apply task_id=%s fields=%s", task_id, sorted(changes))

    try:
      try:
        doc = await self._store.patch(task_id, patch_to_document(changes))
      except Exception as e:
        self._rollback(task_id, old, e)
        raise SyncFailed(task_id, e) from e
      # the write landed; a malformed reply is an adapter fault, not a rollback
      confirmed = self._to_task(doc)

      committed = await self._append_history(old, optimistic, confirmed, acting_user)
      if not self._closed and task_id in self._cache:
        self._cache[task_id] = committed
        self._publish()
    finally:
      self._inflight[task_id] -= 1
      if self._inflight[task_id] <= 0:
        del self._inflight[task_id]

    self.bus.emit(MutationApplied(task_id=task_id, optimistic=False))
    self.bus.emit(MutationCommitted(task_id=task_id, patch=dict(changes), acting_user=acting_user, before=old, after=committed))
    logger.info("Committed task_id=%s fields=%s by=%s", task_id, sorted(changes), acting_user)
    return committed

  def _rollback(self, task_id: str, old: Task, cause: BaseException) -> None:
    # Deleted or torn down while the patch was in flight: nothing to restore.
    if not self._closed and task_id in self._cache:
      self._cache[task_id] = old
      self._publish()
    logger.warning("Rolled back task_id=%s cause=%s", task_id, cause)
    self.bus.emit(MutationRolledBack(task_id=task_id, reason=str(cause) or cause.__class__.__name__))

  async def _append_history(self, old: Task, new: Task, confirmed: Task, acting_user: str) -> Task:
    if not self.recorder.changed_fields(old, new):
      return confirmed
    async with self._append_lock:
      try:
        latest = await self._store.fetch(confirmed.id)
        base = list((latest or {}).get("history") or [t.model_dump(mode="json") for t in confirmed.history])
        previous = self._to_task(latest).history if latest else confirmed.history
        entries = self.recorder.record(old, new, acting_user, changed_at=confirmed.updatedAt, previous=previous)
        doc = await self._store.patch(confirmed.id, {"history": [*base, *(e.model_dump(mode="json") for e in entries)]})
        return self._to_task(doc)
      except Exception:
        logger.exception("History write failed task_id=%s; keeping entries in session cache only", confirmed.id)
        entries = self.recorder.record(old, new, acting_user, changed_at=confirmed.updatedAt)
        return self.recorder.append(confirmed, entries)

  async def update_status(self, task_id: str, status: str, acting_user: str) -> Task:
    return await self.mutate(task_id, {"status": status}, acting_user)

  async def update_assignee(self, task_id: str, assignee: str, acting_user: str) -> Task:
    return await self.mutate(task_id, {"assignee": assignee}, acting_user)

  async def update_progress(self, task_id: str, progress: int, acting_user: str) -> Task:
    return await self.mutate(task_id, {"progress": progress}, acting_user)

  # ---- confirmed-first writes ----

  async def create_task(self, data: TaskCreateIn | dict[str, Any], acting_user: str) -> Task:
    self._ensure_open()
    if isinstance(data, TaskCreateIn):
      payload = data
    else:
      try:
        payload = TaskCreateIn.model_validate(data)
      except ValidationError as e:
        raise invalid_from_validation(e) from e
    if not acting_user:
      raise InvalidArgument("acting user is required")

    doc = payload.model_dump(mode="json")
    doc.update(history=[], comments=[], attachments=[], createdBy=acting_user)
    created = self._to_task(await self._store.create(doc))

    if not self._closed:
      self._cache[created.id] = created
      self._publish()
    self.bus.emit(TaskCreated(task=created, acting_user=acting_user))
    logger.info("Created task_id=%s by=%s", created.id, acting_user)
    return created

  async def delete_task(self, task_id: str) -> None:
    self._ensure_open()
    try:
      await self._store.remove(task_id)
    except Exception as e:
      logger.warning("Delete failed task_id=%s cause=%s", task_id, e)
      raise SyncFailed(task_id, e) from e
    if self._cache.pop(task_id, None) is not None and not self._closed:
      self._publish()
    self.bus.emit(TaskDeleted(task_id=task_id))
    logger.info("Deleted task_id=%s", task_id)

  async def add_comment(
    self,
    task_id: str,
    content: str,
    acting_user: str,
    *,
    mentions: Iterable[str] = (),
  ) -> TaskComment:
    self._ensure_open()
    self.get(task_id)
    text = (content or "").strip()
    if not text:
      raise InvalidArgument("comment content is required")
    comment = TaskComment(
      id=new_id(),
      content=text,
      createdBy=acting_user,
      createdAt=await self._store.server_time(),
      mentions=tuple(mentions),
    )
    task = await self._append_child(task_id, "comments", comment.model_dump(mode="json"))
    self.bus.emit(CommentAdded(task_id=task_id, comment=comment, acting_user=acting_user, task=task))
    return comment

  async def add_attachment(
    self,
    task_id: str,
    *,
    name: str,
    url: str,
    acting_user: str,
    type: str = "",
    size: int = 0,
  ) -> TaskAttachment:
    self._ensure_open()
    self.get(task_id)
    try:
      attachment = TaskAttachment(
        id=new_id(),
        name=name,
        url=url,
        type=type,
        size=size,
        uploadedBy=acting_user,
        uploadedAt=await self._store.server_time(),
      )
    except ValidationError as e:
      raise invalid_from_validation(e) from e
    await self._append_child(task_id, "attachments", attachment.model_dump(mode="json"))
    return attachment

  async def _append_child(self, task_id: str, field: str, item: dict[str, Any]) -> Task:
    async with self._append_lock:
      latest = await self._store.fetch(task_id)
      if latest is None:
        self._forget(task_id)
        raise NotFound(f"Task {task_id} not found", entity_id=task_id)
      doc = await self._store.patch(task_id, {field: [*(latest.get(field) or []), item]})
    task = self._absorb(self._to_task(doc))
    self._publish()
    return task

  def _forget(self, task_id: str) -> None:
    if self._cache.pop(task_id, None) is not None:
      self._publish()

  # ---- store reads ----

  async def refresh(self, task_id: str) -> Task:
    self._ensure_open()
    doc = await self._store.fetch(task_id)
    if doc is None:
      self._forget(task_id)
      raise NotFound(f"Task {task_id} not found", entity_id=task_id)
    task = self._absorb(self._to_task(doc))
    self._publish()
    return task

  async def query(
    self,
    filter: TaskFilter | dict | None = None,
    sort: TaskSort | dict | None = None,
    limit: int | None = None,
  ) -> list[Task]:
    """
    Read from the store, refresh matching cache entries and return a sorted snapshot.

    Equality constraints go to the store; tags, deadline range and text search
    are applied here. An unfiltered, unlimited query is a full reload and also
    evicts cached tasks the store no longer has.
    """
    self._ensure_open()
    f = coerce_filter(filter)
    s = coerce_sort(sort)
    if limit is not None and limit < 0:
      raise InvalidArgument("limit must be >= 0")

    local_only = f.tags or f.deadlineFrom or f.deadlineTo or f.search or s.field not in _STORE_ORDERED
    store_limit = None if local_only else limit
    docs = await self._store.query(f.store_where(), order_by=s.field, descending=(s.direction == "desc"), limit=store_limit)

    fetched = [self._to_task(d) for d in docs]
    tasks = sort_tasks([t for t in fetched if f.matches(t)], s)
    if limit is not None:
      tasks = tasks[:limit]

    if not self._closed:
      if f == TaskFilter() and limit is None:
        seen = {t.id for t in fetched}
        for tid in [tid for tid in self._cache if tid not in seen and not self.is_pending(tid)]:
          del self._cache[tid]
      tasks = [self._absorb(t) for t in tasks]
      self._publish()
    return tasks

  async def load(self) -> list[Task]:
    return await self.query()

  async def tasks_by_assignee(self, assignee: str) -> list[Task]:
    return await self.query(TaskFilter(assignee=assignee), TaskSort(field="updatedAt", direction="desc"))

  async def tasks_by_project(self, project: str) -> list[Task]:
    return await self.query(TaskFilter(project=project), TaskSort(field="updatedAt", direction="desc"))

  async def overdue_tasks(self, now: datetime | None = None) -> list[Task]:
    now = now or utcnow()
    tasks = await self.query(TaskFilter(status=OPEN_STATUSES, deadlineTo=now), TaskSort(field="deadline", direction="asc"))
    return [t for t in tasks if is_overdue(t, now)]

  async def tasks_due_today(self, now: datetime | None = None) -> list[Task]:
    now = (now or utcnow()).astimezone(timezone.utc)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    tasks = await self.query(
      TaskFilter(status=OPEN_STATUSES, deadlineFrom=start, deadlineTo=start + timedelta(days=1)),
      TaskSort(field="deadline", direction="asc"),
    )
    return [t for t in tasks if is_due_on(t, start)]

  # ---- lifecycle ----

  @property
  def closed(self) -> bool:
    return self._closed

  async def close(self) -> None:
    """Tear the session down: finish background fanout, drop the cache, detach views."""
    if self._closed:
      return
    self._closed = True
    await self.bus.drain()
    self._cache.clear()
    self._inflight.clear()
    self.views.clear()
