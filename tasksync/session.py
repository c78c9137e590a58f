from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from tasksync.config import Settings, settings as default_settings
from tasksync.drag import DragSessionManager
from tasksync.events import EventBus
from tasksync.history import HistoryRecorder
from tasksync.notifications import NotificationFanout, NotificationInbox
from tasksync.repository import TaskRepository
from tasksync.store.base import DocumentStore
from tasksync.store.http import HttpDocumentStore, make_client
from tasksync.store.memory import MemoryDocumentStore, ServerClock
from tasksync.store.sql import SqlDocumentStore, create_schema, make_engine, make_session_factory
from tasksync.views import ViewSubscriptions

logger = logging.getLogger(__name__)


async def build_stores(cfg: Settings) -> tuple[DocumentStore, DocumentStore, Any]:
  """Return (tasks store, notifications store, resource to dispose) for the configured backend."""
  if cfg.store_backend == "memory":
    clock = ServerClock()
    return (
      MemoryDocumentStore(cfg.tasks_collection, clock=clock),
      MemoryDocumentStore(cfg.notifications_collection, clock=clock),
      None,
    )
  if cfg.store_backend == "sql":
    engine = make_engine(cfg.database_url)
    await create_schema(engine)
    sessions = make_session_factory(engine)
    clock = ServerClock()
    return (
      SqlDocumentStore(cfg.tasks_collection, sessions, clock=clock),
      SqlDocumentStore(cfg.notifications_collection, sessions, clock=clock),
      engine,
    )
  client = make_client(cfg.remote_base_url, timeout=cfg.remote_timeout_seconds)
  return (
    HttpDocumentStore(cfg.tasks_collection, client),
    HttpDocumentStore(cfg.notifications_collection, client),
    client,
  )


class TaskSyncSession:
  """
  Everything one signed-in user needs, wired together.

  Construct per sign-in with `open`, tear down on sign-out with `close`
  (or use as an async context manager).
  """

  def __init__(
    self,
    *,
    acting_user: str,
    tasks_store: DocumentStore,
    notifications_store: DocumentStore,
    settings: Settings | None = None,
    resource: Any = None,
  ) -> None:
    self.settings = settings or default_settings
    self.acting_user = acting_user
    self.tasks_store = tasks_store
    self.notifications_store = notifications_store
    self.bus = EventBus()
    self.views = ViewSubscriptions()
    self.repository = TaskRepository(tasks_store, bus=self.bus, views=self.views, recorder=HistoryRecorder())
    self.fanout = NotificationFanout(notifications_store, self.bus, settings=self.settings)
    self.inbox = NotificationInbox(notifications_store)
    self.drag = DragSessionManager(self.repository, acting_user)
    self._resource = resource

  @classmethod
  async def open(cls, acting_user: str, settings: Settings | None = None, *, load: bool = True) -> TaskSyncSession:
    cfg = settings or default_settings
    tasks_store, notifications_store, resource = await build_stores(cfg)
    session = cls(
      acting_user=acting_user,
      tasks_store=tasks_store,
      notifications_store=notifications_store,
      settings=cfg,
      resource=resource,
    )
    if load:
      await session.repository.load()
    logger.info("Session opened user=%s backend=%s tasks=%s", acting_user, cfg.store_backend, len(session.repository))
    return session

  async def close(self) -> None:
    await self.repository.close()
    self.fanout.close()
    await self.bus.aclose()
    await self.tasks_store.close()
    await self.notifications_store.close()
    if isinstance(self._resource, AsyncEngine):
      await self._resource.dispose()
    elif self._resource is not None and hasattr(self._resource, "aclose"):
      await self._resource.aclose()
    logger.info("Session closed user=%s", self.acting_user)

  async def __aenter__(self) -> TaskSyncSession:
    return self

  async def __aexit__(self, *exc: object) -> None:
    await self.close()
