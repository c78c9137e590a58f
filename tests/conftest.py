from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from tasksync.config import Settings
from tasksync.models import Task
from tasksync.repository import TaskRepository
from tasksync.session import TaskSyncSession
from tasksync.store.memory import MemoryDocumentStore, ServerClock

from fakes import GatedStore


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture()
def settings() -> Settings:
  # Explicit values; never read the developer's .env in tests.
  return Settings(_env_file=None, store_backend="memory", notify_actor=True, deadline_reminder_days=3)


@pytest.fixture()
def clock() -> ServerClock:
  return ServerClock()


@pytest.fixture()
def tasks_store(clock: ServerClock) -> GatedStore:
  return GatedStore(MemoryDocumentStore("tasks", clock=clock))


@pytest.fixture()
def notifications_store(clock: ServerClock) -> GatedStore:
  return GatedStore(MemoryDocumentStore("notifications", clock=clock))


@pytest.fixture()
async def session(settings: Settings, tasks_store: GatedStore, notifications_store: GatedStore) -> TaskSyncSession:
  s = TaskSyncSession(
    acting_user="user-1",
    tasks_store=tasks_store,
    notifications_store=notifications_store,
    settings=settings,
  )
  yield s
  await s.close()


@pytest.fixture()
def repo(session: TaskSyncSession) -> TaskRepository:
  return session.repository


async def seed_task(repo: TaskRepository, acting_user: str = "user-1", **fields: Any) -> Task:
  data: dict[str, Any] = {"title": "Write release notes", "priority": "medium", "status": "new"}
  data.update(fields)
  return await repo.create_task(data, acting_user)


def utc(*args: int) -> datetime:
  return datetime(*args, tzinfo=timezone.utc)
