from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import JSON, DateTime, String, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tasksync.errors import AdapterError
from tasksync.models import new_id
from tasksync.store.base import SERVER_FIELDS, iso, matches_where, order_documents
from tasksync.store.memory import ServerClock

T = TypeVar("T")


class Base(DeclarativeBase):
  pass


class DocumentRow(Base):
  __tablename__ = "documents"

  collection: Mapped[str] = mapped_column(String, primary_key=True)
  id: Mapped[str] = mapped_column(String, primary_key=True)
  data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def make_engine(database_url: str) -> AsyncEngine:
  return create_async_engine(database_url, future=True)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)


def _db_errors(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
  @functools.wraps(fn)
  async def wrapper(self: SqlDocumentStore, *args: Any, **kwargs: Any) -> T:
    try:
      return await fn(self, *args, **kwargs)
    except SQLAlchemyError as e:
      raise AdapterError(f"{self.collection}: database error: {e.__class__.__name__}") from e

  return wrapper


class SqlDocumentStore:
  """
  Document store kept in a single `documents` table, one JSON blob per row.

  Filtering and ordering run on the decoded documents so the same `where`
  semantics hold on every backend; collections here are per-user sized.
  """

  def __init__(
    self,
    collection: str,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    clock: ServerClock | None = None,
  ) -> None:
    self.collection = collection
    self._sessions = session_factory
    self._clock = clock or ServerClock()

  @_db_errors
  async def fetch(self, doc_id: str) -> dict[str, Any] | None:
    async with self._sessions() as db:
      res = await db.execute(select(DocumentRow).where(DocumentRow.collection == self.collection, DocumentRow.id == doc_id))
      row = res.scalar_one_or_none()
      return dict(row.data) if row else None

  @_db_errors
  async def query(
    self,
    where: Mapping[str, Any] | None = None,
    *,
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
  ) -> list[dict[str, Any]]:
    async with self._sessions() as db:
      res = await db.execute(select(DocumentRow).where(DocumentRow.collection == self.collection))
      docs = [dict(r.data) for r in res.scalars().all()]
    docs = [d for d in docs if matches_where(d, where)]
    return order_documents(docs, order_by=order_by, descending=descending, limit=limit)

  @_db_errors
  async def create(self, data: Mapping[str, Any]) -> dict[str, Any]:
    now = self._clock.now()
    doc = {k: v for k, v in data.items() if k not in SERVER_FIELDS}
    doc["id"] = new_id()
    doc["createdAt"] = iso(now)
    doc["updatedAt"] = iso(now)
    async with self._sessions() as db:
      db.add(DocumentRow(collection=self.collection, id=doc["id"], data=doc, created_at=now, updated_at=now))
      await db.commit()
    return dict(doc)

  @_db_errors
  async def patch(self, doc_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
    async with self._sessions() as db:
      res = await db.execute(select(DocumentRow).where(DocumentRow.collection == self.collection, DocumentRow.id == doc_id))
      row = res.scalar_one_or_none()
      if not row:
        raise AdapterError(f"{self.collection}/{doc_id} not found", status_code=404)
      now = self._clock.now()
      doc = dict(row.data)
      doc.update({k: v for k, v in fields.items() if k not in SERVER_FIELDS})
      doc["updatedAt"] = iso(now)
      # reassign so the JSON column is flagged dirty
      row.data = doc
      row.updated_at = now
      await db.commit()
      return dict(doc)

  @_db_errors
  async def remove(self, doc_id: str) -> None:
    async with self._sessions() as db:
      res = await db.execute(delete(DocumentRow).where(DocumentRow.collection == self.collection, DocumentRow.id == doc_id))
      await db.commit()
      if not res.rowcount:
        raise AdapterError(f"{self.collection}/{doc_id} not found", status_code=404)

  async def server_time(self) -> datetime:
    return self._clock.now()

  async def close(self) -> None:
    return
