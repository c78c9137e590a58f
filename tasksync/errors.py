from __future__ import annotations

from typing import Any

from pydantic import ValidationError


class TaskSyncError(RuntimeError):
  pass


class NotFound(TaskSyncError):
  def __init__(self, message: str, *, entity_id: str | None = None) -> None:
    super().__init__(message)
    self.entity_id = entity_id


class InvalidArgument(TaskSyncError):
  pass


class AdapterError(TaskSyncError):
  """Opaque failure surfaced from a document store (network, permission, missing document)."""

  def __init__(self, message: str, *, status_code: int | None = None, details: dict[str, Any] | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.details = details or {}


class SyncFailed(TaskSyncError):
  """A remote write failed after its optimistic local change was applied; the change was rolled back."""

  def __init__(self, task_id: str, cause: BaseException) -> None:
    super().__init__(f"Sync failed for task {task_id}: {cause}")
    self.task_id = task_id
    self.cause = cause


def invalid_from_validation(exc: ValidationError) -> InvalidArgument:
  errs = exc.errors()
  if not errs:
    return InvalidArgument(str(exc))
  first = errs[0]
  loc = ".".join(str(p) for p in first.get("loc") or ()) or "value"
  return InvalidArgument(f"{loc}: {first.get('msg') or 'invalid'}")
