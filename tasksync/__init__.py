from __future__ import annotations

from tasksync.errors import AdapterError, InvalidArgument, NotFound, SyncFailed, TaskSyncError
from tasksync.models import Notification, Task, TaskAttachment, TaskComment, TaskHistoryEntry

__all__ = [
  "AdapterError",
  "InvalidArgument",
  "NotFound",
  "Notification",
  "SyncFailed",
  "Task",
  "TaskAttachment",
  "TaskComment",
  "TaskHistoryEntry",
  "TaskSyncError",
]

__version__ = "0.1.0"
