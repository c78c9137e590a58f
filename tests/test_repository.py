from __future__ import annotations

import asyncio

import pytest

from tasksync.errors import AdapterError, InvalidArgument, NotFound, SyncFailed
from tasksync.events import MutationApplied, MutationCommitted, MutationRolledBack, TaskCreated, TaskDeleted
from tasksync.query import TaskFilter, TaskSort

from conftest import seed_task, utc


@pytest.mark.anyio
async def test_create_task_waits_for_store_and_caches(repo, tasks_store) -> None:
  seen: list[object] = []
  repo.bus.subscribe(TaskCreated, seen.append)

  t = await seed_task(repo, assignee="user-2", tags=["docs", "release", "docs"])

  assert t.id in repo
  assert repo.get(t.id) == t
  assert t.createdBy == "user-1"
  assert t.tags == ("docs", "release")
  assert t.history == () and t.comments == () and t.attachments == ()
  assert t.createdAt == t.updatedAt
  assert [type(e) for e in seen] == [TaskCreated]
  assert len(tasks_store.inner) == 1


@pytest.mark.anyio
async def test_create_task_rejects_bad_input_without_store_call(repo, tasks_store) -> None:
  with pytest.raises(InvalidArgument):
    await repo.create_task({"title": "   "}, "user-1")
  with pytest.raises(InvalidArgument):
    await repo.create_task({"title": "x", "priority": "urgent"}, "user-1")
  with pytest.raises(InvalidArgument):
    await repo.create_task({"title": "x"}, "")
  assert tasks_store.calls == []
  assert len(repo) == 0


@pytest.mark.anyio
async def test_create_task_failure_leaves_cache_untouched(repo, tasks_store) -> None:
  tasks_store.fail_next("create")
  with pytest.raises(AdapterError):
    await seed_task(repo)
  assert len(repo) == 0


@pytest.mark.anyio
async def test_mutate_success_commits_store_state(repo, tasks_store) -> None:
  t = await seed_task(repo)

  committed = await repo.mutate(t.id, {"status": "inProgress", "progress": 20}, "user-1")

  stored = await tasks_store.inner.fetch(t.id)
  assert committed.status == "inProgress"
  assert committed.progress == 20
  assert stored["status"] == "inProgress"
  assert committed.updatedAt > t.updatedAt
  assert repo.get(t.id) == committed
  assert not repo.is_pending(t.id)


@pytest.mark.anyio
async def test_mutate_is_visible_before_store_confirms(repo, tasks_store) -> None:
  t = await seed_task(repo)
  tasks_store.hold()

  pending = asyncio.create_task(repo.mutate(t.id, {"status": "review"}, "user-1"))
  await asyncio.sleep(0)

  assert repo.get(t.id).status == "review"
  assert repo.is_pending(t.id)
  assert (await tasks_store.inner.fetch(t.id))["status"] == "new"

  tasks_store.release()
  committed = await pending
  assert committed.status == "review"
  assert not repo.is_pending(t.id)


@pytest.mark.anyio
async def test_mutate_failure_restores_exact_snapshot(repo, tasks_store) -> None:
  t = await seed_task(repo, assignee="user-2")
  before = repo.get(t.id)
  rolled: list[MutationRolledBack] = []
  repo.bus.subscribe(MutationRolledBack, rolled.append)
  tasks_store.fail_next("patch")

  with pytest.raises(SyncFailed) as ei:
    await repo.mutate(t.id, {"status": "done", "progress": 100, "assignee": "user-3"}, "user-1")

  assert ei.value.task_id == t.id
  assert isinstance(ei.value.cause, AdapterError)
  assert repo.get(t.id) == before
  assert repo.get(t.id).history == ()
  assert [r.task_id for r in rolled] == [t.id]
  assert not repo.is_pending(t.id)


@pytest.mark.anyio
async def test_mutate_emits_applied_then_committed(repo) -> None:
  t = await seed_task(repo)
  seen: list[object] = []
  repo.bus.subscribe(MutationApplied, seen.append)
  repo.bus.subscribe(MutationCommitted, seen.append)

  await repo.mutate(t.id, {"priority": "high"}, "user-1")

  assert [type(e).__name__ for e in seen] == ["MutationApplied", "MutationApplied", "MutationCommitted"]
  assert [e.optimistic for e in seen[:2]] == [True, False]
  committed = seen[2]
  assert committed.patch == {"priority": "high"}
  assert committed.before.priority == "medium"
  assert committed.after.priority == "high"


@pytest.mark.anyio
async def test_mutate_unknown_task_is_not_found(repo, tasks_store) -> None:
  with pytest.raises(NotFound) as ei:
    await repo.mutate("missing", {"status": "done"}, "user-1")
  assert ei.value.entity_id == "missing"
  assert tasks_store.patches() == []


@pytest.mark.anyio
@pytest.mark.parametrize(
  "patch",
  [
    {},
    {"history": []},
    {"progress": 101},
    {"progress": -1},
    {"status": "blocked"},
    {"status": None},
    {"title": "  "},
    {"estimatedTime": -2},
  ],
)
async def test_mutate_invalid_patch_changes_nothing(repo, tasks_store, patch) -> None:
  t = await seed_task(repo)
  calls_before = list(tasks_store.calls)

  with pytest.raises(InvalidArgument):
    await repo.mutate(t.id, patch, "user-1")

  assert repo.get(t.id) == t
  assert tasks_store.calls == calls_before


@pytest.mark.anyio
async def test_clearing_optional_fields(repo) -> None:
  t = await seed_task(repo, assignee="user-2", deadline="2026-11-01T12:00:00Z")

  out = await repo.mutate(t.id, {"assignee": None, "deadline": None}, "user-1")

  assert out.assignee == ""
  assert out.deadline is None


@pytest.mark.anyio
async def test_history_written_on_commit(repo, tasks_store) -> None:
  t = await seed_task(repo)

  out = await repo.mutate(t.id, {"progress": 40, "status": "inProgress"}, "user-7")

  assert [(h.field, h.oldValue, h.newValue) for h in out.history] == [
    ("status", "new", "inProgress"),
    ("progress", 0, 40),
  ]
  assert {h.changedBy for h in out.history} == {"user-7"}
  assert len({h.changedAt for h in out.history}) == 1
  stored = await tasks_store.inner.fetch(t.id)
  assert [h["field"] for h in stored["history"]] == ["status", "progress"]


@pytest.mark.anyio
async def test_noop_patch_commits_without_history(repo, tasks_store) -> None:
  t = await seed_task(repo, priority="high")

  out = await repo.mutate(t.id, {"priority": "high"}, "user-1")

  assert out.history == ()
  assert len(tasks_store.patches()) == 1


@pytest.mark.anyio
async def test_history_write_failure_keeps_commit(repo, tasks_store) -> None:
  t = await seed_task(repo)
  original_patch = tasks_store.patch
  calls = 0

  async def patch_then_fail(doc_id, fields):
    nonlocal calls
    calls += 1
    if "history" in fields:
      raise AdapterError("history write refused")
    return await original_patch(doc_id, fields)

  tasks_store.patch = patch_then_fail

  out = await repo.mutate(t.id, {"title": "Ship it"}, "user-1")

  assert out.title == "Ship it"
  assert [h.field for h in out.history] == ["title"]
  assert (await tasks_store.inner.fetch(t.id))["history"] == []
  assert calls == 2


@pytest.mark.anyio
async def test_history_is_ordered_across_mutations(repo) -> None:
  t = await seed_task(repo)
  await repo.mutate(t.id, {"status": "inProgress"}, "user-1")
  await repo.mutate(t.id, {"status": "review"}, "user-2")
  out = await repo.mutate(t.id, {"status": "done", "progress": 100}, "user-1")

  stamps = [h.changedAt for h in out.history]
  assert stamps == sorted(stamps)
  assert [h.newValue for h in out.history if h.field == "status"] == ["inProgress", "review", "done"]


@pytest.mark.anyio
async def test_update_helpers_route_through_mutate(repo) -> None:
  t = await seed_task(repo)
  await repo.update_status(t.id, "review", "user-1")
  await repo.update_assignee(t.id, "user-4", "user-1")
  out = await repo.update_progress(t.id, 75, "user-1")
  assert (out.status, out.assignee, out.progress) == ("review", "user-4", 75)


@pytest.mark.anyio
async def test_delete_is_pessimistic(repo, tasks_store) -> None:
  t = await seed_task(repo)
  deleted: list[TaskDeleted] = []
  repo.bus.subscribe(TaskDeleted, deleted.append)

  tasks_store.fail_next("remove")
  with pytest.raises(SyncFailed):
    await repo.delete_task(t.id)
  assert t.id in repo
  assert deleted == []

  await repo.delete_task(t.id)
  assert t.id not in repo
  assert [d.task_id for d in deleted] == [t.id]
  with pytest.raises(NotFound):
    repo.get(t.id)


@pytest.mark.anyio
async def test_delete_during_inflight_patch_skips_rollback(repo, tasks_store) -> None:
  t = await seed_task(repo)
  tasks_store.hold()
  pending = asyncio.create_task(repo.mutate(t.id, {"status": "done"}, "user-1"))
  await asyncio.sleep(0)

  # deleted while the patch is parked; the store then rejects the patch
  await repo.delete_task(t.id)
  tasks_store.release()

  with pytest.raises(SyncFailed):
    await pending
  assert t.id not in repo


@pytest.mark.anyio
async def test_concurrent_mutations_are_not_serialized(repo, tasks_store) -> None:
  """A rollback restores the snapshot its own mutation captured."""
  t = await seed_task(repo)
  tasks_store.hold()
  first = asyncio.create_task(repo.mutate(t.id, {"status": "inProgress"}, "user-1"))
  await asyncio.sleep(0)
  second = asyncio.create_task(repo.mutate(t.id, {"progress": 50}, "user-1"))
  await asyncio.sleep(0)
  assert repo.get(t.id).status == "inProgress"
  assert repo.get(t.id).progress == 50

  tasks_store.fail_next("patch")
  tasks_store.release()

  results = await asyncio.gather(first, second, return_exceptions=True)
  assert isinstance(results[0], SyncFailed)
  assert results[1].progress == 50
  assert repo.get(t.id).status == "new"
  assert repo.get(t.id).progress == 50


@pytest.mark.anyio
async def test_comments_and_attachments_append(repo, tasks_store) -> None:
  t = await seed_task(repo)

  c = await repo.add_comment(t.id, "  looks good  ", "user-2", mentions=["user-1", "user-1", "user-3"])
  a = await repo.add_attachment(t.id, name="mockups.pdf", url="https://files.example/mockups.pdf", acting_user="user-2", size=10)

  cached = repo.get(t.id)
  assert c.content == "looks good"
  assert c.mentions == ("user-1", "user-3")
  assert [x.id for x in cached.comments] == [c.id]
  assert [x.id for x in cached.attachments] == [a.id]
  stored = await tasks_store.inner.fetch(t.id)
  assert stored["comments"][0]["createdBy"] == "user-2"
  assert stored["attachments"][0]["name"] == "mockups.pdf"


@pytest.mark.anyio
async def test_comment_validation(repo) -> None:
  t = await seed_task(repo)
  with pytest.raises(InvalidArgument):
    await repo.add_comment(t.id, "   ", "user-1")
  with pytest.raises(NotFound):
    await repo.add_comment("missing", "hello", "user-1")
  with pytest.raises(InvalidArgument):
    await repo.add_attachment(t.id, name="x", url="u", acting_user="user-1", size=-1)


@pytest.mark.anyio
async def test_comment_on_task_deleted_remotely_evicts(repo, tasks_store) -> None:
  t = await seed_task(repo)
  await tasks_store.inner.remove(t.id)

  with pytest.raises(NotFound):
    await repo.add_comment(t.id, "hello", "user-1")
  assert t.id not in repo


@pytest.mark.anyio
async def test_query_filters_and_ties_break_by_id(repo) -> None:
  a = await seed_task(repo, title="Alpha", assignee="user-2", priority="high", project="web", tags=["ui"])
  b = await seed_task(repo, title="Beta", assignee="user-2", priority="high", project="web")
  c = await seed_task(repo, title="Gamma", assignee="user-3", priority="low", project="api", tags=["ui"])

  by_priority = await repo.query(sort={"field": "priority", "direction": "asc"})
  assert [t.id for t in by_priority[:2]] == sorted([a.id, b.id])
  assert by_priority[2].id == c.id

  assert {t.id for t in await repo.query({"assignee": "user-2"})} == {a.id, b.id}
  assert [t.id for t in await repo.query({"tags": ["ui"], "project": "api"})] == [c.id]
  assert [t.id for t in await repo.query({"search": "alp"})] == [a.id]
  assert [t.id for t in await repo.tasks_by_project("api")] == [c.id]
  assert {t.id for t in await repo.tasks_by_assignee("user-2")} == {a.id, b.id}

  limited = await repo.query(sort={"field": "priority", "direction": "desc"}, limit=1)
  assert [t.id for t in limited] == [c.id]


@pytest.mark.anyio
async def test_query_rejects_bad_arguments(repo) -> None:
  with pytest.raises(InvalidArgument):
    await repo.query({"colour": "red"})
  with pytest.raises(InvalidArgument):
    await repo.query(sort={"field": "nope"})
  with pytest.raises(InvalidArgument):
    await repo.query(limit=-1)


@pytest.mark.anyio
async def test_full_reload_evicts_remote_deletes_but_keeps_pending(repo, tasks_store) -> None:
  gone = await seed_task(repo, title="Gone")
  kept = await seed_task(repo, title="Kept")
  await tasks_store.inner.remove(gone.id)

  tasks_store.hold()
  pending = asyncio.create_task(repo.mutate(kept.id, {"progress": 10}, "user-1"))
  await asyncio.sleep(0)

  docs = await repo.load()

  assert gone.id not in repo
  assert [t.id for t in docs] == [kept.id]
  # the optimistic edit survives the reload
  assert repo.get(kept.id).progress == 10

  tasks_store.release()
  await pending


@pytest.mark.anyio
async def test_refresh_picks_up_remote_edit(repo, tasks_store) -> None:
  t = await seed_task(repo)
  await tasks_store.inner.patch(t.id, {"title": "Edited elsewhere"})

  fresh = await repo.refresh(t.id)

  assert fresh.title == "Edited elsewhere"
  assert repo.get(t.id).title == "Edited elsewhere"


@pytest.mark.anyio
async def test_overdue_and_due_today(repo) -> None:
  now = utc(2026, 10, 19, 15, 0)
  late = await seed_task(repo, title="Late", deadline=utc(2026, 10, 18, 9, 0))
  today = await seed_task(repo, title="Today", deadline=utc(2026, 10, 19, 20, 0))
  await seed_task(repo, title="Finished", status="done", deadline=utc(2026, 10, 17, 9, 0))
  await seed_task(repo, title="Later", deadline=utc(2026, 10, 25, 9, 0))
  await seed_task(repo, title="Undated")

  assert [t.id for t in await repo.overdue_tasks(now)] == [late.id]
  assert [t.id for t in await repo.tasks_due_today(now)] == [today.id]


@pytest.mark.anyio
async def test_all_reads_cache_only(repo, tasks_store) -> None:
  a = await seed_task(repo, title="b-task", priority="low")
  b = await seed_task(repo, title="a-task", priority="critical")
  calls = len(tasks_store.calls)

  out = repo.all(TaskFilter(priority=("low", "critical")), TaskSort(field="title", direction="asc"))

  assert [t.id for t in out] == [b.id, a.id]
  assert len(tasks_store.calls) == calls


@pytest.mark.anyio
async def test_closed_repository_rejects_writes(repo) -> None:
  t = await seed_task(repo)
  await repo.close()

  assert repo.closed
  assert len(repo) == 0
  with pytest.raises(Exception, match="closed"):
    await repo.mutate(t.id, {"status": "done"}, "user-1")


@pytest.mark.anyio
async def test_single_field_change_yields_single_history_entry(repo) -> None:
  t = await seed_task(repo, status="new", progress=0)

  out = await repo.mutate(t.id, {"status": "inProgress"}, "user-1")

  (entry,) = out.history
  assert (entry.field, entry.oldValue, entry.newValue) == ("status", "new", "inProgress")


@pytest.mark.anyio
async def test_same_status_patch_succeeds_without_history(repo) -> None:
  t = await seed_task(repo, status="review")
  rolled: list[MutationRolledBack] = []
  repo.bus.subscribe(MutationRolledBack, rolled.append)

  out = await repo.mutate(t.id, {"status": "review"}, "user-1")

  assert out.status == "review"
  assert out.history == ()
  assert rolled == []


@pytest.mark.anyio
async def test_create_not_cached_until_store_confirms(repo, tasks_store) -> None:
  snapshots: list[int] = []
  repo.views.subscribe(len, snapshots.append)
  tasks_store.hold()

  pending = asyncio.create_task(seed_task(repo))
  await asyncio.sleep(0)
  assert len(repo) == 0
  assert snapshots == []

  tasks_store.release()
  t = await pending
  assert t.id in repo
  assert snapshots == [1]


@pytest.mark.anyio
async def test_limited_title_query_matches_unlimited_order(repo) -> None:
  await seed_task(repo, title="apple")
  await seed_task(repo, title="Banana")
  by_title = {"field": "title", "direction": "asc"}

  full = await repo.query(sort=by_title)
  first = await repo.query(sort=by_title, limit=1)

  assert [t.title for t in full] == ["apple", "Banana"]
  assert [t.title for t in first] == ["apple"]


@pytest.mark.anyio
async def test_limited_deadline_query_matches_unlimited_order(repo) -> None:
  await seed_task(repo, title="earlier", deadline="2026-11-01T10:00:00Z")
  await seed_task(repo, title="later", deadline="2026-11-01T10:00:00.500000Z")
  by_deadline = {"field": "deadline", "direction": "asc"}

  full = await repo.query(sort=by_deadline)
  first = await repo.query(sort=by_deadline, limit=1)

  assert [t.title for t in full] == ["earlier", "later"]
  assert [t.title for t in first] == ["earlier"]


@pytest.mark.anyio
async def test_malformed_patch_reply_does_not_roll_back(repo, tasks_store) -> None:
  t = await seed_task(repo)
  rolled: list[MutationRolledBack] = []
  repo.bus.subscribe(MutationRolledBack, rolled.append)
  original_patch = tasks_store.patch

  async def garbled_reply(doc_id, fields):
    doc = await original_patch(doc_id, fields)
    return {**doc, "progress": 500}

  tasks_store.patch = garbled_reply

  with pytest.raises(AdapterError):
    await repo.mutate(t.id, {"status": "review"}, "user-1")

  assert rolled == []
  assert (await tasks_store.inner.fetch(t.id))["status"] == "review"
  assert repo.get(t.id).status == "review"
  assert not repo.is_pending(t.id)
