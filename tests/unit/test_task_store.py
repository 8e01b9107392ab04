from datetime import UTC, date, datetime, timedelta

import pytest

from kirapilot.db.task_store import SqliteTaskRepository
from kirapilot.errors import NotFoundError, ValidationError
from kirapilot.tools.repository import TaskFilter, TimeRange


@pytest.fixture
def repo():
    store = SqliteTaskRepository()
    yield store
    store.close()


@pytest.mark.asyncio
async def test_create_and_get_task(repo) -> None:
    task = await repo.create_task(
        {"title": "  Write report ", "priority": "High", "due_date": "2024-05-01", "tags": ["work"]}
    )

    assert task["id"].startswith("task_")
    assert task["title"] == "Write report"
    assert task["status"] == "pending"
    assert task["priority"] == "high"
    assert task["due_date"] == "2024-05-01"
    assert task["tags"] == ["work"]
    assert task["completed_at"] is None
    assert await repo.get_task(task["id"]) == task


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("request_body", "field"),
    [
        ({"title": "   "}, "title"),
        ({"title": "x", "status": "done"}, "status"),
        ({"title": "x", "priority": "critical"}, "priority"),
        ({"title": "x", "due_date": "tomorrow"}, "due_date"),
    ],
)
async def test_create_task_validation(repo, request_body, field) -> None:
    with pytest.raises(ValidationError) as excinfo:
        await repo.create_task(request_body)
    assert excinfo.value.field == field


@pytest.mark.asyncio
async def test_get_missing_task(repo) -> None:
    with pytest.raises(NotFoundError, match="task not found: nope"):
        await repo.get_task("nope")


@pytest.mark.asyncio
async def test_update_task_tracks_completion(repo) -> None:
    task = await repo.create_task({"title": "Fix bug"})

    done = await repo.update_task(task["id"], {"status": "completed"})
    assert done["status"] == "completed"
    assert done["completed_at"] is not None

    reopened = await repo.update_task(task["id"], {"status": "in progress"})
    assert reopened["status"] == "in_progress"
    assert reopened["completed_at"] is None

    with pytest.raises(ValidationError, match="cannot update field: owner"):
        await repo.update_task(task["id"], {"owner": "sam"})
    with pytest.raises(ValidationError, match="title cannot be empty"):
        await repo.update_task(task["id"], {"title": ""})


@pytest.mark.asyncio
async def test_delete_task(repo) -> None:
    task = await repo.create_task({"title": "Temp"})
    await repo.delete_task(task["id"])

    with pytest.raises(NotFoundError):
        await repo.delete_task(task["id"])


@pytest.mark.asyncio
async def test_find_tasks_filters(repo) -> None:
    today = date(2024, 5, 1)
    report = await repo.create_task(
        {"title": "Write report", "due_date": "2024-05-01", "tags": ["Work"]}
    )
    overdue = await repo.create_task({"title": "Pay rent", "due_date": "2024-04-20"})
    await repo.create_task({"title": "Plan trip", "scheduled_date": "2024-05-03"})
    await repo.create_task({"title": "Old thing", "due_date": "2024-04-01", "status": "completed"})

    async def titles(**kwargs) -> list[str]:
        tasks = await repo.find_tasks(TaskFilter(today=today, **kwargs))
        return sorted(task["title"] for task in tasks)

    assert await titles(date="2024-05-01") == ["Write report"]
    assert await titles(overdue=True) == ["Pay rent"]
    assert await titles(this_week=True) == ["Plan trip", "Write report"]
    assert await titles(search="rent") == ["Pay rent"]
    assert await titles(status=["completed"]) == ["Old thing"]
    assert await titles(tags=["work"]) == ["Write report"]
    assert len(await repo.find_tasks(TaskFilter(limit=2))) == 2
    assert report["id"] != overdue["id"]


@pytest.mark.asyncio
async def test_timer_lifecycle(repo) -> None:
    task = await repo.create_task({"title": "Deep work"})

    session = await repo.start_timer(task["id"], notes="focus")
    assert session["is_active"] is True
    assert session["task_title"] == "Deep work"
    assert (await repo.active_timer())["id"] == session["id"]

    with pytest.raises(ValidationError, match='already running for "Deep work"'):
        await repo.start_timer(task["id"])

    stopped = await repo.stop_timer(session["id"], notes="done")
    assert stopped["is_active"] is False
    assert stopped["duration_seconds"] >= 0
    assert stopped["notes"] == "done"
    assert stopped["task_title"] == "Deep work"
    assert await repo.active_timer() is None

    with pytest.raises(ValidationError, match="already stopped"):
        await repo.stop_timer(session["id"])
    with pytest.raises(NotFoundError, match="timer session not found"):
        await repo.stop_timer("ses_missing")


@pytest.mark.asyncio
async def test_time_stats(repo) -> None:
    first = await repo.create_task({"title": "A"})
    second = await repo.create_task({"title": "B", "status": "completed"})
    session = await repo.start_timer(first["id"])
    await repo.stop_timer(session["id"])
    await repo.start_timer(second["id"])

    now = datetime.now(UTC)
    stats = await repo.time_stats(TimeRange(now - timedelta(hours=1), now + timedelta(hours=1)))

    assert stats["session_count"] == 2
    assert stats["tasks_created"] == 2
    assert stats["tasks_completed"] == 1
    assert {entry["title"] for entry in stats["by_task"]} == {"A", "B"}
    assert stats["total_seconds"] >= 0

    empty = await repo.time_stats(
        TimeRange(now - timedelta(days=3), now - timedelta(days=2))
    )
    assert empty["session_count"] == 0
    assert empty["average_session_seconds"] == 0


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(repo) -> None:
    with pytest.raises(RuntimeError, match="boom"):
        async with repo.transaction():
            await repo.create_task({"title": "Never saved"})
            raise RuntimeError("boom")

    assert await repo.find_tasks(TaskFilter()) == []


@pytest.mark.asyncio
async def test_transaction_commits(repo) -> None:
    async with repo.transaction():
        task = await repo.create_task({"title": "Kept"})
        await repo.update_task(task["id"], {"priority": "urgent"})

    assert (await repo.get_task(task["id"]))["priority"] == "urgent"
