from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import pytest

from kirapilot.config import get_settings
from kirapilot.db.migrations.runner import run_migrations
from kirapilot.errors import InvalidRequestError, NotFoundError, ValidationError
from kirapilot.providers.base import GenerationOptions, ModelInfo, ProviderStatus


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("APP_DB", str(tmp_path / "test.db"))
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    monkeypatch.setenv("LOCAL_MODEL_DIR", str(tmp_path / "models"))
    monkeypatch.setenv("LOCAL_AUTO_DOWNLOAD", "0")
    monkeypatch.setenv("COMPLETIONS_BASE_URL", "")
    monkeypatch.setenv("RETRY_INITIAL_DELAY_SECONDS", "0")
    monkeypatch.setenv("RETRY_JITTER", "0")
    get_settings.cache_clear()
    run_migrations()
    yield
    get_settings.cache_clear()


class ScriptedProvider:
    """Provider double that replays canned responses (or raises canned errors) in order."""

    def __init__(self, responses=(), *, name="cloud", local=False, ready=True):
        self.responses = list(responses)
        self.name = name
        self.local = local
        self.ready = ready
        self.prompts: list[str] = []
        self.options: list[GenerationOptions] = []
        self.initialized = 0
        self.cleaned = 0

    async def generate(self, prompt: str, options: GenerationOptions) -> str:
        self.prompts.append(prompt)
        self.options.append(options)
        if not self.responses:
            raise AssertionError(f"{self.name}: no scripted response left")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item(prompt)
        return item

    def is_ready(self) -> bool:
        return self.ready

    async def status(self) -> ProviderStatus:
        return ProviderStatus.ready() if self.ready else ProviderStatus.unavailable("offline")

    def model_info(self) -> ModelInfo:
        return ModelInfo(id=f"{self.name}-model", name=f"{self.name} model", provider=self.name)

    async def initialize(self) -> None:
        self.initialized += 1

    async def cleanup(self) -> None:
        self.cleaned += 1

    def capabilities(self) -> set[str]:
        return {"text_generation", "offline"} if self.local else {"text_generation"}

    def validate_prompt(self, prompt: str) -> None:
        if not prompt.strip():
            raise InvalidRequestError("Prompt cannot be empty")


class InMemoryTaskRepository:
    def __init__(self, tasks=()):
        self.tasks = {task["id"]: dict(task) for task in tasks}
        self.sessions: dict[str, dict] = {}
        self.filters = []
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryTaskRepository"]:
        self.transactions += 1
        yield self

    async def find_tasks(self, task_filter):
        self.filters.append(task_filter)
        tasks = list(self.tasks.values())
        if task_filter.status:
            tasks = [task for task in tasks if task["status"] in task_filter.status]
        if task_filter.search:
            needle = task_filter.search.lower()
            tasks = [task for task in tasks if needle in task["title"].lower()]
        return tasks[: task_filter.limit] if task_filter.limit else tasks

    async def get_task(self, task_id):
        if task_id not in self.tasks:
            raise NotFoundError(f"task not found: {task_id}")
        return dict(self.tasks[task_id])

    async def create_task(self, request):
        if not request.get("title"):
            raise ValidationError("title cannot be empty", field="title")
        task_id = f"t{len(self.tasks) + 1}"
        task = {
            "id": task_id,
            "title": request["title"],
            "status": request.get("status") or "pending",
            "priority": request.get("priority") or "medium",
            "due_date": request.get("due_date"),
        }
        self.tasks[task_id] = task
        return dict(task)

    async def update_task(self, task_id, patch):
        task = await self.get_task(task_id)
        task.update(patch)
        self.tasks[task_id] = task
        return dict(task)

    async def delete_task(self, task_id):
        await self.get_task(task_id)
        del self.tasks[task_id]

    async def start_timer(self, task_id, notes=""):
        task = await self.get_task(task_id)
        session_id = f"s{len(self.sessions) + 1}"
        self.sessions[session_id] = {
            "id": session_id,
            "task_id": task_id,
            "task_title": task["title"],
            "start_time": datetime.now(UTC).isoformat(),
            "is_active": True,
            "notes": notes,
        }
        return dict(self.sessions[session_id])

    async def stop_timer(self, session_id, notes=None):
        if session_id not in self.sessions:
            raise NotFoundError(f"timer session not found: {session_id}")
        session = self.sessions[session_id]
        session.update({"is_active": False, "duration_seconds": 90})
        return dict(session)

    async def active_timer(self):
        for session in self.sessions.values():
            if session["is_active"]:
                return dict(session)
        return None

    async def time_stats(self, time_range):
        return {
            "start": time_range.start.isoformat(),
            "end": time_range.end.isoformat(),
            "total_seconds": 5400,
            "session_count": 2,
            "average_session_seconds": 2700,
            "tasks_completed": 1,
            "tasks_created": 3,
            "by_task": [],
        }


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def task_repo():
    return InMemoryTaskRepository
