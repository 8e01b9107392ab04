import pytest

from kirapilot.config import get_settings
from kirapilot.errors import InvalidRequestError, NetworkError
from kirapilot.orchestrator.chain import StepType
from kirapilot.service import AgentService

CREATE_TURN = 'Thought: Add it.\nAction: create_task: {"title": "Write report"}\nPAUSE'
START_TURN = "Thought: Start the timer on that task.\nAction: start_timer: {}\nPAUSE"


def _observations(chain):
    return [step for step in chain.steps if step.step_type is StepType.OBSERVATION]


@pytest.mark.asyncio
async def test_session_keeps_recent_task_between_requests(scripted_provider) -> None:
    provider = scripted_provider(
        [
            CREATE_TURN,
            'Answer: Created "Write report".',
            START_TURN,
            'Answer: Timer started for "Write report".',
        ],
        name="local",
        local=True,
    )

    async with AgentService(providers={"local": provider}) as service:
        first = await service.ask("add write report", session_id="s1")
        second = await service.ask("start a timer on it", session_id="s1")

        assert first.completed is True
        assert second.completed is True
        observation = _observations(second)[0]
        assert observation.tool_result.success is True
        assert observation.content.startswith('Started timer for "Write report"')
        active = await service.repository.active_timer()
        assert active["task_title"] == "Write report"

        ctx = service.session_context("s1", "next")
        assert ctx.active_timer_session_id == active["id"]
        assert ctx.conversation_history[:2] == [
            "user: add write report",
            'assistant: Created "Write report".',
        ]
        assert len(ctx.conversation_history) == 4

    assert provider.cleaned == 1


@pytest.mark.asyncio
async def test_new_session_has_no_task_focus(scripted_provider) -> None:
    provider = scripted_provider(
        [
            CREATE_TURN,
            'Answer: Created "Write report".',
            START_TURN,
            "Answer: Which task should I time?",
        ],
        name="local",
        local=True,
    )

    async with AgentService(providers={"local": provider}) as service:
        await service.ask("add write report", session_id="s1")
        chain = await service.ask("start a timer on it", session_id="s2")

        observation = _observations(chain)[0]
        assert observation.tool_result.success is False
        assert "missing required field: task_id" in observation.content
        assert await service.repository.active_timer() is None


@pytest.mark.asyncio
async def test_failover_to_cloud_provider(monkeypatch, scripted_provider) -> None:
    monkeypatch.setenv("MAX_CONSECUTIVE_FAILURES", "1")
    get_settings.cache_clear()
    local = scripted_provider(
        [NetworkError("connection reset")] * 3, name="local", local=True
    )
    cloud = scripted_provider(["Answer: Hello from the cloud."], name="gemini")

    async with AgentService(providers={"local": local, "gemini": cloud}) as service:
        chain = await service.ask("hello")

        assert chain.completed is True
        assert chain.final_response == "Hello from the cloud."
        assert service.manager.active_provider == "gemini"
        report = service.manager.health_report()
        assert report["local"]["consecutive_failures"] >= 1
        assert report["gemini"]["successful_requests"] == 1
        assert len(local.prompts) == 1


@pytest.mark.asyncio
async def test_status_and_request_overrides(scripted_provider) -> None:
    provider = scripted_provider(["Thought: hmm", "Thought: still hmm"], name="local", local=True)

    async with AgentService(providers={"local": provider}) as service:
        status = await service.status()
        assert status["active_provider"] == "local"
        assert status["permissions"] == ["ModifyTasks", "ReadOnly", "TimerControl"]
        assert "create_task" in status["tools"]

        chain = await service.ask("plan", max_iterations=2, permissions="ReadOnly")
        assert chain.iterations == 2
        assert service.engine.max_iterations == 5

        with pytest.raises(InvalidRequestError):
            await service.ask("   ")
