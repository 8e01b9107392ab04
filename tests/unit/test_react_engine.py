import asyncio
import json

import pytest

from kirapilot.errors import ConfigError, NetworkError
from kirapilot.interactions.logger import InteractionLogger
from kirapilot.orchestrator.chain import ReActChain, StepType
from kirapilot.orchestrator.engine import NO_ANSWER_FALLBACK, ReActConfig, ReActEngine
from kirapilot.retry import RetryPolicy
from kirapilot.tools.registry import ToolRegistry
from kirapilot.tools.tasks import register_task_tools
from kirapilot.tools.types import PermissionLevel, ToolContext

TASKS = [
    {"id": "t1", "title": "Write report", "status": "pending"},
    {"id": "t2", "title": "Fix bug", "status": "in_progress"},
    {"id": "t3", "title": "Email Sam", "status": "completed"},
]

GET_TASKS_TURN = 'Thought: I need today\'s tasks.\nAction: get_tasks: {"date": "2024-05-01"}\nPAUSE'


def _engine(max_iterations: int = 5, **kwargs) -> ReActEngine:
    kwargs.setdefault("retry", RetryPolicy(max_attempts=1, initial_delay=0, jitter=False))
    return ReActEngine(ReActConfig(max_iterations=max_iterations, **kwargs))


def _registry(repo, *permissions: PermissionLevel) -> ToolRegistry:
    registry = ToolRegistry(permissions or (PermissionLevel.FULL_ACCESS,))
    register_task_tools(registry, repo)
    return registry


def _steps(chain: ReActChain) -> list[StepType]:
    return [step.step_type for step in chain.steps]


def assert_chain_invariants(chain: ReActChain, max_iterations: int) -> None:
    timestamps = [step.timestamp for step in chain.steps]
    assert timestamps == sorted(timestamps)
    assert chain.iterations <= max_iterations
    for index, step in enumerate(chain.steps):
        if step.step_type is StepType.ACTION:
            following = chain.steps[index + 1]
            assert following.step_type is StepType.OBSERVATION
            assert following.tool_result is not None
            assert following.metadata["call_id"] == step.tool_call.id
    if chain.completed:
        assert chain.final_response.strip()


def test_config_clamps_values() -> None:
    config = ReActConfig(max_iterations=50, temperature=2.0, max_tokens=99999)
    assert config.max_iterations == 10
    assert config.temperature == 0.7
    assert config.max_tokens == 2048
    assert ReActConfig(max_iterations=0).max_iterations == 1
    options = config.generation_options()
    assert options.stop_sequences == ["PAUSE", "\nObservation:"]


@pytest.mark.asyncio
async def test_empty_task_list_answer(scripted_provider, task_repo) -> None:
    provider = scripted_provider(
        [GET_TASKS_TURN, "Answer: Here are your tasks for today: you have none scheduled."]
    )
    engine = _engine()

    ctx = ToolContext(user_message="list tasks for today")

    chain = await engine.process_request(
        "list tasks for today", provider, _registry(task_repo()), context=ctx
    )

    assert chain.completed is True
    actions = [step for step in chain.steps if step.step_type is StepType.ACTION]
    assert [step.tool_call.name for step in actions] == ["get_tasks"]
    assert chain.final_response.startswith("Here are your tasks")
    assert len(chain.final_response) < 300
    lowered = chain.final_response.lower()
    assert not any(word in lowered for word in ("analysis", "recommendations", "workflow"))
    assert "Observation: No tasks found" in provider.prompts[1]
    assert provider.prompts[0].endswith("Question: list tasks for today")
    assert_chain_invariants(chain, 5)


@pytest.mark.asyncio
async def test_degraded_answer_from_empty_task_list(scripted_provider, task_repo) -> None:
    provider = scripted_provider([GET_TASKS_TURN, "Thought: Let me think about that more."])
    engine = _engine(max_iterations=2)

    chain = await engine.process_request("list tasks for today", provider, _registry(task_repo()))

    assert chain.completed is True
    assert chain.metadata["degraded"] is True
    assert chain.final_response == "You have no tasks matching that request."
    assert chain.steps[-1].metadata == {"degraded": True}


@pytest.mark.asyncio
async def test_task_list_grouped_by_status(scripted_provider, task_repo) -> None:
    provider = scripted_provider([GET_TASKS_TURN, "Thought: I have what I need."])
    engine = _engine(max_iterations=2)

    chain = await engine.process_request(
        "list tasks for today", provider, _registry(task_repo(TASKS))
    )

    assert chain.completed is True
    assert chain.iterations <= 2
    for task in TASKS:
        assert task["title"] in chain.final_response
    assert "Pending: Write report" in chain.final_response
    assert "In Progress: Fix bug" in chain.final_response
    assert "Completed: Email Sam" in chain.final_response
    observation = chain.last_observation()
    assert observation is not None
    assert observation.content == (
        'Found 3 tasks: Pending (1): "Write report" ; In Progress (1): "Fix bug" ; '
        'Completed (1): "Email Sam"'
    )
    assert_chain_invariants(chain, 2)


@pytest.mark.asyncio
async def test_create_task_confirmation(scripted_provider, task_repo) -> None:
    repo = task_repo()
    provider = scripted_provider(
        [
            'Thought: The user wants a new task.\nAction: create_task: {"title": "Review PR"}\n'
            "PAUSE",
            'Answer: Created task "Review PR".',
        ]
    )
    engine = _engine()

    chain = await engine.process_request("create task: Review PR", provider, _registry(repo))

    assert chain.completed is True
    assert chain.final_response.startswith("Created task")
    assert "Review PR" in chain.final_response
    assert len(chain.final_response) < 200
    actions = [step for step in chain.steps if step.step_type is StepType.ACTION]
    assert len(actions) == 1
    assert actions[0].tool_call.name == "create_task"
    assert repo.tasks["t1"]["title"] == "Review PR"
    assert "Reply with Answer: confirming it" in provider.prompts[1]

    debug = engine.extract_debug_info(chain)
    assert debug.successful_tools == 1
    assert debug.failed_tools == 0
    assert debug.tool_success_rate == 1.0
    assert debug.completion_status == "completed_successfully"
    assert debug.reasoning_quality_score == 90.0
    assert debug.step_breakdown["final_answer"] == 1
    assert_chain_invariants(chain, 5)


@pytest.mark.asyncio
async def test_iteration_limit_with_thoughts_only(scripted_provider) -> None:
    provider = scripted_provider([f"Thought: still thinking ({i})" for i in range(5)])
    engine = _engine(max_iterations=5)

    chain = await engine.process_request("plan my week", provider)

    assert chain.iterations == 5
    assert chain.completed is True
    assert chain.final_response == "still thinking (4)"
    assert _steps(chain) == [StepType.THOUGHT] * 5 + [StepType.FINAL_ANSWER]
    assert len(provider.prompts) == 5
    assert "Continue. Call a tool with Action:" in provider.prompts[1]
    assert_chain_invariants(chain, 5)


@pytest.mark.asyncio
async def test_iteration_limit_with_silent_model(scripted_provider) -> None:
    provider = scripted_provider(["", ""])
    chain = await _engine(max_iterations=2).process_request("hello", provider)
    assert chain.completed is True
    assert chain.final_response == NO_ANSWER_FALLBACK


@pytest.mark.asyncio
async def test_permission_denied_observation_continues_chain(scripted_provider, task_repo) -> None:
    repo = task_repo()
    provider = scripted_provider(
        [
            'Thought: Add it.\nAction: create_task: {"title": "Review PR"}\nPAUSE',
            "Answer: I can't create tasks with your current permissions.",
        ]
    )
    registry = _registry(repo, PermissionLevel.READ_ONLY)

    chain = await _engine().process_request("create task: Review PR", provider, registry)

    observation = chain.last_observation()
    assert observation is not None
    assert observation.tool_result is not None
    assert observation.tool_result.success is False
    assert "PermissionDenied" in (observation.tool_result.error or "")
    assert observation.content.startswith("Error: PermissionDenied")
    assert chain.completed is True
    assert repo.tasks == {}
    assert "The tool failed." in provider.prompts[1]
    debug = _engine().extract_debug_info(chain)
    assert debug.failed_tools == 1
    assert_chain_invariants(chain, 5)


@pytest.mark.asyncio
async def test_malformed_action_gets_one_repair_turn(scripted_provider, task_repo) -> None:
    provider = scripted_provider(
        [
            "Thought: look up\nAction: get_tasks: {status: pending",
            'Action: get_tasks: {"status": "pending"}\nPAUSE',
            "Answer: Nothing pending.",
        ]
    )

    chain = await _engine().process_request("pending tasks?", provider, _registry(task_repo()))

    assert chain.completed is True
    errors = [step for step in chain.steps if step.step_type is StepType.ERROR]
    assert len(errors) == 1
    assert errors[0].content.startswith("malformed action: arguments are not valid JSON")
    assert "Your last Action could not be parsed." in provider.prompts[1]
    assert chain.iterations == 2
    status = ReActEngine().extract_debug_info(chain).completion_status
    assert status == "completed_with_errors"


@pytest.mark.asyncio
async def test_second_malformed_action_is_demoted(scripted_provider) -> None:
    provider = scripted_provider(["Action: get_tasks: [1]", "Action: get_tasks: [2]"])

    chain = await _engine(max_iterations=2).process_request("list", provider)

    assert _steps(chain) == [StepType.ERROR, StepType.THOUGHT, StepType.FINAL_ANSWER]
    assert chain.steps[1].metadata["demoted_action"] == "arguments must be a JSON object"
    assert chain.completed is True


@pytest.mark.asyncio
async def test_action_without_registry(scripted_provider) -> None:
    provider = scripted_provider(["Action: get_tasks: {}\nPAUSE", "Answer: no tools here"])

    chain = await _engine().process_request("list", provider)

    observation = chain.last_observation()
    assert observation is not None
    assert observation.content == "Error: NotFound: no tools are available"
    assert chain.final_response == "no tools here"


@pytest.mark.asyncio
async def test_provider_error_ends_chain(scripted_provider) -> None:
    provider = scripted_provider([ConfigError("Gemini API key not configured")])

    chain = await _engine().process_request("hello", provider)

    assert chain.completed is False
    assert chain.final_response == ConfigError.default_user_message
    last = chain.steps[-1]
    assert last.step_type is StepType.ERROR
    assert last.content == "ConfigError: Gemini API key not configured"
    assert last.metadata["error_code"] == "CONFIGURATION_ERROR"
    assert chain.metadata["error_code"] == "CONFIGURATION_ERROR"
    assert _engine().extract_debug_info(chain).completion_status == "incomplete"


@pytest.mark.asyncio
async def test_retryable_provider_error_is_retried(scripted_provider) -> None:
    provider = scripted_provider([NetworkError("reset"), "Answer: recovered"])
    engine = _engine(retry=RetryPolicy(max_attempts=3, initial_delay=0, jitter=False))

    chain = await engine.process_request("hello", provider)

    assert chain.completed is True
    assert chain.final_response == "recovered"
    assert len(provider.prompts) == 2


@pytest.mark.asyncio
async def test_unexpected_provider_exception_is_classified(scripted_provider) -> None:
    provider = scripted_provider([RuntimeError("segfault-ish")])
    chain = await _engine().process_request("hello", provider)
    assert chain.completed is False
    assert chain.steps[-1].content == "InternalError: RuntimeError: segfault-ish"


@pytest.mark.asyncio
async def test_turn_timeout(scripted_provider) -> None:
    async def slow(prompt: str) -> str:
        await asyncio.sleep(5)
        return "Answer: late"

    provider = scripted_provider([slow])
    engine = _engine(turn_timeout_seconds=0.05)

    chain = await engine.process_request("hello", provider)

    assert chain.completed is False
    assert chain.steps[-1].content.startswith("TimeoutError: turn exceeded")
    assert chain.final_response == "The operation timed out. Please try again."


@pytest.mark.asyncio
async def test_cancellation_marks_chain_aborted(scripted_provider) -> None:
    started = asyncio.Event()

    async def hang(prompt: str) -> str:
        started.set()
        await asyncio.sleep(30)
        return "Answer: never"

    provider = scripted_provider([hang])
    engine = _engine()
    interactions = InteractionLogger()
    chain = engine.create_chain("hello")

    task = asyncio.create_task(engine.run(chain, provider, None, interactions))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert chain.completed is False
    assert chain.metadata["aborted"] is True
    assert chain.steps[-1].step_type is StepType.ERROR
    assert chain.steps[-1].content == "Aborted: request cancelled"
    assert await interactions.get_recent_logs() == []


@pytest.mark.asyncio
async def test_local_provider_gets_tool_hint(scripted_provider, task_repo) -> None:
    provider = scripted_provider(["Answer: ok"], local=True)

    await _engine().process_request("create task: Review PR", provider, _registry(task_repo()))

    assert "Hint: the create_task tool looks relevant" in provider.prompts[0]


@pytest.mark.asyncio
async def test_generation_options_and_metadata(scripted_provider) -> None:
    provider = scripted_provider(["Answer: ok"])
    engine = _engine(temperature=0.2, max_tokens=256)

    chain = await engine.process_request("hello", provider, session_id="sess-1")

    options = provider.options[0]
    assert options.temperature == 0.2
    assert options.max_tokens == 256
    assert options.stop_sequences == ["PAUSE", "\nObservation:"]
    assert chain.metadata["session_id"] == "sess-1"
    assert chain.metadata["turns"] == 1
    assert chain.metadata["input_tokens"] > 0
    assert chain.total_duration_ms is not None
    assert json.loads(json.dumps(chain.to_dict(), default=str))["completed"] is True


@pytest.mark.asyncio
async def test_chain_logging(scripted_provider, task_repo) -> None:
    provider = scripted_provider([GET_TASKS_TURN, "Answer: Here are your tasks: none."])
    interactions = InteractionLogger()
    engine = _engine(detailed_logging=True)

    chain = await engine.process_request(
        "list tasks for today", provider, _registry(task_repo()), interactions
    )

    row = await interactions.get_interaction(chain.id)
    assert row is not None
    assert row["context"]["type"] == "react_chain"
    rows = await interactions.get_recent_logs(limit=50)
    kinds = sorted(r["context"].get("type") for r in rows)
    assert kinds.count("raw_llm_interaction") == 2
    assert kinds.count("react_performance") == 1
    assert kinds.count("react_step") == 0


def test_quality_score_penalizes_errors() -> None:
    engine = ReActEngine()
    chain = ReActChain(user_request="x")
    assert engine.reasoning_quality_score(chain) == 0.0
    chain.add_step(StepType.ERROR, "NetworkError: down")
    chain.finish("Network connection failed.", completed=False)
    assert engine.reasoning_quality_score(chain) == 5.0
