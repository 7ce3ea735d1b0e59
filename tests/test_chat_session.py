import asyncio
from typing import Any, Sequence

import pytest

from toolchat.chat.session import Chat, JobInfo
from toolchat.chat.turn_runner import TurnOptions
from toolchat.config.schema import Config
from toolchat.context.message import ChatMessage, MessageRole
from toolchat.context.parts import FunctionCallPart, FunctionResponsePart, TextPart
from toolchat.errors import TransientApiError, TurnInterruptedError
from toolchat.providers.base import GenerationConfig, LLMProvider, LLMResponse
from toolchat.providers.credentials import RoundRobinRotation
from toolchat.providers.resilient import ResilientClient
from toolchat.status import ApiErrorRecord
from toolchat.tools.base import Tool
from toolchat.tools.prompter import AutoApprovePrompter
from toolchat.tools.registry import ToolRegistry


class GatedProvider(LLMProvider):
    """Blocks every call until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.calls = 0

    async def generate(self, contents: Sequence[ChatMessage], config: GenerationConfig, api_key: str) -> LLMResponse:
        self.calls += 1
        self.entered.set()
        await self.gate.wait()
        return LLMResponse(content=[TextPart("pong")])


class OverloadedProvider(LLMProvider):
    def __init__(self):
        super().__init__()
        self.calls = 0

    async def generate(self, contents, config, api_key):
        self.calls += 1
        raise TransientApiError("503", status_code=503)


def _chat(provider: LLMProvider, **retry) -> Chat:
    config = Config()
    for key, value in retry.items():
        setattr(config.retry, key, value)
    return Chat(
        client=ResilientClient(provider, RoundRobinRotation(["k-000001"]), config.retry),
        registry=ToolRegistry(audit=False),
        prompter=AutoApprovePrompter(),
        options=TurnOptions(model="fake-model"),
    )


@pytest.mark.asyncio
async def test_second_send_while_busy_is_ignored():
    provider = GatedProvider()
    chat = _chat(provider)

    first = asyncio.create_task(chat.send_text("ping"))
    await provider.entered.wait()
    assert chat.is_busy

    snapshot = [m.id for m in chat.context.get_context()]
    second = await chat.send_text("are you there?")

    assert second is None
    assert [m.id for m in chat.context.get_context()] == snapshot
    assert provider.calls == 1

    provider.gate.set()
    result = await first
    assert result.text == "pong"
    assert not chat.is_busy
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_kill_interrupts_backoff():
    provider = OverloadedProvider()
    chat = _chat(provider, initial_delay_s=30.0, max_delay_s=30.0, max_jitter_s=0.0)

    task = asyncio.create_task(chat.send_text("hello"))
    while provider.calls == 0:
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)
    chat.kill()

    with pytest.raises(TurnInterruptedError):
        await asyncio.wait_for(task, timeout=5)
    assert not chat.is_busy
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_kill_when_idle_does_nothing():
    provider = GatedProvider()
    provider.gate.set()
    chat = _chat(provider)

    chat.kill()
    result = await chat.send_text("hi")

    assert result.text == "pong"


@pytest.mark.asyncio
async def test_shutdown_rejects_new_turns():
    provider = GatedProvider()
    chat = _chat(provider)

    chat.shutdown()

    assert chat.is_shutdown
    assert await chat.send_text("hi") is None
    assert len(chat.context) == 0
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_job_completion_is_queued_until_turn_ends():
    provider = GatedProvider()
    chat = _chat(provider)

    task = asyncio.create_task(chat.send_text("start the export"))
    await provider.entered.wait()
    chat.notify_job_completion(JobInfo(job_id="job-1", description="export", result={"rows": 3}))
    assert all("job-1" not in m.text for m in chat.context.get_context())

    provider.gate.set()
    await task

    last = chat.context.get_context()[-1]
    assert last.role is MessageRole.USER
    assert last.tool_feedback is True
    assert last.text.startswith("Async job result: ")
    assert '"job_id": "job-1"' in last.text


@pytest.mark.asyncio
async def test_job_completion_when_idle_is_added_immediately():
    chat = _chat(GatedProvider())

    chat.notify_job_completion(JobInfo(job_id="job-2", description="cleanup", status="failed", error="disk full"))

    (message,) = chat.context.get_context()
    assert message.is_user_turn is False
    assert "disk full" in message.text


def test_from_config_reads_keys_file(tmp_path):
    keys_file = tmp_path / "keys.txt"
    keys_file.write_text("# primary\nfile-key-00001\n")
    config = Config.model_validate({
        "credentials": {"apiKeys": ["inline-key-00002"], "keysFile": str(keys_file)},
        "tools": {"confirmationsFile": str(tmp_path / "confirmations.json")},
        "pruning": {"keepUserTurns": 3},
        "chat": {"model": "openai/gpt-4o-mini", "maxIterations": 7},
    })

    chat = Chat.from_config(config, prompter=AutoApprovePrompter(), provider=GatedProvider())

    assert len(chat.client.rotation) == 2
    assert chat.runner.options.model == "openai/gpt-4o-mini"
    assert chat.runner.options.max_iterations == 7
    assert chat.context.pruner.keep_user_turns == 3
    assert chat.orchestrator.confirmations.path == tmp_path / "confirmations.json"


def test_clear_empties_context():
    chat = _chat(GatedProvider())
    chat.notify_job_completion(JobInfo(job_id="j", description="d"))
    chat.status.record_api_error(ApiErrorRecord("m", "...00001", 1, 1.0, RuntimeError("503"), True))
    chat.clear()
    assert len(chat.context) == 0
    assert chat.status.api_errors == []
    assert chat.context_window_usage() == 0


class ExportTool(Tool):
    """Blocks until ``gate`` is set, then reports the exported row count."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return "export"

    @property
    def description(self) -> str:
        return "exports a table"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"table": {"type": "string"}}}

    async def execute(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        await self.gate.wait()
        return {"rows": 3}


class BackgroundCallProvider(LLMProvider):
    """Asks for a background export, then answers in text. Optionally lets the job finish mid-turn."""

    def __init__(self, tool: ExportTool, finish_job_during_turn: bool):
        super().__init__()
        self.tool = tool
        self.finish_job_during_turn = finish_job_during_turn
        self.jobs = None
        self.calls = 0

    async def generate(self, contents, config, api_key):
        self.calls += 1
        if self.calls == 1:
            return LLMResponse(content=[FunctionCallPart("export", {"table": "users", "asynchronous": True})])
        if self.finish_job_during_turn:
            self.tool.gate.set()
            while self.jobs.running_count:
                await asyncio.sleep(0)
        return LLMResponse(content=[TextPart("Export started.")])


def _job_chat(finish_job_during_turn: bool) -> tuple[Chat, ExportTool]:
    tool = ExportTool()
    registry = ToolRegistry(audit=False)
    registry.register(tool)
    provider = BackgroundCallProvider(tool, finish_job_during_turn)
    chat = Chat(
        client=ResilientClient(provider, RoundRobinRotation(["k-000001"]), Config().retry),
        registry=registry,
        prompter=AutoApprovePrompter(),
        options=TurnOptions(model="fake-model"),
    )
    provider.jobs = chat.orchestrator.jobs
    return chat, tool


@pytest.mark.asyncio
async def test_background_call_result_is_queued_then_added():
    chat, tool = _job_chat(finish_job_during_turn=True)

    result = await chat.send_text("export the users table")

    assert tool.calls == [{"table": "users"}]
    (started,) = [p for m in chat.context.get_context() for p in m.parts if isinstance(p, FunctionResponsePart)]
    job = started.response["output"]
    assert job["status"] == "started"

    roles = [(m.role, m.tool_feedback) for m in chat.context.get_context()]
    assert roles == [
        (MessageRole.USER, False),
        (MessageRole.MODEL, False),
        (MessageRole.TOOL, False),
        (MessageRole.MODEL, False),
        (MessageRole.USER, True),
    ]
    last = chat.context.get_context()[-1]
    assert last.text.startswith("Async job result: ")
    assert f'"job_id": "{job["job_id"]}"' in last.text
    assert '"status": "completed"' in last.text
    assert '"rows": 3' in last.text


@pytest.mark.asyncio
async def test_background_job_finishing_when_idle_is_added_at_once():
    chat, tool = _job_chat(finish_job_during_turn=False)
    await chat.send_text("export the users table")
    assert chat.orchestrator.jobs.running_count == 1
    assert chat.context.get_context()[-1].text == "Export started."

    tool.gate.set()
    while chat.orchestrator.jobs.running_count:
        await asyncio.sleep(0)

    last = chat.context.get_context()[-1]
    assert last.tool_feedback is True
    assert '"status": "completed"' in last.text


@pytest.mark.asyncio
async def test_close_cancels_running_jobs():
    chat, _ = _job_chat(finish_job_during_turn=False)
    await chat.send_text("export the users table")
    count = len(chat.context)

    await chat.close()

    assert chat.is_shutdown
    assert chat.orchestrator.jobs.running_count == 0
    assert len(chat.context) == count
