"""Tests for the automatic pruning policies: ephemeral decay and stateful replace."""

from typing import Any

import pytest

from toolchat.context.manager import ContextManager
from toolchat.context.message import MessageRole
from toolchat.context.parts import FunctionCallPart, FunctionResponsePart, TextPart
from toolchat.tools.base import ContextBehavior, Tool
from toolchat.tools.registry import ToolRegistry


class ListFilesTool(Tool):
    behavior = ContextBehavior.EPHEMERAL

    @property
    def name(self) -> str:
        return "list_files"

    @property
    def description(self) -> str:
        return "lists files"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> list[str]:
        return ["a.txt", "b.txt", "c.txt"]


class OpenFileTool(Tool):
    behavior = ContextBehavior.STATEFUL_REPLACE

    @property
    def name(self) -> str:
        return "open_file"

    @property
    def description(self) -> str:
        return "opens a file"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]}

    def resource_id_of(self, output: Any) -> str | None:
        return output["path"]

    async def execute(self, path: str) -> dict[str, Any]:
        return {"path": path, "content": f"contents of {path}"}


class NoteTool(Tool):
    behavior = ContextBehavior.PERSISTENT

    @property
    def name(self) -> str:
        return "note"

    @property
    def description(self) -> str:
        return "keeps a note"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> str:
        return "noted"


@pytest.fixture
def ctx() -> ContextManager:
    registry = ToolRegistry(audit=False)
    for tool in (ListFilesTool(), OpenFileTool(), NoteTool()):
        registry.register(tool)
    return ContextManager(registry, keep_user_turns=2)


def _user(ctx: ContextManager, text: str) -> None:
    ctx.add(ctx.create_message(MessageRole.USER, [TextPart(text)]))


def _model(ctx: ContextManager, text: str) -> None:
    ctx.add(ctx.create_message(MessageRole.MODEL, [TextPart(text)]))


def _tool_round(ctx: ContextManager, name: str, call_id: str, response: dict[str, Any]):
    call = FunctionCallPart(name, {}, id=call_id)
    ctx.add(ctx.create_message(MessageRole.MODEL, [call]))
    reply = FunctionResponsePart(name, response, id=call_id)
    tool = ctx.link(ctx.create_message(MessageRole.TOOL, [reply]), call, [reply])
    change = ctx.add(tool)
    return call, reply, change


def _live_responses(ctx: ContextManager) -> list[FunctionResponsePart]:
    return [p for m in ctx.get_context() for p in m.function_responses]


class TestEphemeralDecay:
    def test_ephemeral_pair_removed_on_fourth_user_turn(self, ctx: ContextManager) -> None:
        _user(ctx, "list files")
        call, reply, _ = _tool_round(ctx, "list_files", "c1", {"output": ["a", "b", "c"]})
        _model(ctx, "three files")

        for turn in ("second", "third"):
            _user(ctx, turn)
            assert ctx.get_message_for_part(call) is not None
            _model(ctx, "ok")

        _user(ctx, "fourth")

        assert ctx.get_message_for_part(call) is None
        assert ctx.get_message_for_part(reply) is None
        assert all(m.parts for m in ctx.get_context())
        assert [m.text for m in ctx.get_context()][0] == "list files"

    def test_tool_feedback_messages_do_not_count_as_user_turns(self, ctx: ContextManager) -> None:
        _user(ctx, "list files")
        call, _, _ = _tool_round(ctx, "list_files", "c1", {"output": []})
        for _ in range(3):
            ctx.add(ctx.create_message(MessageRole.USER, [TextPart("User Feedback")], tool_feedback=True))
        assert ctx.get_message_for_part(call) is not None

    def test_persistent_pairs_survive(self, ctx: ContextManager) -> None:
        _user(ctx, "remember")
        call, _, _ = _tool_round(ctx, "note", "c1", {"output": "noted"})
        for turn in ("two", "three", "four", "five"):
            _user(ctx, turn)
        assert ctx.get_message_for_part(call) is not None

    def test_orphan_call_is_pruned(self, ctx: ContextManager) -> None:
        _user(ctx, "remember")
        orphan = FunctionCallPart("note", {}, id="c9")
        ctx.add(ctx.create_message(MessageRole.MODEL, [TextPart("maybe"), orphan]))
        for turn in ("two", "three", "four"):
            _user(ctx, turn)
        assert ctx.get_message_for_part(orphan) is None
        assert any(m.text == "maybe" for m in ctx.get_context())

    def test_failed_stateful_response_is_pruned(self, ctx: ContextManager) -> None:
        _user(ctx, "open missing")
        call, reply, _ = _tool_round(ctx, "open_file", "c1", {"error": "FileNotFoundError: nope"})
        for turn in ("two", "three", "four"):
            _user(ctx, turn)
        assert ctx.get_message_for_part(reply) is None
        assert ctx.get_message_for_part(call) is None

    def test_live_stateful_response_survives(self, ctx: ContextManager) -> None:
        _user(ctx, "open a")
        _, reply, _ = _tool_round(ctx, "open_file", "c1", {"output": {"path": "a", "content": "x"}})
        for turn in ("two", "three", "four", "five"):
            _user(ctx, turn)
        assert ctx.get_message_for_part(reply) is not None

    def test_pruning_and_append_notify_once(self, ctx: ContextManager) -> None:
        _user(ctx, "list")
        _tool_round(ctx, "list_files", "c1", {"output": []})
        _user(ctx, "two")
        _user(ctx, "three")
        seen = []
        ctx.add_listener(seen.append)

        _user(ctx, "four")

        assert len(seen) == 1
        assert len(seen[0].added) == 1
        assert seen[0].removed_ids
        assert "ephemeral" in seen[0].reasons


class TestStatefulReplace:
    def test_reopening_a_file_supersedes_the_old_view(self, ctx: ContextManager) -> None:
        _user(ctx, "open A, then B, then A")
        call_a1, reply_a1, _ = _tool_round(ctx, "open_file", "c1", {"output": {"path": "A"}})
        _, reply_b, _ = _tool_round(ctx, "open_file", "c2", {"output": {"path": "B"}})
        _, reply_a2, change = _tool_round(ctx, "open_file", "c3", {"output": {"path": "A"}})

        live = _live_responses(ctx)
        assert live == [reply_b, reply_a2]
        assert ctx.get_message_for_part(call_a1) is None
        assert ctx.get_message_for_part(reply_a1) is None
        assert "stateful_replace" in change.reasons
        assert change.added[0].function_responses == [reply_a2]

    def test_error_response_does_not_supersede(self, ctx: ContextManager) -> None:
        _user(ctx, "open A twice")
        _, reply_a1, _ = _tool_round(ctx, "open_file", "c1", {"output": {"path": "A"}})
        _tool_round(ctx, "open_file", "c2", {"error": "PermissionError: denied"})
        assert reply_a1 in _live_responses(ctx)

    def test_resource_ids_are_shared_across_tools(self) -> None:
        class WriteFileTool(OpenFileTool):
            @property
            def name(self) -> str:
                return "write_file"

        registry = ToolRegistry(audit=False)
        registry.register(OpenFileTool())
        registry.register(WriteFileTool())
        ctx = ContextManager(registry)
        _user(ctx, "open then write")
        _, opened, _ = _tool_round(ctx, "open_file", "c1", {"output": {"path": "A"}})
        _, written, _ = _tool_round(ctx, "write_file", "c2", {"output": {"path": "A"}})

        assert _live_responses(ctx) == [written]

    def test_single_live_response_per_resource(self, ctx: ContextManager) -> None:
        _user(ctx, "open A repeatedly")
        for i in range(4):
            _tool_round(ctx, "open_file", f"c{i}", {"output": {"path": "A"}})
        assert len(_live_responses(ctx)) == 1
