"""Tests for the agent session runner."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from claude_web_bridge.application.models import (
    ChatRequest,
    PermissionMode,
    StreamEvent,
    ToolResultContent,
)
from claude_web_bridge.application.prompt import PromptInput
from claude_web_bridge.application.registry import CancellationHandle, RequestRegistry
from claude_web_bridge.application.runner import (
    CONTEXT_OVERFLOW_MESSAGE,
    AgentSessionRunner,
    build_engine_options,
    classify_failure,
)


class FakeEngine:
    """指定したメッセージを返し、指定した例外で終わるエンジン."""

    def __init__(
        self,
        messages: list[dict[str, Any]] | None = None,
        error: Exception | None = None,
        block_after: bool = False,
    ) -> None:
        self.messages = messages or []
        self.error = error
        self.block_after = block_after
        self.calls: list[tuple[PromptInput, dict[str, Any]]] = []
        self.handles: list[CancellationHandle] = []

    async def stream(
        self,
        prompt: PromptInput,
        options: dict[str, Any],
        cancellation: CancellationHandle,
    ) -> AsyncIterator[dict[str, Any]]:
        self.calls.append((prompt, options))
        self.handles.append(cancellation)
        for message in self.messages:
            yield message
        if self.block_after:
            await cancellation.wait()
            msg = "engine interrupted"
            raise RuntimeError(msg)
        if self.error is not None:
            raise self.error


@pytest.fixture
def registry() -> RequestRegistry:
    """テスト用のRequestRegistryを作成する."""
    return RequestRegistry()


async def _run(runner: AgentSessionRunner, request: ChatRequest) -> list[StreamEvent]:
    return [event async for event in runner.run(request)]


class TestBuildEngineOptions:
    """build_engine_optionsのテスト."""

    def test_only_present_keys(self) -> None:
        """指定のない項目はキーごと省略されることを確認する."""
        options = build_engine_options(ChatRequest(message="hi", request_id="r1"))
        assert options == {}

    def test_all_keys(self) -> None:
        """すべての項目がエンジンオプションに変換されることを確認する."""
        request = ChatRequest(
            message="hi",
            request_id="r1",
            session_id="S",
            allowed_tools=["Read", "Bash(ls:*)"],
            working_directory="/work",
            permission_mode=PermissionMode.ACCEPT_EDITS,
        )

        options = build_engine_options(request, cli_path=Path("/opt/claude"))

        assert options == {
            "resume": "S",
            "allowed_tools": ["Read", "Bash(ls:*)"],
            "cwd": "/work",
            "permission_mode": "acceptEdits",
            "cli_path": str(Path("/opt/claude")),
        }

    def test_empty_allowed_tools_forwarded(self) -> None:
        """空の許可リストも指定ありとして渡されることを確認する."""
        options = build_engine_options(
            ChatRequest(message="hi", request_id="r1", allowed_tools=[])
        )
        assert options == {"allowed_tools": []}


class TestClassifyFailure:
    """classify_failureのテスト."""

    @pytest.mark.parametrize(
        "message",
        [
            "Prompt would exceed context limit",
            "EXCEED CONTEXT LIMIT reached",
            "request: Exceed Context Limit",
        ],
    )
    def test_context_overflow(self, message: str) -> None:
        """大文字小文字を問わずコンテキスト超過と判定されることを確認する."""
        event = classify_failure(RuntimeError(message))
        assert event.type == "context_overflow"
        assert event.error == CONTEXT_OVERFLOW_MESSAGE

    def test_generic_error_keeps_raw_message(self) -> None:
        """その他の例外は元のメッセージを保持することを確認する."""
        event = classify_failure(RuntimeError("boom"))
        assert event.type == "error"
        assert event.error == "boom"

    def test_empty_message_uses_type_name(self) -> None:
        """メッセージが空の場合は例外型名を使うことを確認する."""
        assert classify_failure(TimeoutError()).error == "TimeoutError"


class TestAgentSessionRunner:
    """AgentSessionRunnerのテスト."""

    @pytest.mark.asyncio
    async def test_messages_then_done(self, registry: RequestRegistry) -> None:
        """メッセージが順にclaude_jsonで包まれ、doneで終わることを確認する."""
        messages = [
            {"type": "system", "subtype": "init", "session_id": "S"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi"}]}},
            {"type": "result", "session_id": "S"},
        ]
        engine = FakeEngine(messages=messages)
        runner = AgentSessionRunner(registry, engine)

        events = await _run(runner, ChatRequest(message="Hi", request_id="r1"))

        assert [e.type for e in events] == ["claude_json"] * 3 + ["done"]
        assert [e.data for e in events[:3]] == messages
        assert "r1" not in registry

    @pytest.mark.asyncio
    async def test_empty_stream_yields_done(self, registry: RequestRegistry) -> None:
        """メッセージがない場合もdoneだけが返ることを確認する."""
        runner = AgentSessionRunner(registry, FakeEngine())

        events = await _run(runner, ChatRequest(message="Hi", request_id="r1"))

        assert events == [StreamEvent.done()]

    @pytest.mark.asyncio
    async def test_engine_receives_prompt_and_options(
        self, registry: RequestRegistry
    ) -> None:
        """エンジンにプロンプトとオプションが渡されることを確認する."""
        engine = FakeEngine()
        runner = AgentSessionRunner(registry, engine)

        await _run(
            runner,
            ChatRequest(message="/help", request_id="r1", working_directory="/w"),
        )

        prompt, options = engine.calls[0]
        assert prompt == "help"
        assert options == {"cwd": "/w"}
        assert "permission_mode" not in options

    @pytest.mark.asyncio
    async def test_tool_result_prompt_is_structured(
        self, registry: RequestRegistry
    ) -> None:
        """tool_result付きのリクエストで構造化プロンプトが渡されることを確認する."""
        engine = FakeEngine()
        runner = AgentSessionRunner(registry, engine)

        await _run(
            runner,
            ChatRequest(
                message="continue",
                request_id="r1",
                session_id="S",
                tool_result=ToolResultContent(tool_use_id="tu1", content="a"),
            ),
        )

        prompt, options = engine.calls[0]
        assert not isinstance(prompt, str)
        messages = [m async for m in prompt]
        assert messages[0]["message"]["content"][0]["tool_use_id"] == "tu1"
        assert options == {"resume": "S"}

    @pytest.mark.asyncio
    async def test_context_overflow_after_messages(
        self, registry: RequestRegistry
    ) -> None:
        """メッセージの後にコンテキスト超過で終わることを確認する."""
        engine = FakeEngine(
            messages=[{"type": "system", "session_id": "S"}],
            error=RuntimeError("Request would exceed context limit"),
        )
        runner = AgentSessionRunner(registry, engine)

        events = await _run(runner, ChatRequest(message="Hi", request_id="r1"))

        assert [e.type for e in events] == ["claude_json", "context_overflow"]
        assert events[-1].error == CONTEXT_OVERFLOW_MESSAGE
        assert "r1" not in registry

    @pytest.mark.asyncio
    async def test_engine_error(self, registry: RequestRegistry) -> None:
        """エンジンの例外がerrorイベントになることを確認する."""
        engine = FakeEngine(error=RuntimeError("CLI not found"))
        runner = AgentSessionRunner(registry, engine)

        events = await _run(runner, ChatRequest(message="Hi", request_id="r1"))

        assert events == [StreamEvent.error_event("CLI not found")]
        assert "r1" not in registry

    @pytest.mark.asyncio
    async def test_duplicate_request_rejected(self, registry: RequestRegistry) -> None:
        """実行中のIDと重複するリクエストがerrorになり、元の登録が残ることを確認する."""
        original = registry.register("r1")
        engine = FakeEngine()
        runner = AgentSessionRunner(registry, engine)

        events = await _run(runner, ChatRequest(message="Hi", request_id="r1"))

        assert len(events) == 1
        assert events[0].type == "error"
        assert "r1" in (events[0].error or "")
        assert engine.calls == []
        assert registry.cancel("r1") is True
        assert original.cancelled is True

    @pytest.mark.asyncio
    async def test_abort_yields_aborted(self, registry: RequestRegistry) -> None:
        """中断要求でabortedが返り、登録が解除されることを確認する."""
        engine = FakeEngine(
            messages=[{"type": "system", "session_id": "S"}], block_after=True
        )
        runner = AgentSessionRunner(registry, engine)
        events: list[StreamEvent] = []

        async def consume() -> None:
            async for event in runner.run(ChatRequest(message="Hi", request_id="r1")):
                events.append(event)

        task = asyncio.create_task(consume())
        while not events:
            await asyncio.sleep(0.01)

        assert registry.cancel("r1") is True
        await asyncio.wait_for(task, timeout=1.0)

        assert [e.type for e in events] == ["claude_json", "aborted"]
        assert "r1" not in registry

    @pytest.mark.asyncio
    async def test_abort_before_start_stops_iteration(
        self, registry: RequestRegistry
    ) -> None:
        """中断済みのハンドルでは後続メッセージを送らないことを確認する."""
        engine = FakeEngine(messages=[{"type": "a"}, {"type": "b"}])
        runner = AgentSessionRunner(registry, engine)
        stream = runner.run(ChatRequest(message="Hi", request_id="r1"))

        first = await anext(stream)
        registry.cancel("r1")
        rest = [event async for event in stream]

        assert first.type == "claude_json"
        assert [e.type for e in rest] == ["aborted"]
        assert "r1" not in registry

    @pytest.mark.asyncio
    async def test_consumer_disconnect_releases(self, registry: RequestRegistry) -> None:
        """消費側が途中で閉じても登録が解除されることを確認する."""
        engine = FakeEngine(messages=[{"type": "a"}, {"type": "b"}])
        runner = AgentSessionRunner(registry, engine)
        stream = runner.run(ChatRequest(message="Hi", request_id="r1"))

        await anext(stream)
        assert "r1" in registry
        await stream.aclose()

        assert "r1" not in registry

    @pytest.mark.asyncio
    async def test_runner_passes_cli_path(self, registry: RequestRegistry) -> None:
        """設定されたCLIパスがオプションに含まれることを確認する."""
        engine = FakeEngine()
        runner = AgentSessionRunner(registry, engine, cli_path=Path("/bin/claude"))

        await _run(runner, ChatRequest(message="Hi", request_id="r1"))

        assert engine.calls[0][1] == {"cli_path": str(Path("/bin/claude"))}
