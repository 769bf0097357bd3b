"""Tests for wire models."""

from __future__ import annotations

import pytest

from claude_web_bridge.application.models import ChatRequest, ToolResultContent


class TestToolResultContent:
    """ToolResultContentのワイヤー形式のテスト."""

    @pytest.mark.parametrize("is_error", [None, False])
    def test_is_error_omitted_unless_true(self, is_error: bool | None) -> None:
        """is_errorがTrueでない場合はキーが出力されないことを確認する."""
        result = ToolResultContent(tool_use_id="q1", content="x", is_error=is_error)

        assert result.to_wire() == {"tool_use_id": "q1", "content": "x"}

    def test_is_error_true_included(self) -> None:
        """is_errorがTrueの場合はキーが出力されることを確認する."""
        result = ToolResultContent(tool_use_id="q1", content="x", is_error=True)

        assert result.to_wire()["is_error"] is True

    def test_nested_in_chat_request(self) -> None:
        """ChatRequestに含まれる場合もis_error=Falseが出力されないことを確認する."""
        request = ChatRequest(
            message="answer",
            request_id="r1",
            tool_result=ToolResultContent(tool_use_id="q1", content="x", is_error=False),
        )

        assert request.to_wire()["toolResult"] == {"tool_use_id": "q1", "content": "x"}
