"""Interpretation of engine messages carried in claude_json events."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from claude_web_bridge.application.models import (
    AskUserQuestionRequest,
    ToolPermissionRequest,
)
from claude_web_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

# コールバック型定義
SessionIdCallback = Callable[[str], Awaitable[None]]
PermissionErrorCallback = Callable[[ToolPermissionRequest, str], Awaitable[None]]
QuestionCallback = Callable[[AskUserQuestionRequest], Awaitable[None]]

ASK_USER_QUESTION_TOOL = "AskUserQuestion"
EXIT_PLAN_MODE_TOOL = "ExitPlanMode"

_PERMISSION_ERROR_MARKERS = ("requested permissions", "haven't granted")


def generate_tool_pattern(tool_name: str, tool_input: dict[str, Any]) -> str:
    """
    許可リストに追加するツールパターンを生成する.

    Bashはコマンドの先頭語で ``Bash(<command>:*)`` とし、それ以外はツール名を返す.

    Args:
        tool_name: ツール名
        tool_input: ツールの入力

    Returns:
        ツールパターン
    """
    if tool_name == "Bash":
        command = tool_input.get("command")
        if isinstance(command, str) and command.strip():
            return f"Bash({command.split()[0]}:*)"
    return tool_name


def is_permission_error(content: Any) -> bool:
    """
    ツール結果が権限不足によるエラーかどうかを判定する.

    Args:
        content: tool_resultブロックのcontent（文字列またはブロックのリスト）

    Returns:
        権限不足のエラーの場合True
    """
    text = _content_text(content)
    return any(marker in text for marker in _PERMISSION_ERROR_MARKERS)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


class StreamProcessor:
    """
    claude_json イベントの中身を解釈し、判断が必要な事象を通知する.

    - system/result メッセージからセッションIDを取り出す
    - assistant メッセージの tool_use を記録し、AskUserQuestion を検出する
    - user メッセージの tool_result から権限不足エラーを検出する
    """

    def __init__(
        self,
        on_session_id: SessionIdCallback | None = None,
        on_permission_error: PermissionErrorCallback | None = None,
        on_ask_user_question: QuestionCallback | None = None,
    ) -> None:
        """
        Initialize StreamProcessor.

        Args:
            on_session_id: セッションIDを検出した際のコールバック
            on_permission_error: 権限不足エラーを検出した際のコールバック
                （要求とプラン本文を受け取る）
            on_ask_user_question: 質問を検出した際のコールバック
        """
        self._on_session_id = on_session_id
        self._on_permission_error = on_permission_error
        self._on_ask_user_question = on_ask_user_question
        self._tool_uses: dict[str, tuple[str, dict[str, Any]]] = {}

    def reset(self) -> None:
        """記録済みのtool_useを破棄する."""
        self._tool_uses.clear()

    async def process(self, data: Any) -> None:
        """
        エンジンのネイティブメッセージを1件処理する.

        Args:
            data: claude_json イベントの data
        """
        if not isinstance(data, dict):
            return

        message_type = data.get("type")
        session_id = data.get("session_id")
        if message_type in {"system", "result"} and isinstance(session_id, str):
            if session_id and self._on_session_id is not None:
                await self._on_session_id(session_id)

        if message_type == "assistant":
            await self._process_assistant(data)
        elif message_type == "user":
            await self._process_user(data)

    async def _process_assistant(self, data: dict[str, Any]) -> None:
        for block in _content_blocks(data):
            if block.get("type") != "tool_use":
                continue
            tool_use_id = str(block.get("id", ""))
            name = str(block.get("name", ""))
            tool_input = block.get("input")
            if not isinstance(tool_input, dict):
                tool_input = {}
            self._tool_uses[tool_use_id] = (name, tool_input)

            if name == ASK_USER_QUESTION_TOOL and self._on_ask_user_question is not None:
                questions = tool_input.get("questions")
                if not isinstance(questions, list):
                    questions = []
                logger.info("Agent asked a question", tool_use_id=tool_use_id)
                await self._on_ask_user_question(
                    AskUserQuestionRequest(questions=questions, tool_use_id=tool_use_id)
                )

    async def _process_user(self, data: dict[str, Any]) -> None:
        for block in _content_blocks(data):
            if block.get("type") != "tool_result" or block.get("is_error") is not True:
                continue
            if not is_permission_error(block.get("content")):
                continue

            tool_use_id = str(block.get("tool_use_id", ""))
            name, tool_input = self._tool_uses.get(tool_use_id, ("unknown", {}))
            plan_content = ""
            if name == EXIT_PLAN_MODE_TOOL:
                plan = tool_input.get("plan")
                plan_content = plan if isinstance(plan, str) else ""

            request = ToolPermissionRequest(
                tool_name=name,
                patterns=[generate_tool_pattern(name, tool_input)],
                tool_use_id=tool_use_id,
            )
            logger.info(
                "Permission required",
                tool_name=name,
                patterns=request.patterns,
                tool_use_id=tool_use_id,
            )
            if self._on_permission_error is not None:
                await self._on_permission_error(request, plan_content)


def _content_blocks(data: dict[str, Any]) -> list[dict[str, Any]]:
    message = data.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]
