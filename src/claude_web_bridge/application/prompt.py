"""Prompt construction for the agent engine."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from claude_web_bridge.application.models import (
        ChatRequest,
        ImageContent,
        ToolResultContent,
    )

# エンジンに渡すプロンプト（プレーン文字列 or 構造化メッセージ1件のストリーム）
PromptInput = str | AsyncIterator[dict[str, Any]]


def strip_slash_command(message: str) -> str:
    """
    先頭の "/" を1文字だけ取り除く.

    Args:
        message: ユーザー入力

    Returns:
        スラッシュコマンドの場合は先頭1文字を除いた文字列、それ以外はそのまま
    """
    if message.startswith("/"):
        return message[1:]
    return message


def create_tool_result_message(
    tool_result: ToolResultContent, session_id: str
) -> dict[str, Any]:
    """
    ツール結果を含むユーザーメッセージを作成する.

    ``is_error`` キーは値が True の場合にのみ含める.

    Args:
        tool_result: ツール結果
        session_id: 再開するセッションID

    Returns:
        エンジンに渡す構造化メッセージ
    """
    block: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": tool_result.tool_use_id,
        "content": tool_result.content,
    }
    if tool_result.is_error is True:
        block["is_error"] = True

    return _user_message([block], session_id)


def create_image_message(
    text: str, images: list[ImageContent], session_id: str | None
) -> dict[str, Any]:
    """
    添付画像とテキストを含むユーザーメッセージを作成する.

    Args:
        text: スラッシュ除去済みのテキスト
        images: 添付画像
        session_id: セッションID（新規会話の場合None）

    Returns:
        エンジンに渡す構造化メッセージ
    """
    content: list[dict[str, Any]] = [
        {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image.media_type,
                "data": image.data,
            },
        }
        for image in images
    ]
    if text:
        content.append({"type": "text", "text": text})

    return _user_message(content, session_id or "")


def _user_message(content: list[dict[str, Any]], session_id: str) -> dict[str, Any]:
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": None,
        "session_id": session_id,
        "uuid": str(uuid.uuid4()),
    }


async def single_message_stream(message: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
    """メッセージを1件だけ流す非同期イテレータ."""
    yield message


def build_prompt(request: ChatRequest) -> PromptInput:
    """
    リクエストからエンジンへのプロンプトを組み立てる.

    優先順位:
    1. tool_result と session_id が両方ある場合はツール結果メッセージ
    2. 画像が添付されている場合は画像付きメッセージ
    3. それ以外はスラッシュを除去したプレーン文字列

    session_id のない tool_result は無視される.

    Args:
        request: チャットリクエスト

    Returns:
        プレーン文字列、または構造化メッセージを1件流す非同期イテレータ
    """
    if request.tool_result is not None and request.session_id:
        return single_message_stream(
            create_tool_result_message(request.tool_result, request.session_id)
        )

    text = strip_slash_command(request.message)

    if request.images:
        return single_message_stream(
            create_image_message(text, request.images, request.session_id)
        )

    return text
