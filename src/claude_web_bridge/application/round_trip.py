"""Construction of outgoing chat turns."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from claude_web_bridge.application.models import ChatRequest, OutgoingTurn

if TYPE_CHECKING:
    from claude_web_bridge.application.models import (
        FollowUp,
        ImageContent,
        PermissionMode,
    )


def new_request_id() -> str:
    """新しいリクエストIDを生成する."""
    return str(uuid.uuid4())


def build_user_turn(
    message: str,
    *,
    session_id: str | None,
    allowed_tools: list[str],
    working_directory: str | None,
    permission_mode: PermissionMode,
    images: list[ImageContent] | None = None,
) -> OutgoingTurn:
    """
    ユーザーが入力したメッセージのターンを作成する.

    Args:
        message: 入力テキスト
        session_id: 継続するセッションID（新規会話の場合None）
        allowed_tools: 許可ツールリスト
        working_directory: 作業ディレクトリ
        permission_mode: 現在の権限モード
        images: 添付画像

    Returns:
        ユーザーメッセージを表示するターン
    """
    request = ChatRequest(
        message=message,
        request_id=new_request_id(),
        session_id=session_id,
        allowed_tools=list(allowed_tools),
        working_directory=working_directory,
        permission_mode=permission_mode,
        images=images or None,
    )
    return OutgoingTurn(request=request, echo_user_message=True)


def build_follow_up_turn(
    follow_up: FollowUp,
    *,
    session_id: str,
    working_directory: str | None,
    permission_mode: PermissionMode,
) -> OutgoingTurn:
    """
    ユーザーの判断を次のターンに変換する.

    セッションIDを引き継ぎ、ツール結果がある場合はそれを含める.
    判断によるメッセージは画面に表示しない.

    Args:
        follow_up: 判断の結果
        session_id: 継続するセッションID
        working_directory: 作業ディレクトリ
        permission_mode: 現在の権限モード（FollowUpに指定がない場合に使用）

    Returns:
        ユーザーメッセージを表示しないターン
    """
    request = ChatRequest(
        message=follow_up.message,
        request_id=new_request_id(),
        session_id=session_id,
        allowed_tools=(
            list(follow_up.allowed_tools) if follow_up.allowed_tools is not None else []
        ),
        working_directory=working_directory,
        permission_mode=follow_up.permission_mode or permission_mode,
        tool_result=follow_up.tool_result,
    )
    return OutgoingTurn(request=request, echo_user_message=False)
