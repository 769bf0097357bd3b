"""Data models for cross-layer communication."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializerFunctionWrapHandler,
    model_serializer,
    model_validator,
)


class PermissionMode(str, Enum):
    """エージェントの権限モード."""

    DEFAULT = "default"
    PLAN = "plan"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"


class _WireModel(BaseModel):
    """JSONワイヤー形式のモデル基底クラス."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        """
        省略されたフィールドを除いたワイヤー形式の辞書に変換する.

        Returns:
            JSONシリアライズ可能な辞書
        """
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ToolResultContent(_WireModel):
    """ユーザーの判断をツール結果としてエンジンへ返す内容."""

    tool_use_id: str
    content: str
    is_error: bool | None = None

    @model_serializer(mode="wrap")
    def drop_non_error_flag(
        self, handler: SerializerFunctionWrapHandler
    ) -> dict[str, Any]:
        """``is_error`` はTrueの場合のみ出力する."""
        data = handler(self)
        if data.get("is_error") is not True:
            data.pop("is_error", None)
        return data


class ImageContent(_WireModel):
    """Base64エンコードされた添付画像."""

    media_type: Literal["image/png", "image/jpeg", "image/gif", "image/webp"] = Field(
        alias="mediaType"
    )
    data: str


class ChatRequest(_WireModel):
    """1ターン分のチャットリクエスト."""

    message: str
    request_id: str = Field(alias="requestId", min_length=1)
    session_id: str | None = Field(default=None, alias="sessionId")
    allowed_tools: list[str] | None = Field(default=None, alias="allowedTools")
    working_directory: str | None = Field(default=None, alias="workingDirectory")
    permission_mode: PermissionMode | None = Field(default=None, alias="permissionMode")
    tool_result: ToolResultContent | None = Field(default=None, alias="toolResult")
    images: list[ImageContent] | None = None


StreamEventType = Literal["claude_json", "error", "context_overflow", "done", "aborted"]

TERMINAL_EVENT_TYPES: frozenset[str] = frozenset(
    {"done", "error", "context_overflow", "aborted"}
)


class StreamEvent(BaseModel):
    """NDJSONストリームの1行に対応するイベント."""

    model_config = ConfigDict(frozen=True)

    type: StreamEventType
    data: Any = None
    error: str | None = None

    @model_validator(mode="after")
    def check_variant(self) -> StreamEvent:
        if self.type == "claude_json" and "data" not in self.model_fields_set:
            msg = "claude_json event requires data"
            raise ValueError(msg)
        if self.type in {"error", "context_overflow"} and self.error is None:
            msg = f"{self.type} event requires error"
            raise ValueError(msg)
        return self

    @classmethod
    def claude_json(cls, data: Any) -> StreamEvent:
        """エンジンのネイティブメッセージを包むイベントを作成する."""
        return cls(type="claude_json", data=data)

    @classmethod
    def error_event(cls, message: str) -> StreamEvent:
        """実行エラーイベントを作成する."""
        return cls(type="error", error=message)

    @classmethod
    def context_overflow(cls, message: str) -> StreamEvent:
        """コンテキスト上限超過イベントを作成する."""
        return cls(type="context_overflow", error=message)

    @classmethod
    def done(cls) -> StreamEvent:
        """正常終了イベントを作成する."""
        return cls(type="done")

    @classmethod
    def aborted(cls) -> StreamEvent:
        """中断イベントを作成する."""
        return cls(type="aborted")

    @property
    def is_terminal(self) -> bool:
        """ストリームを終了させるイベントかどうか."""
        return self.type in TERMINAL_EVENT_TYPES

    def to_wire(self) -> dict[str, Any]:
        """
        バリアントに属するキーのみを含む辞書に変換する.

        Returns:
            ``{"type": "done"}`` のような最小限の辞書
        """
        wire: dict[str, Any] = {"type": self.type}
        if self.type == "claude_json":
            wire["data"] = self.data
        elif self.type in {"error", "context_overflow"}:
            wire["error"] = self.error
        return wire


@dataclass(frozen=True)
class ToolPermissionRequest:
    """ツール実行の許可要求（StreamProcessor → PermissionArbitrator）."""

    tool_name: str
    patterns: list[str]
    tool_use_id: str


@dataclass(frozen=True)
class PlanModeRequest:
    """プラン承認要求."""

    plan_content: str = ""


@dataclass(frozen=True)
class AskUserQuestionRequest:
    """エージェントからユーザーへの質問."""

    questions: list[dict[str, Any]]
    tool_use_id: str


@dataclass(frozen=True)
class FollowUp:
    """ユーザーの判断から生まれる次ターンの内容（PermissionArbitrator → RoundTrip）."""

    message: str
    allowed_tools: list[str] | None = None
    permission_mode: PermissionMode | None = None
    tool_result: ToolResultContent | None = None


@dataclass
class OutgoingTurn:
    """送信待ちのターン."""

    request: ChatRequest
    echo_user_message: bool = True
