"""Client-side conversation orchestration."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from claude_web_bridge.application.arbitrator import (
    PermissionArbitrator,
    PlanDecision,
    ToolPermissionDecision,
)
from claude_web_bridge.application.models import (
    AskUserQuestionRequest,  # noqa: TC001
    FollowUp,  # noqa: TC001
    OutgoingTurn,  # noqa: TC001
    PermissionMode,  # noqa: TC001
    StreamEvent,
    ToolPermissionRequest,  # noqa: TC001
)
from claude_web_bridge.application.round_trip import (
    build_follow_up_turn,
    build_user_turn,
)
from claude_web_bridge.application.stream_processor import StreamProcessor
from claude_web_bridge.infrastructure.http_client import (
    ChatApiClient,  # noqa: TC001
    ChatApiError,
)
from claude_web_bridge.infrastructure.logging import get_logger
from claude_web_bridge.infrastructure.stream_consumer import StreamConsumer

if TYPE_CHECKING:
    from claude_web_bridge.application.models import ImageContent

# コールバック型定義
UserMessageCallback = Callable[[str], Awaitable[None]]  # (message) -> None
EventCallback = Callable[[StreamEvent], Awaitable[None]]  # (event) -> None
DialogCallback = Callable[[], Awaitable[None]]  # () -> None

logger = get_logger(__name__)


class TurnInProgressError(Exception):
    """前のターンが完了する前に送信しようとした場合の例外."""

    def __init__(self, request_id: str) -> None:
        """
        Initialize TurnInProgressError.

        Args:
            request_id: 実行中のリクエストID
        """
        super().__init__(f"Request {request_id} is still in progress")
        self.request_id = request_id


class DialogPendingError(Exception):
    """ユーザーの判断待ちがある状態で送信しようとした場合の例外."""

    def __init__(self) -> None:
        """Initialize DialogPendingError."""
        super().__init__("A permission decision or question is awaiting an answer")


@dataclass
class TurnResult:
    """1ターンの結果."""

    request_id: str
    terminal: StreamEvent | None = None
    event_count: int = 0
    interrupted_for_decision: bool = False

    @property
    def succeeded(self) -> bool:
        """done で終了したかどうか."""
        return self.terminal is not None and self.terminal.type == "done"


class ConversationService:
    """
    1つのチャット画面の会話を管理する.

    ターンは厳密に逐次実行する. 権限不足を検出すると実行中のターンを中断し、
    ユーザーの判断を PermissionArbitrator で受けてから次のターンを送る.
    """

    def __init__(
        self,
        api: ChatApiClient,
        arbitrator: PermissionArbitrator | None = None,
        working_directory: str | None = None,
        on_user_message: UserMessageCallback | None = None,
        on_event: EventCallback | None = None,
        on_dialog: DialogCallback | None = None,
    ) -> None:
        """
        Initialize ConversationService.

        Args:
            api: ブリッジのHTTPクライアント
            arbitrator: 判断待ちの管理（省略時は新規作成）
            working_directory: エージェントの作業ディレクトリ
            on_user_message: 送信したユーザーメッセージを表示するコールバック
            on_event: 受信したイベントを表示するコールバック
            on_dialog: 判断待ちが発生した際のコールバック
        """
        self._api = api
        self._arbitrator = arbitrator or PermissionArbitrator()
        self._working_directory = working_directory
        self._on_user_message = on_user_message
        self._on_event = on_event
        self._on_dialog = on_dialog

        self._processor = StreamProcessor(
            on_session_id=self._handle_session_id,
            on_permission_error=self._handle_permission_error,
            on_ask_user_question=self._handle_question,
        )
        self._session_id: str | None = None
        self._current: TurnResult | None = None
        self._stop_reading = False

    @property
    def arbitrator(self) -> PermissionArbitrator:
        """判断待ちの管理."""
        return self._arbitrator

    @property
    def session_id(self) -> str | None:
        """エンジンから通知されたセッションID."""
        return self._session_id

    @property
    def is_loading(self) -> bool:
        """ターンを実行中かどうか."""
        return self._current is not None

    def set_permission_mode(self, mode: PermissionMode) -> None:
        """
        以降のターンの権限モードを変更する.

        Args:
            mode: 権限モード
        """
        self._arbitrator.set_permission_mode(mode)

    def start_new_conversation(self) -> None:
        """セッションを破棄し、新しい会話を開始する."""
        logger.info("Starting new conversation", previous_session_id=self._session_id)
        self._session_id = None
        self._arbitrator.reset()
        self._processor.reset()

    async def send_message(
        self, message: str, images: list[ImageContent] | None = None
    ) -> TurnResult:
        """
        ユーザーのメッセージを送信し、ターンの完了まで待つ.

        Args:
            message: 入力テキスト
            images: 添付画像

        Returns:
            ターンの結果

        Raises:
            TurnInProgressError: 前のターンが実行中の場合
            DialogPendingError: 判断待ちがある場合
        """
        if self._current is not None:
            raise TurnInProgressError(self._current.request_id)
        if self._arbitrator.is_dialog_open:
            raise DialogPendingError

        turn = build_user_turn(
            message,
            session_id=self._session_id,
            allowed_tools=self._arbitrator.allowed_tools,
            working_directory=self._working_directory,
            permission_mode=self._arbitrator.permission_mode,
            images=images,
        )
        return await self._run_turn(turn)

    async def abort(self) -> bool:
        """
        実行中のターンの中断を要求する.

        Returns:
            中断を通知できた場合True
        """
        if self._current is None:
            return False
        return await self._api.abort(self._current.request_id)

    async def allow_tool(self, *, permanent: bool = False) -> TurnResult | None:
        """
        ツールの実行を許可して会話を続ける.

        Args:
            permanent: セッションの許可リストに追加する場合True

        Returns:
            続きのターンの結果（送信しなかった場合None）
        """
        decision = (
            ToolPermissionDecision.ALLOW_PERMANENTLY
            if permanent
            else ToolPermissionDecision.ALLOW_ONCE
        )
        return await self._send_follow_up(
            self._arbitrator.resolve_tool_permission(decision)
        )

    def deny_tool(self) -> None:
        """ツールの実行を拒否する."""
        self._arbitrator.resolve_tool_permission(ToolPermissionDecision.DENY)

    async def accept_plan(self, *, with_edits: bool = True) -> TurnResult | None:
        """
        プランを承認して実行に移る.

        Args:
            with_edits: 編集を自動承認するモードで実行する場合True

        Returns:
            続きのターンの結果（送信しなかった場合None）
        """
        decision = (
            PlanDecision.ACCEPT_WITH_EDITS if with_edits else PlanDecision.ACCEPT_DEFAULT
        )
        return await self._send_follow_up(self._arbitrator.resolve_plan(decision))

    def keep_planning(self) -> None:
        """プランを承認せず計画を続ける."""
        self._arbitrator.resolve_plan(PlanDecision.KEEP_PLANNING)

    async def answer_question(self, answers: dict[str, str]) -> TurnResult | None:
        """
        先頭の質問に回答する.

        Args:
            answers: 質問文ごとの回答

        Returns:
            続きのターンの結果（送信しなかった場合None）
        """
        return await self._send_follow_up(self._arbitrator.resolve_question(answers))

    async def cancel_question(self) -> TurnResult | None:
        """
        先頭の質問をキャンセルする.

        Returns:
            続きのターンの結果（送信しなかった場合None）
        """
        return await self._send_follow_up(self._arbitrator.resolve_question(None))

    async def _send_follow_up(self, follow_up: FollowUp | None) -> TurnResult | None:
        if follow_up is None:
            return None
        if not self._session_id:
            logger.warning("No session to continue, follow-up dropped")
            return None
        if self._current is not None:
            raise TurnInProgressError(self._current.request_id)

        turn = build_follow_up_turn(
            follow_up,
            session_id=self._session_id,
            working_directory=self._working_directory,
            permission_mode=self._arbitrator.permission_mode,
        )
        return await self._run_turn(turn)

    async def _run_turn(self, turn: OutgoingTurn) -> TurnResult:
        request = turn.request
        result = TurnResult(request_id=request.request_id)
        self._current = result
        self._stop_reading = False

        if turn.echo_user_message and self._on_user_message is not None:
            await self._on_user_message(request.message)

        consumer = StreamConsumer(self._dispatch)
        try:
            async with aclosing(self._api.stream_chat(request)) as chunks:
                await consumer.consume(chunks, should_stop=lambda: self._stop_reading)
        except (httpx.HTTPError, ChatApiError) as e:
            logger.warning(
                "Chat transport failed",
                request_id=request.request_id,
                error=str(e),
            )
            if result.terminal is None:
                await self._dispatch(StreamEvent.error_event(str(e)))
        finally:
            self._current = None

        logger.info(
            "Turn finished",
            request_id=request.request_id,
            terminal=result.terminal.type if result.terminal else None,
            events=result.event_count,
        )
        return result

    async def _dispatch(self, event: StreamEvent) -> None:
        result = self._current
        if result is None:
            return
        result.event_count += 1

        if self._on_event is not None:
            await self._on_event(event)

        if event.type == "claude_json":
            await self._processor.process(event.data)
        elif event.is_terminal:
            result.terminal = event
            self._stop_reading = True

    async def _handle_session_id(self, session_id: str) -> None:
        if session_id != self._session_id:
            logger.info("Session established", session_id=session_id)
        self._session_id = session_id

    async def _handle_permission_error(
        self, request: ToolPermissionRequest, plan_content: str
    ) -> None:
        self._arbitrator.on_permission_error(request, plan_content)
        result = self._current
        if result is not None:
            result.interrupted_for_decision = True
            self._stop_reading = True
            try:
                await self._api.abort(result.request_id)
            except httpx.HTTPError:
                logger.warning(
                    "Failed to abort interrupted request",
                    request_id=result.request_id,
                    exc_info=True,
                )
        if self._on_dialog is not None:
            await self._on_dialog()

    async def _handle_question(self, request: AskUserQuestionRequest) -> None:
        self._arbitrator.on_ask_user_question(request)
        if self._on_dialog is not None:
            await self._on_dialog()
