"""Agent session runner."""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator
from typing import TYPE_CHECKING, Any, Protocol

from claude_web_bridge.application.models import StreamEvent
from claude_web_bridge.application.prompt import PromptInput, build_prompt
from claude_web_bridge.application.registry import (
    CancellationHandle,
    DuplicateRequestError,
    RequestRegistry,  # noqa: TC001
)
from claude_web_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from pathlib import Path

    from claude_web_bridge.application.models import ChatRequest

logger = get_logger(__name__)

CONTEXT_OVERFLOW_MARKER = "exceed context limit"
CONTEXT_OVERFLOW_MESSAGE = (
    "The conversation has exceeded the context limit. "
    "Please start a new conversation to continue."
)


class AgentEngine(Protocol):
    """エージェントエンジンのインターフェース."""

    def stream(
        self,
        prompt: PromptInput,
        options: dict[str, Any],
        cancellation: CancellationHandle,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        プロンプトを実行し、ネイティブメッセージを順に返す.

        Args:
            prompt: プレーン文字列または構造化メッセージのストリーム
            options: 指定されたキーのみを含むエンジンオプション
            cancellation: キャンセルハンドル

        Returns:
            ``type`` で区別されるメッセージの非同期イテレータ
        """
        ...


def build_engine_options(
    request: ChatRequest, cli_path: Path | None = None
) -> dict[str, Any]:
    """
    リクエストで指定された項目だけでエンジンオプションを組み立てる.

    値がNoneのキーは含めない.

    Args:
        request: チャットリクエスト
        cli_path: エンジンCLIのパス（設定されている場合）

    Returns:
        エンジンオプション
    """
    options: dict[str, Any] = {}
    if request.session_id:
        options["resume"] = request.session_id
    if request.allowed_tools is not None:
        options["allowed_tools"] = list(request.allowed_tools)
    if request.working_directory:
        options["cwd"] = request.working_directory
    if request.permission_mode is not None:
        options["permission_mode"] = request.permission_mode.value
    if cli_path is not None:
        options["cli_path"] = str(cli_path)
    return options


def classify_failure(error: BaseException) -> StreamEvent:
    """
    実行時の例外を終端イベントに変換する.

    メッセージに "exceed context limit" を含む場合（大文字小文字を区別しない）は
    context_overflow、それ以外は生のメッセージを持つ error になる.

    Args:
        error: 発生した例外

    Returns:
        終端イベント
    """
    message = str(error) or type(error).__name__
    if CONTEXT_OVERFLOW_MARKER in message.lower():
        return StreamEvent.context_overflow(CONTEXT_OVERFLOW_MESSAGE)
    return StreamEvent.error_event(message)


class AgentSessionRunner:
    """1ターン分のエンジン実行をストリームイベント列に変換する."""

    def __init__(
        self,
        registry: RequestRegistry,
        engine: AgentEngine,
        cli_path: Path | None = None,
    ) -> None:
        """
        Initialize AgentSessionRunner.

        Args:
            registry: 実行中リクエストのレジストリ
            engine: エージェントエンジン
            cli_path: エンジンCLIのパス
        """
        self._registry = registry
        self._engine = engine
        self._cli_path = cli_path

    async def run(self, request: ChatRequest) -> AsyncGenerator[StreamEvent, None]:
        """
        リクエストを実行し、ストリームイベントを順に返す.

        イベント列は0個以上の claude_json と、ちょうど1つの終端イベントで構成される.
        例外はこのメソッドの外に送出せず、すべて終端イベントに変換する.

        Args:
            request: チャットリクエスト

        Yields:
            ストリームイベント
        """
        request_id = request.request_id
        try:
            handle = self._registry.register(request_id)
        except DuplicateRequestError as e:
            logger.warning("Rejected duplicate request", request_id=request_id)
            yield StreamEvent.error_event(str(e))
            return

        logger.info(
            "Starting agent turn",
            request_id=request_id,
            session_id=request.session_id,
            has_tool_result=request.tool_result is not None,
        )

        message_count = 0
        try:
            prompt = build_prompt(request)
            options = build_engine_options(request, self._cli_path)
            stream = self._engine.stream(prompt, options, handle)
            try:
                async for message in stream:
                    if handle.cancelled:
                        break
                    message_count += 1
                    yield StreamEvent.claude_json(message)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            if handle.cancelled:
                logger.info("Agent turn aborted", request_id=request_id)
                yield StreamEvent.aborted()
            else:
                logger.info(
                    "Agent turn completed",
                    request_id=request_id,
                    message_count=message_count,
                )
                yield StreamEvent.done()

        except Exception as e:
            if handle.cancelled:
                logger.info(
                    "Agent turn aborted with engine error",
                    request_id=request_id,
                    error=str(e),
                )
                yield StreamEvent.aborted()
            else:
                logger.exception("Agent turn failed", request_id=request_id)
                yield classify_failure(e)

        finally:
            self._registry.release(request_id)
