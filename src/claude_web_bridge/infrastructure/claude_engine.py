"""Claude Agent SDK adapter."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    query,
)
from claude_agent_sdk.types import StreamEvent as SdkStreamEvent

from claude_web_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from claude_web_bridge.application.prompt import PromptInput
    from claude_web_bridge.application.registry import CancellationHandle

logger = get_logger(__name__)

QueryFunction = Callable[..., AsyncIterator[Any]]

_BLOCK_TYPES: dict[type, str] = {
    TextBlock: "text",
    ThinkingBlock: "thinking",
    ToolUseBlock: "tool_use",
    ToolResultBlock: "tool_result",
}

_MESSAGE = "message"
_END = "end"
_ERROR = "error"


def serialize_block(block: Any) -> dict[str, Any]:
    """
    コンテンツブロックを ``type`` 付きの辞書に変換する.

    Args:
        block: SDKのコンテンツブロック

    Returns:
        JSONシリアライズ可能な辞書
    """
    block_type = _BLOCK_TYPES.get(type(block))
    if block_type is None:
        if isinstance(block, dict):
            return block
        block_type = type(block).__name__
    return {"type": block_type, **dataclasses.asdict(block)}


def serialize_message(message: Any) -> dict[str, Any]:
    """
    SDKのメッセージを ``type`` で区別される辞書に変換する.

    Args:
        message: SDKのメッセージ

    Returns:
        JSONシリアライズ可能な辞書

    Raises:
        TypeError: 未知のメッセージ型の場合
    """
    if isinstance(message, SystemMessage):
        return {**message.data, "type": "system", "subtype": message.subtype}

    if isinstance(message, AssistantMessage):
        return {
            "type": "assistant",
            "message": {
                "role": "assistant",
                "model": message.model,
                "content": [serialize_block(block) for block in message.content],
            },
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }

    if isinstance(message, UserMessage):
        content: Any = message.content
        if not isinstance(content, str):
            content = [serialize_block(block) for block in content]
        return {
            "type": "user",
            "message": {"role": "user", "content": content},
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }

    if isinstance(message, ResultMessage):
        return {"type": "result", **dataclasses.asdict(message)}

    if isinstance(message, SdkStreamEvent):
        return {"type": "stream_event", **dataclasses.asdict(message)}

    msg = f"Unsupported SDK message type: {type(message).__name__}"
    raise TypeError(msg)


class ClaudeAgentEngine:
    """
    claude_agent_sdk.query をラップするエージェントエンジン.

    SDKのストリームは専用タスクで消費し、キャンセル要求を受けるとそのタスクを
    キャンセルしてイテレーションを終了する.
    """

    def __init__(self, query_func: QueryFunction = query) -> None:
        """
        Initialize ClaudeAgentEngine.

        Args:
            query_func: SDKのquery関数（テスト時に差し替え可能）
        """
        self._query = query_func

    async def stream(
        self,
        prompt: PromptInput,
        options: dict[str, Any],
        cancellation: CancellationHandle,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        プロンプトを実行し、変換済みのメッセージを順に返す.

        Args:
            prompt: プレーン文字列または構造化メッセージのストリーム
            options: ClaudeAgentOptionsに渡すキーワード引数
            cancellation: キャンセルハンドル

        Yields:
            ``type`` 付きのメッセージ辞書

        Raises:
            Exception: SDKが送出した例外をそのまま伝播する
        """
        queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        producer = asyncio.create_task(self._produce(prompt, options, queue))
        cancel_waiter = asyncio.create_task(cancellation.wait())

        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {getter, cancel_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if getter not in done:
                    getter.cancel()
                    logger.info(
                        "Engine stream interrupted",
                        request_id=cancellation.request_id,
                    )
                    return

                kind, payload = getter.result()
                if kind == _END:
                    return
                if kind == _ERROR:
                    raise payload
                yield payload
        finally:
            for task in (producer, cancel_waiter):
                if not task.done():
                    task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _produce(
        self,
        prompt: PromptInput,
        options: dict[str, Any],
        queue: asyncio.Queue[tuple[str, Any]],
    ) -> None:
        try:
            agent_options = ClaudeAgentOptions(**options)
            async for message in self._query(prompt=prompt, options=agent_options):
                await queue.put((_MESSAGE, serialize_message(message)))
        except Exception as e:
            await queue.put((_ERROR, e))
        else:
            await queue.put((_END, None))
