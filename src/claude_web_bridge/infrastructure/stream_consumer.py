"""NDJSON stream consumer."""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, Awaitable, Callable

from pydantic import ValidationError

from claude_web_bridge.application.models import StreamEvent
from claude_web_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

# コールバック型定義
EventDispatcher = Callable[[StreamEvent], Awaitable[None]]
StopCondition = Callable[[], bool]


class StreamParseError(Exception):
    """NDJSONの1行を解釈できなかった場合の例外."""

    def __init__(self, line: str, reason: str) -> None:
        """
        Initialize StreamParseError.

        Args:
            line: 解釈できなかった行
            reason: 失敗理由
        """
        super().__init__(f"Failed to parse stream line: {reason}")
        self.line = line
        self.reason = reason


class NdjsonLineBuffer:
    """
    チャンク境界をまたぐ行を復元する行バッファ.

    末尾の不完全な行は次のチャンクまで保持する. UTF-8のマルチバイト文字が
    チャンク境界で分断された場合も正しく復元する. 不正なバイト列は置換文字
    (U+FFFD) に置き換え、読み込みを継続する.
    """

    def __init__(self) -> None:
        """Initialize NdjsonLineBuffer."""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        """まだ改行で終端されていない部分."""
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        """
        チャンクを追加し、完成した行を返す.

        Args:
            chunk: 受信したバイト列

        Returns:
            改行で終端された空でない行のリスト
        """
        text = self._pending + self._decoder.decode(chunk)
        *lines, self._pending = text.split("\n")
        return [line for line in lines if line.strip()]

    def flush(self) -> list[str]:
        """
        ストリーム終了時に残りの行を返す.

        Returns:
            改行で終端されていなかった最後の行（空なら空リスト）
        """
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        if tail.strip():
            return [tail]
        return []


def parse_stream_line(line: str) -> StreamEvent:
    """
    NDJSONの1行をストリームイベントに変換する.

    Args:
        line: JSONオブジェクト1個を含む行

    Returns:
        ストリームイベント

    Raises:
        StreamParseError: JSONとして不正、またはイベントとして不正な場合
    """
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise StreamParseError(line, str(e)) from e

    try:
        return StreamEvent.model_validate(payload)
    except ValidationError as e:
        raise StreamParseError(line, str(e)) from e


class StreamConsumer:
    """NDJSONレスポンスボディを読み、イベントを種別ごとに配送する."""

    def __init__(self, dispatch: EventDispatcher) -> None:
        """
        Initialize StreamConsumer.

        Args:
            dispatch: イベントを受け取るコールバック
        """
        self._dispatch = dispatch

    async def consume(
        self,
        chunks: AsyncIterable[bytes],
        should_stop: StopCondition | None = None,
    ) -> int:
        """
        ボディの終端、または停止条件が成立するまでイベントを配送する.

        不正な行は警告を記録して読み飛ばす.

        Args:
            chunks: レスポンスボディのチャンク
            should_stop: Trueを返すと読み込みを打ち切る条件

        Returns:
            配送したイベント数
        """
        buffer = NdjsonLineBuffer()
        dispatched = 0

        async for chunk in chunks:
            for line in buffer.feed(chunk):
                if await self._handle_line(line):
                    dispatched += 1
                if should_stop is not None and should_stop():
                    logger.debug("Stream consumption stopped", dispatched=dispatched)
                    return dispatched

        for line in buffer.flush():
            if await self._handle_line(line):
                dispatched += 1

        return dispatched

    async def _handle_line(self, line: str) -> bool:
        try:
            event = parse_stream_line(line)
        except StreamParseError as e:
            logger.warning("Skipping malformed stream line", reason=e.reason, line=line)
            return False

        await self._dispatch(event)
        return True
