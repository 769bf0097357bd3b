"""NDJSON stream encoding."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, AsyncIterable, AsyncIterator
from contextlib import aclosing

from fastapi.responses import StreamingResponse

from claude_web_bridge.application.models import StreamEvent
from claude_web_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"
STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def encode_event(event: StreamEvent) -> bytes:
    """
    イベントを改行で終端された1行のJSONに変換する.

    Args:
        event: ストリームイベント

    Returns:
        UTF-8エンコードされた1行
    """
    line = json.dumps(event.to_wire(), ensure_ascii=False, separators=(",", ":"))
    return (line + "\n").encode("utf-8")


async def encode_stream(
    events: AsyncGenerator[StreamEvent, None],
) -> AsyncIterator[bytes]:
    """
    イベント列を1行ずつエンコードして返す.

    途中で失敗した場合は error 行を1つ出力して終了する. イベント列は終了時に
    必ず閉じる.

    Args:
        events: ストリームイベント列

    Yields:
        1イベント分の行
    """
    try:
        async with aclosing(events):
            async for event in events:
                yield encode_event(event)
    except Exception as e:
        logger.exception("Stream encoding failed")
        yield encode_event(StreamEvent.error_event(str(e) or type(e).__name__))


async def single_event_stream(event: StreamEvent) -> AsyncIterator[bytes]:
    """イベント1行だけのストリーム."""
    yield encode_event(event)


def ndjson_response(body: AsyncIterable[bytes]) -> StreamingResponse:
    """
    NDJSONのストリーミングレスポンスを作成する.

    Args:
        body: 行単位のバイト列

    Returns:
        ストリーミングレスポンス
    """
    return StreamingResponse(body, media_type=NDJSON_MEDIA_TYPE, headers=STREAM_HEADERS)
