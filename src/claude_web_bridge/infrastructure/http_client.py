"""HTTP client for the chat and abort endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

import httpx

from claude_web_bridge.infrastructure.config import get_config
from claude_web_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from types import TracebackType

    from claude_web_bridge.application.models import ChatRequest
    from claude_web_bridge.infrastructure.config import Config

logger = get_logger(__name__)


class ChatApiError(Exception):
    """ブリッジがエラーステータスを返した場合の例外."""

    def __init__(self, status_code: int, detail: str) -> None:
        """
        Initialize ChatApiError.

        Args:
            status_code: HTTPステータスコード
            detail: レスポンスボディ
        """
        super().__init__(f"Chat API returned {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class ChatApiClient:
    """ブリッジのHTTPエンドポイントを呼び出すクライアント."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize ChatApiClient.

        ストリームは長時間続くため、読み込みタイムアウトは設定しない.

        Args:
            base_url: ブリッジのベースURL
            timeout: 接続・書き込みのタイムアウト（秒）
            transport: httpxのトランスポート（テスト時に差し替え可能）
        """
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, read=None),
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: Config | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ChatApiClient:
        """
        設定からクライアントを作成する.

        Args:
            config: アプリケーション設定（未指定時は get_config() の値）
            transport: httpxのトランスポート

        Returns:
            ChatApiClient
        """
        config = config or get_config()
        return cls(
            config.api_base_url,
            timeout=config.request_timeout,
            transport=transport,
        )

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[bytes]:
        """
        チャットリクエストを送信し、レスポンスボディをチャンク単位で返す.

        Args:
            request: チャットリクエスト

        Yields:
            受信したバイト列

        Raises:
            ChatApiError: エラーステータスが返された場合
            httpx.HTTPError: 通信に失敗した場合
        """
        logger.debug("Sending chat request", request_id=request.request_id)
        async with self._client.stream(
            "POST", "/api/chat", json=request.to_wire()
        ) as response:
            if response.is_error:
                body = await response.aread()
                raise ChatApiError(
                    response.status_code, body.decode("utf-8", errors="replace")
                )
            async for chunk in response.aiter_bytes():
                yield chunk

    async def abort(self, request_id: str) -> bool:
        """
        実行中のリクエストの中断を要求する.

        Args:
            request_id: リクエストID

        Returns:
            中断を通知できた場合True、既に完了していた場合False

        Raises:
            httpx.HTTPStatusError: 404以外のエラーステータスが返された場合
        """
        response = await self._client.post(f"/api/abort/{request_id}")
        if response.status_code == httpx.codes.NOT_FOUND:
            logger.info("Abort target already finished", request_id=request_id)
            return False
        response.raise_for_status()
        return True

    async def close(self) -> None:
        """HTTPクライアントを閉じる."""
        await self._client.aclose()

    async def __aenter__(self) -> ChatApiClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
