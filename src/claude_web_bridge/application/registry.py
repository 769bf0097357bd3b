"""In-flight request registry."""

from __future__ import annotations

import asyncio
import threading

from claude_web_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)


class DuplicateRequestError(Exception):
    """同じリクエストIDが既に実行中の場合の例外."""

    def __init__(self, request_id: str) -> None:
        """
        Initialize DuplicateRequestError.

        Args:
            request_id: 重複したリクエストID
        """
        super().__init__(f"Request {request_id} is already in progress")
        self.request_id = request_id


class CancellationHandle:
    """1リクエスト分の協調的なキャンセルシグナル."""

    def __init__(self, request_id: str) -> None:
        """
        Initialize CancellationHandle.

        Args:
            request_id: 対象のリクエストID
        """
        self.request_id = request_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        """キャンセルが要求済みかどうか."""
        return self._event.is_set()

    def cancel(self) -> None:
        """キャンセルを要求する（冪等）."""
        self._event.set()

    async def wait(self) -> None:
        """キャンセルが要求されるまで待機する."""
        await self._event.wait()


class RequestRegistry:
    """
    実行中リクエストのキャンセルハンドルを管理する.

    プロセスごとに1つ生成し、チャット処理と中断処理の双方に渡す.
    すべての操作はロックで保護される.
    """

    def __init__(self) -> None:
        """Initialize RequestRegistry."""
        self._handles: dict[str, CancellationHandle] = {}
        self._lock = threading.Lock()

    def register(self, request_id: str) -> CancellationHandle:
        """
        リクエストを登録し、キャンセルハンドルを返す.

        Args:
            request_id: リクエストID

        Returns:
            新しいキャンセルハンドル

        Raises:
            DuplicateRequestError: 同じIDが既に登録されている場合
        """
        with self._lock:
            if request_id in self._handles:
                raise DuplicateRequestError(request_id)
            handle = CancellationHandle(request_id)
            self._handles[request_id] = handle

        logger.debug("Request registered", request_id=request_id)
        return handle

    def cancel(self, request_id: str) -> bool:
        """
        リクエストにキャンセルを通知する.

        Args:
            request_id: リクエストID

        Returns:
            登録済みのリクエストに通知した場合True、未登録ならFalse
        """
        with self._lock:
            handle = self._handles.get(request_id)

        if handle is None:
            logger.info("Abort requested for unknown request", request_id=request_id)
            return False

        handle.cancel()
        logger.info("Request cancelled", request_id=request_id)
        return True

    def release(self, request_id: str) -> None:
        """
        リクエストの登録を解除する.

        未登録のIDに対しては何もしない.

        Args:
            request_id: リクエストID
        """
        with self._lock:
            removed = self._handles.pop(request_id, None)

        if removed is not None:
            logger.debug("Request released", request_id=request_id)

    def cancel_all(self) -> int:
        """
        登録中のすべてのリクエストにキャンセルを通知する.

        Returns:
            通知したリクエスト数
        """
        with self._lock:
            handles = list(self._handles.values())

        for handle in handles:
            handle.cancel()

        if handles:
            logger.info("Cancelled all in-flight requests", count=len(handles))
        return len(handles)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
