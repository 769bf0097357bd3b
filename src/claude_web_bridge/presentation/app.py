"""FastAPI application exposing the chat and abort endpoints."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from claude_web_bridge import __version__
from claude_web_bridge.application.models import ChatRequest, StreamEvent
from claude_web_bridge.infrastructure.logging import get_logger
from claude_web_bridge.presentation.encoder import (
    encode_stream,
    ndjson_response,
    single_event_stream,
)

if TYPE_CHECKING:
    from claude_web_bridge.application.registry import RequestRegistry
    from claude_web_bridge.application.runner import AgentSessionRunner

logger = get_logger(__name__)


def create_app(registry: RequestRegistry, runner: AgentSessionRunner) -> FastAPI:
    """
    FastAPIアプリケーションを作成する.

    Args:
        registry: 実行中リクエストのレジストリ（中断エンドポイントと共有）
        runner: エージェントセッションランナー

    Returns:
        設定済みのアプリケーション
    """
    app = FastAPI(
        title="Claude Web Bridge",
        description="Streams Claude agent sessions to web clients as NDJSON",
        version=__version__,
    )
    app.state.registry = registry
    app.state.runner = runner

    _register_routes(app)

    return app


def _register_routes(app: FastAPI) -> None:
    @app.post("/api/chat")
    async def chat(request: Request) -> StreamingResponse:
        try:
            payload = await request.json()
            chat_request = ChatRequest.model_validate(payload)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            logger.warning("Rejected chat request", error=str(e))
            return ndjson_response(
                single_event_stream(StreamEvent.error_event(f"Invalid chat request: {e}"))
            )

        runner: AgentSessionRunner = request.app.state.runner
        return ndjson_response(encode_stream(runner.run(chat_request)))

    @app.post("/api/abort/{request_id}")
    async def abort(request_id: str, request: Request) -> JSONResponse:
        registry: RequestRegistry = request.app.state.registry
        if not registry.cancel(request_id):
            return JSONResponse(
                {"error": "Request not found or already completed"},
                status_code=status.HTTP_404_NOT_FOUND,
            )
        return JSONResponse({"success": True, "message": "Request aborted"})
