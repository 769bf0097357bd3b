"""Main entry point for the Claude Web Bridge application."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import uvicorn

from claude_web_bridge.application.registry import RequestRegistry
from claude_web_bridge.application.runner import AgentSessionRunner
from claude_web_bridge.infrastructure.claude_engine import ClaudeAgentEngine
from claude_web_bridge.infrastructure.config import get_config
from claude_web_bridge.infrastructure.logging import configure_logging, get_logger
from claude_web_bridge.presentation.app import create_app


async def main() -> None:
    """アプリケーションのメインエントリポイント."""
    # 設定を読み込み（ロギング設定より前に必要）
    config = get_config()

    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    logger = get_logger(__name__)

    logger.info("Starting Claude Web Bridge...")

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        if shutdown_event.is_set():
            return  # 二重呼び出しを防止
        logger.info("Received shutdown signal, shutting down gracefully...")
        shutdown_event.set()

    # Windows では loop.add_signal_handler が未実装のため signal.signal にフォールバック
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    registry: RequestRegistry | None = None
    server: uvicorn.Server | None = None
    server_task: asyncio.Task[None] | None = None
    shutdown_task: asyncio.Task[bool] | None = None

    try:
        registry = RequestRegistry()
        runner = AgentSessionRunner(
            registry,
            ClaudeAgentEngine(),
            cli_path=config.claude_cli_path,
        )
        app = create_app(registry, runner)

        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=config.host,
                port=config.port,
                log_config=None,
                access_log=False,
            )
        )

        logger.info("Services initialized", host=config.host, port=config.port)

        server_task = asyncio.create_task(server.serve())
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        done, pending = await asyncio.wait(
            [server_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # server_taskが例外で終了した場合は例外を伝播
        if server_task in done:
            server_task.result()

    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        # 実行中のターンを先に中断してからサーバーを停止する
        if registry is not None:
            registry.cancel_all()

        if server is not None and server_task is not None and not server_task.done():
            server.should_exit = True
            try:
                await asyncio.wait_for(asyncio.shield(server_task), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Server shutdown timed out")
            except Exception:
                logger.exception("Error during server shutdown")

        for task in (server_task, shutdown_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        except NotImplementedError:
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, signal.SIG_DFL)

        logger.info("Shutdown complete")

        logging.shutdown()


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
