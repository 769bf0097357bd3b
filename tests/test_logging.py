"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest

from claude_web_bridge.infrastructure.logging import configure_logging, get_logger


@pytest.fixture(autouse=True)
def _reset_logging() -> None:
    """各テスト前にルートロガーのハンドラーをリセットする."""
    logging.getLogger().handlers.clear()


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    """テスト用の一時ログディレクトリを返す."""
    return tmp_path / "logs"


def _file_handlers() -> list[TimedRotatingFileHandler]:
    return [
        h for h in logging.getLogger().handlers if isinstance(h, TimedRotatingFileHandler)
    ]


def _flush_all() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


class TestConfigureLogging:
    """configure_logging のテスト."""

    def test_creates_log_directory(self, log_dir: Path) -> None:
        """ログディレクトリが自動作成されることを確認する."""
        assert not log_dir.exists()
        configure_logging(log_dir=str(log_dir))
        assert log_dir.is_dir()

    def test_three_handlers_added(self, log_dir: Path) -> None:
        """ルートロガーに3つのハンドラーが追加されることを確認する."""
        configure_logging(log_dir=str(log_dir))
        assert len(logging.getLogger().handlers) == 3

    @pytest.mark.parametrize(
        ("log_level", "expected"),
        [
            ("INFO", logging.INFO),
            ("debug", logging.DEBUG),
            ("ERROR", logging.ERROR),
        ],
    )
    def test_console_handler_uses_log_level(
        self, log_dir: Path, log_level: str, expected: int
    ) -> None:
        """コンソールハンドラーが指定したレベルで設定されることを確認する."""
        configure_logging(log_level=log_level, log_dir=str(log_dir))
        stream_handlers = [
            h
            for h in logging.getLogger().handlers
            if isinstance(h, logging.StreamHandler)
            and not isinstance(h, TimedRotatingFileHandler)
        ]
        assert len(stream_handlers) == 1
        assert stream_handlers[0].level == expected

    def test_file_handler_levels(self, log_dir: Path) -> None:
        """latest.logはDEBUG、error.logはWARNINGで設定されることを確認する."""
        configure_logging(log_dir=str(log_dir))
        levels = {
            Path(h.baseFilename).name: h.level
            for h in _file_handlers()
        }
        assert levels == {"latest.log": logging.DEBUG, "error.log": logging.WARNING}

    def test_file_handler_rotation_config(self, log_dir: Path) -> None:
        """ファイルハンドラーのローテーション設定を確認する."""
        configure_logging(log_dir=str(log_dir), log_backup_count=14)
        for handler in _file_handlers():
            assert handler.when == "MIDNIGHT"
            assert handler.backupCount == 14
            assert handler.suffix == "%Y-%m-%d"

    def test_invalid_log_level_defaults_to_info(
        self,
        log_dir: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """無効なログレベルの場合INFOにフォールバックすることを確認する."""
        configure_logging(log_level="LOUD", log_dir=str(log_dir))
        captured = capsys.readouterr()
        assert "Invalid log level" in captured.err

    def test_third_party_log_levels(self, log_dir: Path) -> None:
        """サードパーティライブラリのログレベルが調整されることを確認する."""
        configure_logging(log_dir=str(log_dir))
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("claude_agent_sdk").level == logging.INFO

    def test_fallback_on_directory_creation_failure(
        self,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """ログディレクトリ作成失敗時にコンソールのみで継続することを確認する."""
        blocker = tmp_path / "blocked"
        blocker.write_text("")

        configure_logging(log_dir=str(blocker / "logs"))

        captured = capsys.readouterr()
        assert "Failed to create log directory" in captured.err
        assert _file_handlers() == []


class TestFileOutput:
    """ファイル出力のテスト."""

    def test_error_log_receives_warning_and_above(self, log_dir: Path) -> None:
        """error.logにWARNING以上のログのみ書き込まれることを確認する."""
        configure_logging(log_level="DEBUG", log_dir=str(log_dir))
        logger = get_logger("test")

        logger.info("info msg")
        logger.warning("warning msg")
        _flush_all()

        latest = (log_dir / "latest.log").read_text(encoding="utf-8")
        error_log = (log_dir / "error.log").read_text(encoding="utf-8")
        assert "info msg" in latest
        assert "warning msg" in latest
        assert "info msg" not in error_log
        assert "warning msg" in error_log

    def test_log_output_is_json_with_context(self, log_dir: Path) -> None:
        """ログ出力がキー付きのJSONであることを確認する."""
        configure_logging(log_dir=str(log_dir))
        get_logger("test").warning("request failed", request_id="req-1")
        _flush_all()

        lines = (log_dir / "latest.log").read_text(encoding="utf-8").splitlines()
        records = [json.loads(line) for line in lines]
        record = next(r for r in records if r["event"] == "request failed")
        assert record["request_id"] == "req-1"
        assert record["level"] == "warning"

    def test_stdlib_records_are_rendered(self, log_dir: Path) -> None:
        """標準loggingのレコードもJSONで出力されることを確認する."""
        configure_logging(log_dir=str(log_dir))
        logging.getLogger("tests.stdlib").warning("非ASCIIメッセージ")
        _flush_all()

        lines = (log_dir / "latest.log").read_text(encoding="utf-8").splitlines()
        events = [json.loads(line)["event"] for line in lines]
        assert "非ASCIIメッセージ" in events
