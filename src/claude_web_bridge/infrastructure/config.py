"""Configuration management."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # HTTPサーバー設定
    host: str = Field(
        default="127.0.0.1",
        description="待ち受けアドレス",
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="待ち受けポート",
    )

    # エージェントエンジン設定
    claude_cli_path: Path | None = Field(
        default=None,
        description="Claude CLIの実行ファイルパス（未指定時はSDKの既定値）",
    )

    # クライアント設定
    api_base_url: str = Field(
        default="http://127.0.0.1:8080",
        description="クライアントが接続するブリッジのURL",
    )
    request_timeout: float = Field(
        default=10.0,
        gt=0,
        description="クライアントの接続タイムアウト（秒）",
    )

    # ロギング設定
    log_level: str = Field(
        default="INFO",
        description="コンソール出力のログレベル",
    )
    log_dir: str = Field(
        default="logs",
        description="ログ出力ディレクトリ",
    )
    log_backup_count: int = Field(
        default=7,
        ge=0,
        description="ログローテーションの保持日数",
    )

    @field_validator("claude_cli_path", mode="before")
    @classmethod
    def parse_claude_cli_path(cls, v: str | Path | None) -> Path | None:
        """空文字列を未指定として扱う."""
        if isinstance(v, str):
            if not v.strip():
                return None
            return Path(v)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """ログレベルを大文字に正規化して検証する."""
        level = v.upper()
        if level not in _VALID_LOG_LEVELS:
            msg = f"Invalid log level: {v}"
            raise ValueError(msg)
        return level

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """末尾のスラッシュを取り除く."""
        return v.rstrip("/")


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
