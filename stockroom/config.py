"""
Stockroom — 設定

環境変数から読み込む。DATABASE_URL 以外は省略可能。
"""

import os

from pydantic import BaseModel

from .webhooks import RetryConfig


class Settings(BaseModel):
    database_url: str
    redis_url: str | None = None
    webhook_url: str | None = None
    webhook_retry: RetryConfig = RetryConfig()
    rate_limit_max_tokens: int = 100
    rate_limit_refill_rate: float = 10.0
    low_stock_threshold: int = 10
    create_schema: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        retry_overrides = {
            field: env[name]
            for field, name in (
                ("max_retries", "WEBHOOK_MAX_RETRIES"),
                ("initial_delay_ms", "WEBHOOK_INITIAL_DELAY_MS"),
                ("max_delay_ms", "WEBHOOK_MAX_DELAY_MS"),
                ("backoff_multiplier", "WEBHOOK_BACKOFF_MULTIPLIER"),
                ("timeout_ms", "WEBHOOK_TIMEOUT_MS"),
            )
            if env.get(name)
        }

        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL") or None,
            webhook_url=env.get("WEBHOOK_URL") or None,
            webhook_retry=RetryConfig(**retry_overrides),
            rate_limit_max_tokens=env.get("RATE_LIMIT_MAX_TOKENS", 100),
            rate_limit_refill_rate=env.get("RATE_LIMIT_REFILL_RATE", 10.0),
            low_stock_threshold=env.get("LOW_STOCK_THRESHOLD", 10),
            create_schema=env.get("CREATE_SCHEMA", "false"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
