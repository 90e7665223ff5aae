"""Tests for settings and the error envelope."""

import pytest

from stockroom.config import Settings
from stockroom.errors import (
    AppError,
    ErrorCode,
    InsufficientStockError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)


class TestSettings:
    def test_minimal_environment(self):
        settings = Settings.from_env({"DATABASE_URL": "postgresql+asyncpg://db/shop"})

        assert settings.database_url == "postgresql+asyncpg://db/shop"
        assert settings.redis_url is None
        assert settings.webhook_url is None
        assert settings.webhook_retry.max_retries == 5
        assert settings.rate_limit_max_tokens == 100
        assert settings.rate_limit_refill_rate == 10.0
        assert settings.low_stock_threshold == 10
        assert settings.create_schema is False
        assert settings.log_level == "INFO"

    def test_overrides(self):
        settings = Settings.from_env(
            {
                "DATABASE_URL": "sqlite+aiosqlite:///shop.db",
                "REDIS_URL": "redis://cache:6379",
                "WEBHOOK_URL": "https://hooks.example.com",
                "WEBHOOK_MAX_RETRIES": "3",
                "WEBHOOK_TIMEOUT_MS": "1500",
                "RATE_LIMIT_MAX_TOKENS": "20",
                "RATE_LIMIT_REFILL_RATE": "0.5",
                "LOW_STOCK_THRESHOLD": "3",
                "CREATE_SCHEMA": "true",
                "LOG_LEVEL": "debug",
            }
        )

        assert settings.redis_url == "redis://cache:6379"
        assert settings.webhook_url == "https://hooks.example.com"
        assert settings.webhook_retry.max_retries == 3
        assert settings.webhook_retry.timeout_ms == 1500
        assert settings.webhook_retry.initial_delay_ms == 1000
        assert settings.rate_limit_max_tokens == 20
        assert settings.rate_limit_refill_rate == 0.5
        assert settings.low_stock_threshold == 3
        assert settings.create_schema is True
        assert settings.log_level == "DEBUG"

    def test_database_url_required(self):
        with pytest.raises(KeyError):
            Settings.from_env({})


class TestErrors:
    def test_default_message_from_code(self):
        error = AppError(ErrorCode.INTERNAL_ERROR)
        assert error.status_code == 500
        assert error.to_dict() == {"code": "SRV_001", "message": "Internal server error"}

    def test_context_and_suggestion_serialized(self):
        error = AppError(
            ErrorCode.CONFLICT, 409, "Busy", context={"id": 1}, suggestion="Retry later"
        )
        assert error.to_dict() == {
            "code": "RES_002",
            "message": "Busy",
            "context": {"id": 1},
            "suggestion": "Retry later",
        }

    def test_not_found_message(self):
        assert NotFoundError("Reservation", 12).message == "Reservation with id 12 not found"
        assert NotFoundError("Reservation").message == "Reservation not found"

    def test_validation_error(self):
        error = ValidationError("Quantity change cannot be zero")
        assert error.status_code == 400
        assert error.code is ErrorCode.VALIDATION_FAILED

    def test_insufficient_stock_context(self):
        error = InsufficientStockError("SKU-1", available=2, requested=5)
        assert error.status_code == 400
        assert error.to_dict()["context"] == {"available": 2, "requested": 5}

    def test_rate_limited_headers(self):
        error = RateLimitedError(retry_after=60, limit=100)
        assert error.status_code == 429
        assert error.context == {"retryAfter": 60}
        assert error.headers == {
            "Retry-After": "60",
            "X-RateLimit-Limit": "100",
            "X-RateLimit-Remaining": "0",
        }
