"""
Stockroom — エラー定義

API 境界で JSON に変換されるアプリケーションエラー。
コードは領域ごとに採番する (VAL / RES / INV / RATE / HOOK / SRV)。
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    # Validation
    VALIDATION_FAILED = "VAL_001"
    INVALID_INPUT = "VAL_002"

    # Resources
    NOT_FOUND = "RES_001"
    CONFLICT = "RES_002"

    # Inventory
    OUT_OF_STOCK = "INV_001"
    INSUFFICIENT_STOCK = "INV_002"
    RESERVATION_FAILED = "INV_003"
    INVALID_QUANTITY = "INV_004"

    # Rate limiting
    RATE_LIMITED = "RATE_001"

    # Webhooks
    WEBHOOK_FAILED = "HOOK_001"
    WEBHOOK_TIMEOUT = "HOOK_002"
    WEBHOOK_RETRY_EXHAUSTED = "HOOK_003"

    # Server
    INTERNAL_ERROR = "SRV_001"
    SERVICE_UNAVAILABLE = "SRV_002"
    DATABASE_ERROR = "SRV_003"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "Validation failed",
    ErrorCode.INVALID_INPUT: "Invalid input provided",
    ErrorCode.NOT_FOUND: "Resource not found",
    ErrorCode.CONFLICT: "Resource conflict",
    ErrorCode.OUT_OF_STOCK: "Product is out of stock",
    ErrorCode.INSUFFICIENT_STOCK: "Insufficient stock available",
    ErrorCode.RESERVATION_FAILED: "Failed to reserve inventory",
    ErrorCode.INVALID_QUANTITY: "Invalid quantity specified",
    ErrorCode.RATE_LIMITED: "Too many requests, please try again later",
    ErrorCode.WEBHOOK_FAILED: "Webhook delivery failed",
    ErrorCode.WEBHOOK_TIMEOUT: "Webhook request timed out",
    ErrorCode.WEBHOOK_RETRY_EXHAUSTED: "Webhook delivery failed after maximum retries",
    ErrorCode.INTERNAL_ERROR: "Internal server error",
    ErrorCode.SERVICE_UNAVAILABLE: "Service temporarily unavailable",
    ErrorCode.DATABASE_ERROR: "Database operation failed",
}


class AppError(Exception):
    """ステータスコードと構造化コンテキストを持つアプリケーションエラー"""

    status_code: int = 500

    def __init__(
        self,
        code: ErrorCode,
        status_code: int | None = None,
        message: str | None = None,
        context: dict[str, Any] | None = None,
        suggestion: str | None = None,
    ) -> None:
        self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message or ERROR_MESSAGES[code]
        self.context = context
        self.suggestion = suggestion
        self.headers: dict[str, str] = {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.context:
            result["context"] = self.context
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result


class ValidationError(AppError):
    status_code = 400

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(ErrorCode.VALIDATION_FAILED, message=message, context=context)


class NotFoundError(AppError):
    status_code = 404

    def __init__(self, resource_type: str, resource_id: Any = None) -> None:
        if resource_id is not None:
            message = f"{resource_type} with id {resource_id} not found"
        else:
            message = f"{resource_type} not found"
        super().__init__(ErrorCode.NOT_FOUND, message=message)
        self.resource_type = resource_type
        self.resource_id = resource_id


class InsufficientStockError(AppError):
    status_code = 400

    def __init__(self, sku: str, available: int, requested: int) -> None:
        super().__init__(
            ErrorCode.INSUFFICIENT_STOCK,
            message=f"Only {available} units available for variant {sku}",
            context={"available": available, "requested": requested},
        )
        self.available = available
        self.requested = requested


class RateLimitedError(AppError):
    status_code = 429

    def __init__(self, retry_after: int, limit: int) -> None:
        super().__init__(
            ErrorCode.RATE_LIMITED,
            context={"retryAfter": retry_after},
        )
        self.retry_after = retry_after
        self.headers = {
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
        }
