"""
Stockroom — Webhook 配信 (リトライ付き)

外部のコールバック URL にイベントを POST する。

  Attempting ──2xx──────────────▶ Success
      │  ├─4xx (429 以外)──────▶ PermanentFailure (即終了)
      │  ├─不正な URL ──────────▶ PermanentFailure (送信しない)
      │  └─5xx / 429 / 通信エラー / タイムアウト ─▶ 待機 → 再試行
      └─ max_retries 回失敗 ───▶ RetriesExhausted

配信失敗は例外にせず DeliveryResult で返す。ログ保存や通知は呼び出し側の責務。
配信は at-least-once (受信側は X-Webhook-ID で重複を排除すること)。
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel

from .backoff import compute_backoff_delay

logger = logging.getLogger(__name__)


class RetryConfig(BaseModel):
    max_retries: int = 5
    initial_delay_ms: float = 1000
    max_delay_ms: float = 60000
    backoff_multiplier: float = 2
    timeout_ms: float = 5000


class WebhookEvent(BaseModel):
    id: str
    type: str
    url: str
    payload: dict[str, Any]
    metadata: dict[str, Any] | None = None


class DeliveryResult(BaseModel):
    success: bool
    status_code: int | None = None
    error: str | None = None
    attempt: int


def is_transient(status_code: int | None) -> bool:
    """通信エラー (ステータスなし)・5xx・429 は再試行対象"""
    if status_code is None:
        return True
    return status_code >= 500 or status_code == 429


class WebhookDispatcher:
    """
    Webhook をリトライ付きで配信する。

    設定は部分的に上書きでき、指定しなかった項目はデフォルト値になる:
        WebhookDispatcher(max_retries=3, initial_delay_ms=10)
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        **overrides: Any,
    ):
        base = config.model_dump() if config else {}
        self.config = RetryConfig(**{**base, **overrides})
        self.client = client
        self._sleep = sleep
        self._rng = rng or random.Random()

    def get_config(self) -> RetryConfig:
        return self.config.model_copy()

    def backoff_delay(self, attempt: int) -> float:
        return compute_backoff_delay(
            attempt,
            self.config.initial_delay_ms,
            self.config.max_delay_ms,
            self.config.backoff_multiplier,
            self._rng,
        )

    async def dispatch_webhook(self, event: WebhookEvent) -> DeliveryResult:
        """成功・恒久的失敗・リトライ上限のいずれかになるまで呼び出し側を待たせる。"""
        if self.client is not None:
            return await self._dispatch_with(self.client, event)
        async with httpx.AsyncClient() as client:
            return await self._dispatch_with(client, event)

    async def _dispatch_with(
        self, client: httpx.AsyncClient, event: WebhookEvent
    ) -> DeliveryResult:
        try:
            httpx.URL(event.url)
        except httpx.InvalidURL as e:
            logger.warning("Webhook %s has an invalid URL %r: %s", event.id, event.url, e)
            return DeliveryResult(success=False, error=f"Invalid URL: {e}", attempt=0)

        max_retries = self.config.max_retries
        last: DeliveryResult | None = None

        for attempt in range(max_retries):
            result = await self._send(client, event, attempt)
            if result.success:
                return result

            last = result
            if not is_transient(result.status_code):
                logger.warning(
                    "Webhook %s permanently rejected by %s: %s",
                    event.id,
                    event.url,
                    result.error,
                )
                return result

            logger.warning(
                "Webhook %s attempt %d/%d failed: %s",
                event.id,
                attempt + 1,
                max_retries,
                result.error,
            )
            if attempt < max_retries - 1:
                delay_ms = self.backoff_delay(attempt)
                await self._sleep(delay_ms / 1000)

        return DeliveryResult(
            success=False,
            status_code=last.status_code if last else None,
            error=(last.error if last else None) or "Maximum retries exhausted",
            attempt=max_retries,
        )

    async def _send(
        self, client: httpx.AsyncClient, event: WebhookEvent, attempt: int
    ) -> DeliveryResult:
        body: dict[str, Any] = {
            "id": event.id,
            "type": event.type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": event.payload,
        }
        if event.metadata is not None:
            body["metadata"] = event.metadata

        headers = {
            "Content-Type": "application/json",
            "X-Webhook-ID": event.id,
            "X-Webhook-Type": event.type,
            "X-Webhook-Attempt": str(attempt + 1),
        }

        logger.debug("POST %s (webhook %s, attempt %d)", event.url, event.id, attempt + 1)
        try:
            response = await client.post(
                event.url,
                json=body,
                headers=headers,
                timeout=self.config.timeout_ms / 1000,
            )
        except httpx.TimeoutException:
            return DeliveryResult(
                success=False,
                error=f"Request timeout after {self.config.timeout_ms:g}ms",
                attempt=attempt,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return DeliveryResult(success=False, error=str(e) or type(e).__name__, attempt=attempt)

        if response.is_success:
            return DeliveryResult(success=True, status_code=response.status_code, attempt=attempt)

        return DeliveryResult(
            success=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}: {response.reason_phrase}",
            attempt=attempt,
        )
