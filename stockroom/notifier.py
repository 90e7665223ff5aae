"""
Stockroom — 在庫イベントの Webhook 通知

台帳の操作結果を WebhookEvent に変換して設定済みの URL に配信し、
配信結果をログに残す (配信ログは呼び出し側の責務)。

在庫操作と通知は別の障害ドメイン: 通知に失敗しても在庫操作は取り消さない。
"""

import logging
from typing import Any
from uuid import uuid4

from .webhooks import DeliveryResult, WebhookDispatcher, WebhookEvent

logger = logging.getLogger(__name__)


class WebhookNotifier:
    def __init__(self, dispatcher: WebhookDispatcher, url: str):
        self.dispatcher = dispatcher
        self.url = url

    def build_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> WebhookEvent:
        return WebhookEvent(
            id=f"evt_{uuid4().hex}",
            type=event_type,
            url=self.url,
            payload=payload,
            metadata=metadata,
        )

    async def notify(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        event = self.build_event(event_type, payload, metadata)
        result = await self.dispatcher.dispatch_webhook(event)
        if result.success:
            logger.info(
                "Webhook %s (%s) delivered status=%s attempt=%d",
                event.id,
                event_type,
                result.status_code,
                result.attempt,
            )
        else:
            logger.warning(
                "Webhook %s (%s) failed status=%s attempt=%d error=%s",
                event.id,
                event_type,
                result.status_code,
                result.attempt,
                result.error,
            )
        return result
