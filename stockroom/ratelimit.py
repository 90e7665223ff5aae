"""
Stockroom — トークンバケット方式のレート制限

キー (デフォルトはクライアント IP) ごとにバケットを持つ。
  tokens     … 最大 max_tokens。経過秒数 × refill_rate だけ回復する
  last_refill … 最後に補充計算した時刻

「補充 → 比較 → 減算」はキー単位のロックで原子的に行う。
consume は待機しない (await しない) ので、スレッドからも呼べる。

メモリ上のみで保持する。使われなくなったバケットは
5 分ごとのクリーンアップで削除する (1 時間以上前 かつ tokens == 0)。
"""

import asyncio
import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from fastapi import Request, Response

from .errors import RateLimitedError

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 5 * 60
STALE_AFTER_SECONDS = 60 * 60
RETRY_AFTER_SECONDS = 60


@dataclass
class TokenBucket:
    tokens: float
    last_refill: float
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class RateLimiterStore:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._cleanup_task: asyncio.Task | None = None

    def get_bucket(self, key: str, max_tokens: float = 0) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = TokenBucket(
                    tokens=float(max_tokens), last_refill=self._clock()
                )
            return bucket

    def consume(
        self,
        key: str,
        max_tokens: float,
        refill_rate: float,
        cost: float = 1,
    ) -> bool:
        """トークンを消費できれば True。失敗時も補充と時刻更新は行う。"""
        allowed, _ = self.consume_with_remaining(key, max_tokens, refill_rate, cost)
        return allowed

    def consume_with_remaining(
        self,
        key: str,
        max_tokens: float,
        refill_rate: float,
        cost: float = 1,
    ) -> tuple[bool, int]:
        """consume と同じ。消費直後の残数 (切り捨て) も同じロック内で返す。"""
        bucket = self.get_bucket(key, max_tokens)
        with bucket.lock:
            now = self._clock()
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(max_tokens, bucket.tokens + elapsed * refill_rate)
            bucket.last_refill = now

            allowed = bucket.tokens >= cost
            if allowed:
                bucket.tokens -= cost
            return allowed, math.floor(bucket.tokens)

    def remaining(self, key: str) -> int:
        with self._lock:
            bucket = self._buckets.get(key)
        if bucket is None:
            return 0
        with bucket.lock:
            return math.floor(bucket.tokens)

    def cleanup(self) -> int:
        """古くて空のバケットを削除する。トークンが回復したバケットは残す。"""
        cutoff = self._clock() - STALE_AFTER_SECONDS
        with self._lock:
            stale = [
                key
                for key, bucket in self._buckets.items()
                if bucket.last_refill < cutoff and bucket.tokens == 0
            ]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.debug("Evicted %d idle rate limit buckets", len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        return key in self._buckets

    # ── ライフサイクル ─────────────────────────────

    def start(self, interval: float = CLEANUP_INTERVAL_SECONDS) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._run_cleanup(interval))

    async def shutdown(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_cleanup(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cleanup()


def client_key(request: Request) -> str:
    """X-Forwarded-For の先頭 → CF-Connecting-IP → 接続元 → "unknown" """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimiter:
    """
    FastAPI 依存関係として使うレート制限。

        limiter = RateLimiter(store, max_tokens=100, refill_rate=10)
        router = APIRouter(dependencies=[Depends(limiter)])

    許可時は X-RateLimit-Limit / X-RateLimit-Remaining を付与し、
    拒否時は RateLimitedError (429, Retry-After: 60) を送出する。
    """

    def __init__(
        self,
        store: RateLimiterStore,
        max_tokens: int,
        refill_rate: float,
        key_func: Callable[[Request], str] = client_key,
        retry_after: int = RETRY_AFTER_SECONDS,
    ):
        self.store = store
        self.max_tokens = max_tokens
        self.refill_rate = refill_rate
        self.key_func = key_func
        self.retry_after = retry_after

    async def __call__(self, request: Request, response: Response) -> None:
        key = self.key_func(request)
        allowed, remaining = self.store.consume_with_remaining(
            key, self.max_tokens, self.refill_rate
        )
        if not allowed:
            logger.info("Rate limited key=%s path=%s", key, request.url.path)
            raise RateLimitedError(retry_after=self.retry_after, limit=self.max_tokens)

        response.headers["X-RateLimit-Limit"] = str(self.max_tokens)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
