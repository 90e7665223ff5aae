"""指数バックオフ + ジッターの待ち時間計算"""

import random

MIN_DELAY_MS = 100
JITTER_RATIO = 0.1


def compute_backoff_delay(
    attempt: int,
    initial_delay_ms: float,
    max_delay_ms: float,
    multiplier: float,
    rng: random.Random | None = None,
) -> float:
    """
    attempt 回目 (0 始まり) の失敗後に待つミリ秒を返す。

    delay = min(initial * multiplier^attempt, max) に ±10% のジッターを加え、
    100ms を下限とする。
    """
    exponential = min(initial_delay_ms * multiplier**attempt, max_delay_ms)
    uniform = (rng or random).uniform(-1.0, 1.0)
    return max(MIN_DELAY_MS, exponential + exponential * JITTER_RATIO * uniform)
