from __future__ import annotations

from typing import Optional, Sequence, Tuple


def median_rssi(values: Sequence[int]) -> int:
    """
    整数中值：奇数个取中间值；偶数个取中间两值均值并向零截断
    [1, 2, 3] -> 2, [1, 2, 3, 4] -> 2, [-60, -65] -> -62
    """
    if not values:
        raise ValueError("median of empty sequence")
    s = sorted(values)
    m = len(s) // 2
    if len(s) % 2 == 0:
        return int((s[m - 1] + s[m]) / 2.0)
    return s[m]


def clamp01(v: float) -> float:
    return min(max(v, 0.0), 1.0)


class EmaSmoother:
    """二维指数移动平均滤波，首个值直接作为初值"""

    def __init__(self, alpha: float = 0.35):
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        self.alpha = alpha
        self.last: Optional[Tuple[float, float]] = None

    def reset(self) -> None:
        self.last = None

    def update(self, x: float, y: float) -> Tuple[float, float]:
        if self.last is not None:
            px, py = self.last
            x = px + self.alpha * (x - px)
            y = py + self.alpha * (y - py)
        self.last = (x, y)
        return self.last
