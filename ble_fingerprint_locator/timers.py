from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


class PeriodicTimer:
    """后台线程周期回调，创建后即运行，cancel() 后不再触发"""

    def __init__(self, interval: float, callback: Callable[[], None], name: str | None = None):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self.callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name or "periodic-timer", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.callback()
            except Exception as e:
                logger.exception("定时回调出错: %s", e)

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()

    def cancel(self) -> None:
        self._stopped.set()
        # 回调内部取消自身时不能 join
        if threading.current_thread() is not self._thread:
            self._thread.join()


def start_periodic(interval: float, callback: Callable[[], None]) -> PeriodicTimer:
    return PeriodicTimer(interval, callback)
