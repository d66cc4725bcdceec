from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple

from .exceptions import InvalidIdentity, NotRanging
from .filters import median_rssi
from .models import BeaconIdentity, LiveReading, RangingPhase, ReadingEvent
from .timers import TimerFactory, TimerHandle, start_periodic

logger = logging.getLogger(__name__)

OFFLINE_TIMEOUT = 3.0


class CaptureWindow:
    """一次采集窗口：倒计时、每个信标的样本序列、被整体作废的信标集合"""

    def __init__(self, seconds: int):
        self.seconds_left = seconds
        self.samples: Dict[BeaconIdentity, List[int]] = {}
        self.discarded: Set[BeaconIdentity] = set()

    def add(self, identity: BeaconIdentity, rssi: int) -> None:
        if identity in self.discarded:
            return
        self.samples.setdefault(identity, []).append(rssi)

    def discard(self, identity: BeaconIdentity) -> None:
        # 一次掉线即作废该信标整个窗口，而非截断
        self.discarded.add(identity)
        self.samples.pop(identity, None)

    def medians(self) -> Dict[BeaconIdentity, int]:
        return {
            ident: median_rssi(values)
            for ident, values in self.samples.items()
            if values and ident not in self.discarded
        }


class RangingEngine:
    """
    信标测距与采集引擎

    状态：Idle -> Ranging -> Capturing -> Ranging ... -> Idle
    所有状态只由本对象修改，公开入口与定时回调都在同一把锁内串行执行。
    """

    def __init__(
        self,
        offline_timeout: float = OFFLINE_TIMEOUT,
        sweep_interval: float = 1.0,
        countdown_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: TimerFactory = start_periodic,
    ):
        self.lock = threading.Lock()
        self.offline_timeout = offline_timeout
        self.sweep_interval = sweep_interval
        self.countdown_interval = countdown_interval
        self.clock = clock
        self.timer_factory = timer_factory

        self.status = "Idle"
        self.on_window_complete: Optional[Callable[[Dict[BeaconIdentity, int]], None]] = None

        self._phase = RangingPhase.IDLE
        self._uuid: Optional[uuid.UUID] = None
        self._live: Dict[BeaconIdentity, LiveReading] = {}
        self._window: Optional[CaptureWindow] = None
        self._medians: Dict[BeaconIdentity, int] = {}
        self._sweep_timer: Optional[TimerHandle] = None
        self._countdown_timer: Optional[TimerHandle] = None

    # ---------- Ranging ----------
    def start_ranging(self, uuid_string: str) -> None:
        try:
            scope = uuid.UUID(str(uuid_string).strip())
        except ValueError:
            with self.lock:
                self.status = "Bad UUID"
            logger.warning("非法 UUID: %s", uuid_string)
            raise InvalidIdentity(uuid_string) from None

        with self.lock:
            stale = self._detach_timers()
            self._uuid = scope
            self._live = {}
            self._window = None
            self._medians = {}
            self._phase = RangingPhase.RANGING
            self.status = "Ranging..."
            self._sweep_timer = self.timer_factory(self.sweep_interval, self.sweep)
        self._cancel(stale)
        logger.info("开始测距: %s", scope)

    def stop_ranging(self) -> None:
        with self.lock:
            if self._phase is RangingPhase.IDLE:
                return
            stale = self._detach_timers()
            self._window = None
            self._live = {}
            self._phase = RangingPhase.IDLE
            self.status = "Stopped"
        self._cancel(stale)
        logger.info("停止测距: %s", self._uuid)

    def on_reading(self, event: ReadingEvent) -> None:
        with self.lock:
            if self._phase is RangingPhase.IDLE or not event.is_valid:
                logger.debug("丢弃读数: %s", event)
                return
            self._live[event.identity] = LiveReading(rssi=event.rssi, last_seen=event.timestamp)
            if self._window is not None:
                self._window.add(event.identity, event.rssi)

    def on_readings(self, events) -> None:
        for event in events:
            self.on_reading(event)

    def sweep(self, now: Optional[float] = None) -> List[BeaconIdentity]:
        """掉线清理：超过 offline_timeout 未出现的信标移出实时表，采集中则作废其窗口"""
        now = self.clock() if now is None else now
        with self.lock:
            offline = [
                ident
                for ident, reading in self._live.items()
                if now - reading.last_seen > self.offline_timeout
            ]
            for ident in offline:
                del self._live[ident]
                if self._window is not None:
                    self._window.discard(ident)
        if offline:
            logger.debug("信标掉线: %s", ", ".join(str(i) for i in sorted(offline)))
        return offline

    # ---------- Capture ----------
    def start_capture(self, window_seconds: int) -> None:
        if window_seconds < 1:
            raise ValueError(f"window_seconds must be >= 1, got {window_seconds}")
        with self.lock:
            if self._phase is RangingPhase.IDLE:
                self.status = "Not ranging"
                raise NotRanging("start_capture requires an active ranging session")
            stale = [self._countdown_timer]
            window = CaptureWindow(int(window_seconds))
            # 当前在线信标的最新值作为窗口首个样本
            for ident, reading in self._live.items():
                window.add(ident, reading.rssi)
            self._window = window
            self._medians = {}
            self._phase = RangingPhase.CAPTURING
            self.status = "Capturing"
            self._countdown_timer = self.timer_factory(
                self.countdown_interval, lambda: self._countdown(window)
            )
        self._cancel(stale)
        logger.info("开始采集窗口: %ss, 在线信标数: %s", window_seconds, len(window.samples))

    def stop_capture(self) -> None:
        with self.lock:
            if self._phase is not RangingPhase.CAPTURING:
                return
            stale = [self._countdown_timer]
            self._countdown_timer = None
            self._window = None
            self._phase = RangingPhase.RANGING
            self.status = "Capture cancelled"
        self._cancel(stale)
        logger.info("采集已取消")

    def countdown(self) -> Optional[Dict[BeaconIdentity, int]]:
        """倒计时一秒；归零时返回窗口中值"""
        with self.lock:
            window = self._window
        if window is None:
            return None
        return self._countdown(window)

    def _countdown(self, window: CaptureWindow) -> Optional[Dict[BeaconIdentity, int]]:
        with self.lock:
            # 已被取消或替换的窗口不再处理
            if self._window is not window:
                return None
            window.seconds_left -= 1
            if window.seconds_left > 0:
                return None
            stale = [self._countdown_timer]
            self._countdown_timer = None
            self._medians = window.medians()
            self._window = None
            self._phase = RangingPhase.RANGING
            self.status = "Capture complete"
            medians = dict(self._medians)
            callback = self.on_window_complete
        self._cancel(stale)
        logger.info("采集完成: %s 个信标中值, 作废 %s 个", len(medians), len(window.discarded))
        if callback is not None:
            callback(medians)
        return medians

    # ---------- Accessors ----------
    @property
    def phase(self) -> RangingPhase:
        return self._phase

    @property
    def is_capturing(self) -> bool:
        return self._phase is RangingPhase.CAPTURING

    @property
    def uuid(self) -> Optional[str]:
        return str(self._uuid).upper() if self._uuid else None

    @property
    def seconds_left(self) -> int:
        with self.lock:
            return self._window.seconds_left if self._window else 0

    @property
    def discarded(self) -> Set[BeaconIdentity]:
        with self.lock:
            return set(self._window.discarded) if self._window else set()

    def live_snapshot(self) -> Dict[BeaconIdentity, LiveReading]:
        with self.lock:
            return dict(self._live)

    def live_rssi(self) -> Dict[BeaconIdentity, int]:
        with self.lock:
            return {ident: reading.rssi for ident, reading in self._live.items()}

    def window_medians(self) -> Dict[BeaconIdentity, int]:
        with self.lock:
            return dict(self._medians)

    def capture_sample_counts(self) -> Dict[BeaconIdentity, int]:
        with self.lock:
            if self._window is None:
                return {}
            return {ident: len(values) for ident, values in self._window.samples.items()}

    def sorted_live(self) -> List[Tuple[BeaconIdentity, int]]:
        return sorted(self.live_rssi().items())

    def sorted_medians(self) -> List[Tuple[BeaconIdentity, int]]:
        return sorted(self.window_medians().items())

    # ---------- Timers ----------
    def _detach_timers(self) -> List[Optional[TimerHandle]]:
        stale = [self._sweep_timer, self._countdown_timer]
        self._sweep_timer = None
        self._countdown_timer = None
        return stale

    @staticmethod
    def _cancel(handles: List[Optional[TimerHandle]]) -> None:
        # 必须在释放锁之后调用，等待锁的回调才能退出
        for handle in handles:
            if handle is not None:
                handle.cancel()

    def close(self) -> None:
        self.stop_ranging()
