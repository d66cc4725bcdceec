from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .calculator import RSSI_FLOOR, TrainingCache
from .exceptions import NoTrainingData
from .filters import EmaSmoother, clamp01
from .models import EstimateStatus, FingerprintCorpus, PositionEstimate
from .ranging import RangingEngine
from .timers import TimerFactory, TimerHandle, start_periodic

logger = logging.getLogger(__name__)

MIN_UPDATE_HZ = 0.2


class LocalizationEngine:
    """基于指纹库的实时 k-NN 回归定位"""

    def __init__(
        self,
        ranger: RangingEngine,
        k: int = 5,
        rssi_floor: float = RSSI_FLOOR,
        update_hz: float = 1.0,
        ema_alpha: float = 0.35,
        timer_factory: TimerFactory = start_periodic,
    ):
        self.lock = threading.Lock()
        self.ranger = ranger
        self.k = k
        self.rssi_floor = rssi_floor
        self.update_hz = update_hz
        self.timer_factory = timer_factory
        self.smoother = EmaSmoother(ema_alpha)

        self.status = "Idle"
        self.on_estimate: Optional[Callable[[PositionEstimate], None]] = None

        self._corpus: Optional[FingerprintCorpus] = None
        self._plan_id: Optional[str] = None
        self._cache: Optional[TrainingCache] = None
        self._estimate = PositionEstimate.unknown()
        self._timer: Optional[TimerHandle] = None
        self._running = False

    @classmethod
    def from_config(cls, ranger: RangingEngine, loc_config: dict, **kwargs) -> "LocalizationEngine":
        return cls(
            ranger,
            k=int(loc_config.get("k", 5)),
            rssi_floor=float(loc_config.get("rssi_floor", RSSI_FLOOR)),
            update_hz=float(loc_config.get("update_hz", 1.0)),
            ema_alpha=float(loc_config.get("ema_alpha", 0.35)),
            **kwargs,
        )

    # ---------- Training cache ----------
    def attach_corpus(self, corpus: FingerprintCorpus) -> None:
        with self.lock:
            self._corpus = corpus

    def rebuild(self, corpus: Optional[FingerprintCorpus] = None, plan_id: Optional[str] = None) -> bool:
        """
        重建训练缓存；平面图或指纹库变更后须由调用方重新调用
        无训练数据时清空缓存并返回 False
        """
        with self.lock:
            if corpus is not None:
                self._corpus = corpus
            if plan_id is not None:
                self._plan_id = plan_id
            if self._corpus is None:
                self._cache = None
                self.status = "No corpus attached"
                logger.warning("未加载指纹库")
                return False
            try:
                self._cache = TrainingCache.build(self._corpus, self._plan_id or "")
            except NoTrainingData as e:
                self._cache = None
                self.status = str(e)
                logger.warning("训练数据为空: %s", e.plan_id)
                return False
            self.status = f"Training ready ({len(self._cache)} samples)"
        logger.info("训练缓存就绪: plan=%s, 样本 %s, 信标 %s",
                    self._plan_id, len(self._cache), self._cache.n_beacons)
        return True

    @property
    def cache(self) -> Optional[TrainingCache]:
        return self._cache

    # ---------- Lifecycle ----------
    def start(self, uuid_string: str, plan_id: str) -> bool:
        if not self.rebuild(plan_id=plan_id):
            self._clear_estimate()
            return False

        # InvalidIdentity 直接抛给调用方，不启动定时器
        self.ranger.start_ranging(uuid_string)

        with self.lock:
            stale = self._timer
            self.smoother.reset()
            self._estimate = PositionEstimate.unknown()
            self.status = "Ranging + regressing..."
            self._running = True
            self._timer = self.timer_factory(1.0 / max(self.update_hz, MIN_UPDATE_HZ), self.tick)
        if stale is not None:
            stale.cancel()
        logger.info("开始实时定位: plan=%s, k=%s, %.2f Hz", plan_id, self.k, self.update_hz)
        return True

    def stop(self) -> None:
        self.ranger.stop_ranging()
        with self.lock:
            stale = self._timer
            self._timer = None
            self._running = False
            self.smoother.reset()
            self._estimate = PositionEstimate.unknown()
            self.status = "Stopped"
        if stale is not None:
            stale.cancel()
        logger.info("停止实时定位")

    def close(self) -> None:
        self.stop()

    # ---------- Tick ----------
    def tick(self) -> Optional[PositionEstimate]:
        """未启动或已停止时不做任何更新"""
        live = self.ranger.live_rssi()
        with self.lock:
            # 快照期间可能已被 stop()
            if not self._running:
                return None
            cache = self._cache
            if cache is None or len(cache) == 0:
                return None
            callback = self.on_estimate
            if not live:
                self._estimate = PositionEstimate.unknown()
                estimate = self._estimate
            else:
                estimate = self._regress(cache, live)
                if estimate is None:
                    return None

        if estimate.is_known:
            logger.debug("定位: (%.4f, %.4f), 置信度 %.3f", estimate.x_norm, estimate.y_norm, estimate.confidence)
        if callback is not None:
            callback(estimate)
        return estimate

    def _regress(self, cache: TrainingCache, live) -> Optional[PositionEstimate]:
        # 调用方须持有 self.lock
        z = cache.normalize(cache.live_vector(live, self.rssi_floor))
        result = cache.regress(z, k=self.k)
        if result is None:
            return None

        x, y = self.smoother.update(clamp01(result.x), clamp01(result.y))
        self._estimate = PositionEstimate(
            status=EstimateStatus.ESTIMATED,
            x_norm=x,
            y_norm=y,
            confidence=result.confidence,
            beacon_count=len(live),
            timestamp=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        )
        return self._estimate

    @property
    def estimate(self) -> PositionEstimate:
        with self.lock:
            return self._estimate

    def _clear_estimate(self) -> None:
        with self.lock:
            self._estimate = PositionEstimate.unknown()
