from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Optional

import numpy as np

from .exceptions import NoTrainingData
from .models import BeaconIdentity, FingerprintCorpus

RSSI_FLOOR = -100.0
STD_EPS = 1e-6
WEIGHT_EPS = 1e-3


@dataclass(frozen=True)
class KnnResult:
    x: float
    y: float
    mean_distance: float
    neighbors: int

    @property
    def confidence(self) -> float:
        """1/(1+平均近邻距离)，距离越远越低"""
        return 1.0 / (1.0 + self.mean_distance)


class TrainingCache:
    """
    归一化后的训练集

    beacons: 信标键顺序，决定向量槽位
    mean/std: 每个槽位的均值与总体标准差（+eps）
    features: z-score 后的训练向量 (M, N)
    labels: 对应的 (x, y) 标签 (M, 2)
    """

    def __init__(
        self,
        beacons: List[str],
        mean: np.ndarray,
        std: np.ndarray,
        features: np.ndarray,
        labels: np.ndarray,
    ):
        n = len(beacons)
        if mean.shape != (n,) or std.shape != (n,):
            raise ValueError(f"mean/std must have shape ({n},), got {mean.shape}, {std.shape}")
        if features.ndim != 2 or features.shape[1] != n:
            raise ValueError(f"features must have shape (M, {n}), got {features.shape}")
        if labels.shape != (features.shape[0], 2):
            raise ValueError(f"labels must have shape ({features.shape[0]}, 2), got {labels.shape}")
        self.beacons = list(beacons)
        self.mean = mean
        self.std = std
        self.features = features
        self.labels = labels
        self._index = {key: i for i, key in enumerate(self.beacons)}

    @classmethod
    def build(cls, corpus: FingerprintCorpus, plan_id: str) -> "TrainingCache":
        filtered = corpus.samples_for(plan_id)
        if not filtered or not corpus.beacons:
            raise NoTrainingData(plan_id)

        n = len(corpus.beacons)
        features = np.array([s.vector for s in filtered], dtype=float)
        if features.shape[1] != n:
            raise ValueError(
                f"sample vectors have {features.shape[1]} slots, corpus has {n} beacons"
            )
        labels = np.array([(s.x_norm, s.y_norm) for s in filtered], dtype=float)

        mean = features.mean(axis=0)
        std = features.std(axis=0) + STD_EPS  # 总体标准差 (ddof=0)
        features -= mean
        features /= std
        return cls(corpus.beacons, mean, std, features, labels)

    def __len__(self) -> int:
        return self.features.shape[0]

    @property
    def n_beacons(self) -> int:
        return len(self.beacons)

    def live_vector(
        self, live: Mapping[BeaconIdentity, float], rssi_floor: float = RSSI_FLOOR
    ) -> np.ndarray:
        """按缓存槽位构造实时向量，缺失信标填 rssi_floor，未知信标忽略"""
        vec = np.full(self.n_beacons, rssi_floor, dtype=float)
        for ident, rssi in live.items():
            idx = self._index.get(ident.key)
            if idx is not None:
                vec[idx] = float(rssi)
        return vec

    def normalize(self, vec: np.ndarray) -> np.ndarray:
        return (vec - self.mean) / self.std

    def regress(self, z: np.ndarray, k: int = 5) -> Optional[KnnResult]:
        return knn_regress(z, self.features, self.labels, k=k)


def knn_regress(
    z: np.ndarray,
    features: np.ndarray,
    labels: np.ndarray,
    k: int = 5,
    eps: float = WEIGHT_EPS,
) -> Optional[KnnResult]:
    """
    反距离加权 k-NN 回归
    x̂ = Σ w_i x_i / Σ w_i, w_i = 1 / (d_i + eps)
    训练样本少于 k 时使用全部样本；权重和为 0（k <= 0）时返回 None
    """
    if features.shape[0] == 0:
        return None
    distances = np.linalg.norm(features - z, axis=1)
    k_eff = min(max(k, 0), len(distances))
    idx = np.argsort(distances, kind="stable")[:k_eff]

    k_distances = distances[idx]
    weights = 1.0 / (k_distances + eps)
    weights_sum = float(np.sum(weights))
    if weights_sum <= 0.0:
        return None

    x, y = np.sum(weights[:, np.newaxis] * labels[idx], axis=0) / weights_sum
    return KnnResult(
        x=float(x),
        y=float(y),
        mean_distance=float(np.mean(k_distances)),
        neighbors=int(k_eff),
    )
