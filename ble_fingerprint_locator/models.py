from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Iterator

from .filters import clamp01

MAX_BEACON_FIELD = 0xFFFF


@dataclass(frozen=True, order=True)
class BeaconIdentity:
    """信标标识 (major, minor)，按值比较，排序即 (major, minor) 元组序"""

    major: int
    minor: int

    @property
    def key(self) -> str:
        # 指纹库中的信标键
        return f"{self.major}_{self.minor}"

    @property
    def is_valid(self) -> bool:
        return 0 <= self.major <= MAX_BEACON_FIELD and 0 <= self.minor <= MAX_BEACON_FIELD

    @classmethod
    def from_key(cls, key: str) -> Optional["BeaconIdentity"]:
        parts = str(key).split("_")
        if len(parts) != 2:
            return None
        try:
            ident = cls(major=int(parts[0]), minor=int(parts[1]))
        except ValueError:
            return None
        return ident if ident.is_valid else None

    def __str__(self) -> str:
        return f"M{self.major} m{self.minor}"


@dataclass(frozen=True)
class ReadingEvent:
    identity: BeaconIdentity
    rssi: int
    timestamp: float

    @property
    def is_valid(self) -> bool:
        # rssi == 0 表示无效读数
        return self.rssi != 0 and self.identity.is_valid


@dataclass(frozen=True)
class LiveReading:
    rssi: int
    last_seen: float


@dataclass(frozen=True)
class ReadingBatch:
    """
    一次上报的信标读数
    格式：major,minor,rssi;major,minor,rssi;...
    """

    events: List[ReadingEvent]

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[ReadingEvent]:
        return iter(self.events)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    @classmethod
    def parse(cls, data_str: str, timestamp: float) -> "ReadingBatch":
        events: List[ReadingEvent] = []
        for item in data_str.strip().split(";"):
            fields = item.split(",")
            if len(fields) != 3:
                continue
            try:
                major, minor, rssi = (int(f) for f in fields)
            except ValueError:
                continue
            event = ReadingEvent(BeaconIdentity(major, minor), rssi, timestamp)
            if event.is_valid:
                events.append(event)
        return cls(events=events)


class RangingPhase(Enum):
    IDLE = "idle"
    RANGING = "ranging"
    CAPTURING = "capturing"


class EstimateStatus(Enum):
    UNKNOWN = "unknown"
    ESTIMATED = "estimated"


@dataclass(frozen=True)
class ReferencePoint:
    """平面图上的参考点，坐标归一化到 0..1（原点左上角）"""

    name: str
    x_norm: float
    y_norm: float
    point_id: str = ""

    @classmethod
    def create(cls, name: str, x_norm: float, y_norm: float, point_id: str = "") -> "ReferencePoint":
        return cls(
            name=name,
            x_norm=clamp01(float(x_norm)),
            y_norm=clamp01(float(y_norm)),
            point_id=point_id or name,
        )


@dataclass(frozen=True)
class FingerprintRecord:
    """采集窗口结束后，一个信标在某参考点的中值记录"""

    timestamp: str
    plan_id: str
    point_id: str
    point_name: str
    x_norm: float
    y_norm: float
    uuid: str
    major: int
    minor: int
    rssi: int
    mode: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FingerprintSample:
    plan_id: str
    x_norm: float
    y_norm: float
    vector: List[float]


@dataclass
class FingerprintCorpus:
    """
    指纹库：beacons 定义向量槽位顺序，samples 中每个向量长度与 beacons 一致
    """

    beacons: List[str] = field(default_factory=list)
    samples: List[FingerprintSample] = field(default_factory=list)
    status: str = "No dataset loaded"

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def is_empty(self) -> bool:
        return len(self.samples) == 0 or len(self.beacons) == 0

    @property
    def plans(self) -> List[str]:
        return sorted({s.plan_id for s in self.samples})

    def samples_for(self, plan_id: str) -> List[FingerprintSample]:
        return [s for s in self.samples if s.plan_id == plan_id]


@dataclass
class PositionEstimate:
    """
    实时定位结果
    confidence 为 1/(1+平均近邻距离)，随距离单调下降的启发值，并非校准概率
    """

    status: EstimateStatus = EstimateStatus.UNKNOWN
    x_norm: Optional[float] = None
    y_norm: Optional[float] = None
    confidence: float = 0.0
    beacon_count: int = 0
    timestamp: str = ""

    @classmethod
    def unknown(cls) -> "PositionEstimate":
        return cls(timestamp=datetime.now().strftime("%Y-%m-%d %H:%M:%S"))

    @property
    def is_known(self) -> bool:
        return self.x_norm is not None and self.y_norm is not None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return {k: v for k, v in d.items() if v is not None}

    def to_payload(self) -> str:
        """转换为上报字符串 x,y,confidence"""
        return f"{self.x_norm:.4f},{self.y_norm:.4f},{self.confidence:.4f}"
