from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pandas as pd

from .calculator import RSSI_FLOOR
from .config_manager import ConfigManager
from .filters import median_rssi
from .models import (
    BeaconIdentity,
    FingerprintCorpus,
    FingerprintRecord,
    FingerprintSample,
    ReferencePoint,
)

logger = logging.getLogger(__name__)

# CSV 列名与内存字段对应
RECORD_COLUMNS = {
    "timestamp": "timestamp",
    "planID": "plan_id",
    "pointID": "point_id",
    "pointName": "point_name",
    "xNorm": "x_norm",
    "yNorm": "y_norm",
    "uuid": "uuid",
    "major": "major",
    "minor": "minor",
    "rssi": "rssi",
    "mode": "mode",
}
CORPUS_LABEL_COLUMNS = ["planID", "xNorm", "yNorm"]


def _beacon_sort_key(key: str):
    ident = BeaconIdentity.from_key(key)
    return (0, ident.major, ident.minor, key) if ident else (1, 0, 0, key)


def build_corpus(records: pd.DataFrame) -> FingerprintCorpus:
    """
    由中值记录构建指纹库：
    - 只保留 mode 以 median 开头的行
    - 按 (timestamp, planID, xNorm, yNorm) 分组，每组一个样本
    - 信标键集合按 (major, minor) 排序，缺失槽位填 RSSI_FLOOR
    - 同组同一信标多条记录取中值
    """
    required = ["timestamp", "planID", "xNorm", "yNorm", "major", "minor", "rssi"]
    missing = [c for c in required if c not in records.columns]
    if missing:
        raise KeyError(f"CSV 缺少列: {', '.join(missing)}")

    df = records.copy()
    if "mode" in df.columns:
        df = df[df["mode"].astype(str).str.startswith("median")].copy()
    if df.empty:
        return FingerprintCorpus(status="No median rows found")

    df["xNorm"] = pd.to_numeric(df["xNorm"], errors="coerce").fillna(0.0)
    df["yNorm"] = pd.to_numeric(df["yNorm"], errors="coerce").fillna(0.0)
    df["rssi"] = pd.to_numeric(df["rssi"], errors="coerce").fillna(RSSI_FLOOR).astype(int)
    df["beacon"] = df["major"].astype(str).str.strip() + "_" + df["minor"].astype(str).str.strip()

    beacons = sorted(df["beacon"].unique().tolist(), key=_beacon_sort_key)
    index = {b: i for i, b in enumerate(beacons)}

    samples: List[FingerprintSample] = []
    for (_, plan, x, y), group in df.groupby(["timestamp", "planID", "xNorm", "yNorm"], sort=True):
        vec = [RSSI_FLOOR] * len(beacons)
        for beacon, vals in group.groupby("beacon")["rssi"]:
            vec[index[beacon]] = float(median_rssi(vals.tolist()))
        samples.append(FingerprintSample(plan_id=str(plan), x_norm=float(x), y_norm=float(y), vector=vec))

    return FingerprintCorpus(
        beacons=beacons,
        samples=samples,
        status=f"Imported {len(samples)} samples, {len(beacons)} beacons",
    )


class FingerprintStore:
    """管理采集记录与指纹库的存取（pandas + CSV）"""

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self._config = config_manager or ConfigManager()
        self._records = pd.DataFrame(columns=list(RECORD_COLUMNS))
        self.corpus = FingerprintCorpus()

    # ---- Records ----
    @property
    def records(self) -> pd.DataFrame:
        return self._records

    def add_medians(
        self,
        plan_id: str,
        point: ReferencePoint,
        medians: Dict[BeaconIdentity, int],
        uuid: str,
        capture_seconds: int,
        timestamp: Optional[str] = None,
    ) -> List[FingerprintRecord]:
        ts = timestamp or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        mode = f"median{capture_seconds}s"
        new_records = [
            FingerprintRecord(
                timestamp=ts,
                plan_id=plan_id,
                point_id=point.point_id,
                point_name=point.name,
                x_norm=point.x_norm,
                y_norm=point.y_norm,
                uuid=uuid,
                major=ident.major,
                minor=ident.minor,
                rssi=int(rssi),
                mode=mode,
            )
            for ident, rssi in sorted(medians.items())
        ]
        if new_records:
            rows = pd.DataFrame([r.to_dict() for r in new_records])
            rows = rows.rename(columns={v: k for k, v in RECORD_COLUMNS.items()})
            frames = [f for f in (self._records, rows) if not f.empty]
            self._records = pd.concat(frames, ignore_index=True)
        logger.info("保存中值记录: plan=%s, 点=%s, 信标 %s", plan_id, point.name, len(new_records))
        return new_records

    def clear_records(self) -> None:
        self._records = pd.DataFrame(columns=list(RECORD_COLUMNS))

    def export_records(self, csv_path: Optional[str] = None) -> str:
        csv_path = csv_path or self._config.get_records_path()
        os.makedirs(os.path.dirname(csv_path) or ".", exist_ok=True)
        self._records.to_csv(csv_path, index=False, encoding="utf-8")
        return csv_path

    def load_records(self, csv_path: Optional[str] = None, append: bool = False) -> pd.DataFrame:
        csv_path = csv_path or self._config.get_records_path()
        df = pd.read_csv(csv_path, dtype={"timestamp": str, "planID": str, "pointID": str, "mode": str})
        if append and not self._records.empty:
            df = pd.concat([self._records, df], ignore_index=True)
        self._records = df
        return df

    def import_records(self, csv_path: Optional[str] = None) -> FingerprintCorpus:
        """读取记录 CSV 并重建指纹库"""
        df = self.load_records(csv_path)
        self.corpus = build_corpus(df)
        logger.info(self.corpus.status)
        return self.corpus

    # ---- Corpus ----
    def load(self, corpus_path: Optional[str] = None) -> FingerprintCorpus:
        csv_path = corpus_path or self._config.get_corpus_path()
        if not os.path.exists(csv_path):
            logger.warning("指纹库文件不存在: %s", csv_path)
            self.corpus = FingerprintCorpus()
            return self.corpus
        df = pd.read_csv(csv_path, dtype={"planID": str})
        missing = [c for c in CORPUS_LABEL_COLUMNS if c not in df.columns]
        if missing:
            raise KeyError(f"指纹库 CSV 缺少列: {', '.join(missing)}")
        beacons = [c for c in df.columns if c not in CORPUS_LABEL_COLUMNS]
        values = df[beacons].apply(pd.to_numeric, errors="coerce").fillna(RSSI_FLOOR)
        samples = [
            FingerprintSample(
                plan_id=str(plan),
                x_norm=float(x),
                y_norm=float(y),
                vector=[float(v) for v in row],
            )
            for plan, x, y, row in zip(df["planID"], df["xNorm"], df["yNorm"], values.itertuples(index=False))
        ]
        self.corpus = FingerprintCorpus(
            beacons=beacons,
            samples=samples,
            status=f"Loaded {len(samples)} samples, {len(beacons)} beacons",
        )
        logger.info(self.corpus.status)
        return self.corpus

    def save(self, corpus_path: Optional[str] = None) -> str:
        csv_path = corpus_path or self._config.get_corpus_path()
        os.makedirs(os.path.dirname(csv_path) or ".", exist_ok=True)
        rows = [
            {"planID": s.plan_id, "xNorm": s.x_norm, "yNorm": s.y_norm, **dict(zip(self.corpus.beacons, s.vector))}
            for s in self.corpus.samples
        ]
        df = pd.DataFrame(rows, columns=CORPUS_LABEL_COLUMNS + list(self.corpus.beacons))
        df.to_csv(csv_path, index=False, encoding="utf-8")
        return csv_path

    def clear(self) -> None:
        self.corpus = FingerprintCorpus(status="Cleared")

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for s in self.corpus.samples:
            counts[s.plan_id] = counts.get(s.plan_id, 0) + 1
        return dict(sorted(counts.items()))
