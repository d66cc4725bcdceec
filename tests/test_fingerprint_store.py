import pandas as pd
import pytest

from ble_fingerprint_locator.calculator import RSSI_FLOOR
from ble_fingerprint_locator.config_manager import ConfigManager
from ble_fingerprint_locator.fingerprint_store import FingerprintStore, build_corpus
from ble_fingerprint_locator.models import BeaconIdentity, FingerprintCorpus, FingerprintSample, ReferencePoint

from conftest import A, B, C, UUID


@pytest.fixture
def config(tmp_path):
    return ConfigManager(str(tmp_path / "config" / "config.yaml"))


@pytest.fixture
def store(config):
    return FingerprintStore(config)


def record_rows():
    header = ["timestamp", "planID", "pointID", "pointName", "xNorm", "yNorm", "uuid", "major", "minor", "rssi", "mode"]
    rows = [
        ["t1", "P1", "a1", "A1", 0.1, 0.2, UUID, 1, 1, -60, "median8s"],
        ["t1", "P1", "a1", "A1", 0.1, 0.2, UUID, 10, 1, -70, "median8s"],
        ["t2", "P1", "a2", "A2", 0.5, 0.5, UUID, 1, 1, -75, "median8s"],
        ["t2", "P1", "a2", "A2", 0.5, 0.5, UUID, 1, 1, -80, "median8s"],
        ["t2", "P1", "a2", "A2", 0.5, 0.5, UUID, 2, 1, -65, "median8s"],
        ["t3", "P1", "a3", "A3", 0.9, 0.9, UUID, 2, 1, -50, "raw"],
    ]
    return pd.DataFrame(rows, columns=header)


class TestBuildCorpus:
    def test_groups_and_orders_beacons(self):
        corpus = build_corpus(record_rows())

        # (major, minor) 排序而非字符串排序
        assert corpus.beacons == ["1_1", "2_1", "10_1"]
        assert len(corpus) == 2
        assert corpus.status == "Imported 2 samples, 3 beacons"

    def test_floor_fill_and_median(self):
        corpus = build_corpus(record_rows())
        by_point = {(s.x_norm, s.y_norm): s for s in corpus.samples}

        assert by_point[(0.1, 0.2)].vector == [-60.0, RSSI_FLOOR, -70.0]
        # 同组重复读数 [-75, -80] 取中值 -77
        assert by_point[(0.5, 0.5)].vector == [-77.0, -65.0, RSSI_FLOOR]

    def test_no_median_rows(self):
        df = record_rows()
        df["mode"] = "raw"

        corpus = build_corpus(df)

        assert corpus.is_empty
        assert corpus.status == "No median rows found"

    def test_missing_columns(self):
        with pytest.raises(KeyError):
            build_corpus(pd.DataFrame({"planID": ["P1"]}))


class TestRecords:
    def test_add_medians_creates_one_record_per_beacon(self, store):
        point = ReferencePoint.create("A1", 0.3, 1.7)

        records = store.add_medians("P1", point, {B: -70, A: -60}, UUID, 8, timestamp="t1")

        assert [(r.major, r.minor) for r in records] == [(1, 1), (1, 2)]
        assert records[0].mode == "median8s"
        assert records[0].y_norm == 1.0
        assert list(store.records["rssi"]) == [-60, -70]

    def test_export_import_builds_corpus(self, store, tmp_path):
        point = ReferencePoint.create("A1", 0.25, 0.75)
        store.add_medians("P1", point, {A: -60, C: -72}, UUID, 8, timestamp="t1")
        store.add_medians("P1", ReferencePoint.create("A2", 0.5, 0.5), {A: -70}, UUID, 8, timestamp="t2")
        path = store.export_records(str(tmp_path / "records.csv"))

        corpus = FingerprintStore(store._config).import_records(path)

        assert corpus.beacons == ["1_1", "2_1"]
        assert len(corpus.samples_for("P1")) == 2

    def test_records_csv_header(self, store, tmp_path):
        store.add_medians("P1", ReferencePoint.create("A1", 0.1, 0.1), {A: -60}, UUID, 4, timestamp="t1")
        path = store.export_records(str(tmp_path / "records.csv"))

        with open(path, encoding="utf-8") as f:
            header = f.readline().strip()

        assert header == "timestamp,planID,pointID,pointName,xNorm,yNorm,uuid,major,minor,rssi,mode"


class TestCorpusPersistence:
    def test_save_and_load(self, store, tmp_path):
        store.corpus = FingerprintCorpus(
            beacons=["1_1", "1_2"],
            samples=[
                FingerprintSample("P1", 0.2, 0.2, [-50.0, -80.0]),
                FingerprintSample("P2", 0.8, 0.6, [-80.0, RSSI_FLOOR]),
            ],
        )
        path = store.save(str(tmp_path / "corpus.csv"))

        loaded = FingerprintStore(store._config).load(path)

        assert loaded.beacons == ["1_1", "1_2"]
        assert loaded.samples[1].plan_id == "P2"
        assert loaded.samples[1].vector == [-80.0, RSSI_FLOOR]
        assert loaded.plans == ["P1", "P2"]

    def test_missing_corpus_file(self, store, tmp_path):
        corpus = store.load(str(tmp_path / "missing.csv"))

        assert corpus.is_empty

    def test_summary_and_clear(self, store):
        store.corpus = FingerprintCorpus(
            beacons=["1_1"],
            samples=[FingerprintSample("P2", 0, 0, [-50.0]), FingerprintSample("P1", 0, 0, [-60.0])],
        )

        assert store.summary() == {"P1": 1, "P2": 1}
        store.clear()
        assert store.corpus.is_empty
        assert store.corpus.status == "Cleared"


def test_beacon_key_roundtrip():
    assert BeaconIdentity.from_key(A.key) == A
    assert BeaconIdentity.from_key("x_1") is None
