import pytest

from ble_fingerprint_locator.exceptions import InvalidIdentity
from ble_fingerprint_locator.localizer import LocalizationEngine
from ble_fingerprint_locator.models import EstimateStatus, FingerprintCorpus, FingerprintSample

from conftest import A, B, UUID, reading

ALPHA = 0.35


@pytest.fixture
def corpus():
    return FingerprintCorpus(
        beacons=["1_1", "1_2"],
        samples=[
            FingerprintSample("P1", 0.2, 0.2, [-50.0, -80.0]),
            FingerprintSample("P1", 0.8, 0.6, [-80.0, -50.0]),
        ],
    )


@pytest.fixture
def localizer(ranger, timers, corpus):
    engine = LocalizationEngine(ranger, k=1, ema_alpha=ALPHA, timer_factory=timers)
    engine.attach_corpus(corpus)
    return engine


def feed(ranger, a, b, t=0.0):
    ranger.on_reading(reading(A, a, t))
    ranger.on_reading(reading(B, b, t))


class TestRebuild:
    def test_rebuild_without_corpus(self, ranger, timers):
        engine = LocalizationEngine(ranger, timer_factory=timers)

        assert engine.rebuild(plan_id="P1") is False
        assert engine.status == "No corpus attached"

    def test_rebuild_empty_plan_reports_status(self, localizer):
        assert localizer.rebuild(plan_id="P9") is False
        assert localizer.cache is None
        assert localizer.status == "No training samples for P9"

    def test_rebuild_ready(self, localizer):
        assert localizer.rebuild(plan_id="P1") is True
        assert localizer.status == "Training ready (2 samples)"

    def test_start_without_training_data_does_not_range(self, localizer, ranger, timers):
        assert localizer.start(UUID, "P9") is False
        assert ranger.uuid is None
        assert timers.timers == []

    def test_start_bad_uuid_propagates(self, localizer, timers):
        with pytest.raises(InvalidIdentity):
            localizer.start("bad", "P1")

        assert timers.timers == []


class TestTick:
    def test_tick_noop_without_cache(self, localizer, ranger):
        ranger.start_ranging(UUID)
        feed(ranger, -50, -80)

        assert localizer.tick() is None

    def test_tick_clears_estimate_without_live(self, localizer):
        localizer.start(UUID, "P1")

        estimate = localizer.tick()

        assert estimate.status is EstimateStatus.UNKNOWN
        assert not estimate.is_known
        assert estimate.confidence == 0.0

    def test_exact_match(self, localizer, ranger):
        localizer.start(UUID, "P1")
        feed(ranger, -50, -80)

        estimate = localizer.tick()

        assert estimate.x_norm == pytest.approx(0.2)
        assert estimate.y_norm == pytest.approx(0.2)
        assert estimate.confidence == pytest.approx(1.0)
        assert estimate.beacon_count == 2

    def test_ema_continuity(self, localizer, ranger):
        localizer.start(UUID, "P1")
        feed(ranger, -50, -80)
        first = localizer.tick()
        feed(ranger, -80, -50, t=1.0)
        second = localizer.tick()

        assert first.x_norm == pytest.approx(0.2)
        assert second.x_norm == pytest.approx(0.2 + ALPHA * (0.8 - 0.2))
        assert second.y_norm == pytest.approx(0.2 + ALPHA * (0.6 - 0.2))

    def test_restart_resets_ema(self, localizer, ranger):
        localizer.start(UUID, "P1")
        feed(ranger, -50, -80)
        localizer.tick()

        localizer.stop()
        localizer.start(UUID, "P1")
        feed(ranger, -80, -50)
        estimate = localizer.tick()

        assert estimate.x_norm == pytest.approx(0.8)
        assert estimate.y_norm == pytest.approx(0.6)

    def test_output_clamped(self, ranger, timers):
        corpus = FingerprintCorpus(
            beacons=["1_1"],
            samples=[FingerprintSample("P1", 1.4, -0.3, [-50.0]), FingerprintSample("P1", 1.2, -0.1, [-70.0])],
        )
        engine = LocalizationEngine(ranger, k=1, timer_factory=timers)
        engine.attach_corpus(corpus)
        engine.start(UUID, "P1")
        ranger.on_reading(reading(A, -50, 0.0))

        estimate = engine.tick()

        assert estimate.x_norm == 1.0
        assert estimate.y_norm == 0.0

    def test_timer_drives_tick_and_callback(self, localizer, ranger, timers):
        published = []
        localizer.on_estimate = published.append
        localizer.start(UUID, "P1")
        feed(ranger, -50, -80)

        tick_timer = timers.active[-1]
        assert tick_timer.interval == pytest.approx(1.0)
        tick_timer.fire()

        assert len(published) == 1
        assert published[0].to_payload() == "0.2000,0.2000,1.0000"

    def test_update_rate_floor(self, ranger, timers, corpus):
        engine = LocalizationEngine(ranger, update_hz=0.01, timer_factory=timers)
        engine.attach_corpus(corpus)
        engine.start(UUID, "P1")

        assert timers.active[-1].interval == pytest.approx(5.0)

    def test_stop_cancels_and_clears(self, localizer, ranger, timers):
        localizer.start(UUID, "P1")
        feed(ranger, -50, -80)
        localizer.tick()

        localizer.stop()

        assert localizer.status == "Stopped"
        assert not localizer.estimate.is_known
        assert timers.active == []

    def test_no_live_beacons_notifies_unknown(self, localizer):
        published = []
        localizer.on_estimate = published.append
        localizer.start(UUID, "P1")

        localizer.tick()

        assert len(published) == 1
        assert not published[0].is_known

    def test_tick_after_stop_is_noop(self, localizer, ranger):
        published = []
        localizer.on_estimate = published.append
        localizer.start(UUID, "P1")
        feed(ranger, -50, -80)
        localizer.stop()

        assert localizer.tick() is None
        assert published == []

    def test_stop_during_tick_discards_result(self, localizer, ranger):
        published = []
        localizer.on_estimate = published.append
        localizer.start(UUID, "P1")
        feed(ranger, -50, -80)
        snapshot = ranger.live_rssi

        def live_then_stop():
            live = snapshot()
            localizer.stop()
            return live

        ranger.live_rssi = live_then_stop

        assert localizer.tick() is None
        assert not localizer.estimate.is_known
        assert localizer.smoother.last is None
        assert published == []
