import pytest

from ble_fingerprint_locator.models import BeaconIdentity, ReadingEvent
from ble_fingerprint_locator.ranging import RangingEngine

UUID = "AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE"

A = BeaconIdentity(1, 1)
B = BeaconIdentity(1, 2)
C = BeaconIdentity(2, 1)


class FakeTimer:
    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.cancelled = False

    def fire(self, times=1):
        for _ in range(times):
            if not self.cancelled:
                self.callback()

    def cancel(self):
        self.cancelled = True


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, callback):
        timer = FakeTimer(interval, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self):
        return [t for t in self.timers if not t.cancelled]


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def ranger(clock, timers):
    return RangingEngine(clock=clock, timer_factory=timers)


def reading(identity, rssi, timestamp):
    return ReadingEvent(identity=identity, rssi=rssi, timestamp=timestamp)
