"""BLE Fingerprint Locator package.

This package provides:
- RangingEngine: live RSSI view, offline pruning and median capture windows
- LocalizationEngine: z-score training cache + weighted k-NN live regression
- FingerprintStore: median records and fingerprint corpus (pandas + CSV)
- ConfigManager: YAML-based configuration management
- MQTTDataProcessor: MQTT reading source and position publisher
"""

from .config_manager import ConfigManager
from .exceptions import InvalidIdentity, LocatorError, NoTrainingData, NotRanging
from .fingerprint_store import FingerprintStore, build_corpus
from .localizer import LocalizationEngine
from .models import BeaconIdentity, FingerprintCorpus, FingerprintSample, PositionEstimate, ReadingEvent
from .mqtt_processor import MQTTDataProcessor
from .ranging import RangingEngine

__all__ = [
    "ConfigManager",
    "RangingEngine",
    "LocalizationEngine",
    "FingerprintStore",
    "build_corpus",
    "MQTTDataProcessor",
    "BeaconIdentity",
    "ReadingEvent",
    "FingerprintCorpus",
    "FingerprintSample",
    "PositionEstimate",
    "LocatorError",
    "InvalidIdentity",
    "NotRanging",
    "NoTrainingData",
]
