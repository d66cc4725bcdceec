from __future__ import annotations

import copy
import logging
import os
import yaml

from typing import Callable, Any

logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except ValueError:
            logger.warning("环境变量 %s=%r 无法解析，使用默认值 %r", env_key, v, default)
            return default
    return default


DEFAULT_CONFIG_PATH = _env_or_default(
    "BLE_FP_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


class ConfigManager:
    """配置管理类，负责读写YAML配置文件"""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "ranging": {
                "uuid": _env_or_default("BLE_FP_UUID", "AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE"),
                "offline_timeout": _env_or_default("BLE_FP_OFFLINE_TIMEOUT", 3.0, float),
                "sweep_interval": _env_or_default("BLE_FP_SWEEP_INTERVAL", 1.0, float),
                "countdown_interval": _env_or_default("BLE_FP_COUNTDOWN_INTERVAL", 1.0, float),
                "capture_seconds": _env_or_default("BLE_FP_CAPTURE_SECONDS", 8, int),
            },
            "localization": {
                "k": _env_or_default("BLE_FP_K", 5, int),
                "rssi_floor": _env_or_default("BLE_FP_RSSI_FLOOR", -100.0, float),
                "update_hz": _env_or_default("BLE_FP_UPDATE_HZ", 1.0, float),
                "ema_alpha": _env_or_default("BLE_FP_EMA_ALPHA", 0.35, float),
                "plan_id": _env_or_default("BLE_FP_PLAN_ID", "ENG4_NORTH"),
            },
            "mqtt": {
                "ip": _env_or_default("BLE_MQTT_IP", "localhost"),
                "port": _env_or_default("BLE_MQTT_PORT", 1883, int),
                "reading_topic": _env_or_default("BLE_MQTT_READING_TOPIC", "/beacon/{uuid}/readings"),
                "position_topic": _env_or_default("BLE_MQTT_POSITION_TOPIC", "/device/position/{planId}"),
            },
            "paths": {
                "corpus": _env_or_default(
                    "BLE_FP_PATH_CORPUS", os.path.join(".", "fingerprints", "corpus.csv")
                ),
                "records": _env_or_default(
                    "BLE_FP_PATH_RECORDS", os.path.join(".", "fingerprints", "records.csv")
                ),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """加载配置文件，如果不存在则创建默认配置"""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r", encoding="utf-8") as f:
                    self.config = yaml.safe_load(f) or {}
                self._merge_default_config()
            else:
                self.config = copy.deepcopy(self.default_config)
                self.save_config()
        except (OSError, yaml.YAMLError) as e:
            # 发生异常时回退到默认配置
            logger.warning("读取配置失败，使用默认配置: %s", e)
            self.config = copy.deepcopy(self.default_config)

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                )
        except OSError as e:
            logger.warning("保存配置失败: %s", e)

    # ---------- Accessors ----------
    def get_ranging_config(self):
        return self.config["ranging"]

    def get_localization_config(self):
        return self.config["localization"]

    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_paths(self):
        return self.config.get("paths", {})

    def get_corpus_path(self):
        return self.get_paths()["corpus"]

    def get_records_path(self):
        return self.get_paths()["records"]

    def set_mqtt_config(self, ip, port, reading_topic=None, position_topic=None):
        self.config["mqtt"]["ip"] = ip
        self.config["mqtt"]["port"] = port
        if reading_topic is not None:
            self.config["mqtt"]["reading_topic"] = reading_topic
        if position_topic is not None:
            self.config["mqtt"]["position_topic"] = position_topic
        self.save_config()

    def set_localization_config(self, k=None, rssi_floor=None, update_hz=None, ema_alpha=None, plan_id=None):
        loc = self.config["localization"]
        for key, value in (
            ("k", k),
            ("rssi_floor", rssi_floor),
            ("update_hz", update_hz),
            ("ema_alpha", ema_alpha),
            ("plan_id", plan_id),
        ):
            if value is not None:
                loc[key] = value
        self.save_config()

    def set_ranging_config(self, uuid=None, capture_seconds=None):
        if uuid is not None:
            self.config["ranging"]["uuid"] = uuid
        if capture_seconds is not None:
            self.config["ranging"]["capture_seconds"] = capture_seconds
        self.save_config()
