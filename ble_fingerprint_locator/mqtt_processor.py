from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .config_manager import ConfigManager
from .localizer import LocalizationEngine
from .models import PositionEstimate, ReadingBatch
from .ranging import RangingEngine


logger = logging.getLogger(__name__)


class MQTTDataProcessor:
    """
    MQTT 读数来源：订阅信标读数主题并送入测距引擎，
    挂接定位引擎时把每次定位结果发布到位置主题
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        ranger: RangingEngine,
        localizer: Optional[LocalizationEngine] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config_manager = config_manager
        self.ranger = ranger
        self.localizer = localizer
        self.clock = clock
        self.client: Optional[mqtt.Client] = None
        self.current_topic: Optional[str] = None

        if self.localizer is not None:
            self.localizer.on_estimate = self.publish_estimate

    # ---------- Topics ----------
    def reading_topic(self) -> str:
        mqtt_config = self.config_manager.get_mqtt_config()
        topic = mqtt_config.get("reading_topic", "/beacon/{uuid}/readings")
        uuid = self.ranger.uuid or self.config_manager.get_ranging_config()["uuid"]
        return topic.format(uuid=str(uuid).upper())

    def position_topic(self) -> str:
        mqtt_config = self.config_manager.get_mqtt_config()
        topic = mqtt_config.get("position_topic", "/device/position/{planId}")
        plan_id = self.config_manager.get_localization_config().get("plan_id", "")
        return topic.format(planId=plan_id)

    # ---------- Core processing ----------
    def handle_payload(self, payload: str) -> int:
        """解析一条读数消息并送入测距引擎，返回有效读数个数"""
        batch = ReadingBatch.parse(payload, self.clock())
        if batch.is_empty:
            logger.debug("消息无有效信标读数: %s", payload)
            return 0
        self.ranger.on_readings(batch)
        return len(batch)

    def publish_estimate(self, estimate: PositionEstimate) -> None:
        if self.client is None or not estimate.is_known:
            return
        self.client.publish(self.position_topic(), estimate.to_payload())

    # ---------- MQTT ----------
    def start_mqtt_client(self):
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message
        try:
            mqtt_config = self.config_manager.get_mqtt_config()
            self.client.connect(mqtt_config["ip"], mqtt_config["port"], 60)
            logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])
            self.client.loop_forever()
        except OSError as e:
            logger.error("MQTT连接错误: %s", e)

    def stop_mqtt_client(self):
        if self.client is not None:
            try:
                self.client.disconnect()
                self.client.loop_stop()
                logger.info("MQTT连接已断开")
            except OSError as e:
                logger.error("断开MQTT连接时出错: %s", e)

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if not reason_code.is_failure:
            logger.info("成功连接到MQTT服务器")
            topic = self.reading_topic()
            client.subscribe(topic)
            self.current_topic = topic
            logger.info("已订阅主题: %s", topic)
        else:
            logger.error("连接失败，返回码: %s", reason_code)

    def on_message(self, client, userdata, msg: MQTTMessage):
        try:
            payload = msg.payload.decode("utf-8")
            self.handle_payload(payload)
        except Exception as e:
            logger.exception("处理消息时出错: %s", e)
