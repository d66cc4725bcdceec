from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time

from .config_manager import ConfigManager
from .exceptions import LocatorError
from .fingerprint_store import FingerprintStore
from .localizer import LocalizationEngine
from .models import ReferencePoint
from .mqtt_processor import MQTTDataProcessor
from .ranging import RangingEngine

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)


def build_ranger(config: ConfigManager) -> RangingEngine:
    ranging_config = config.get_ranging_config()
    return RangingEngine(
        offline_timeout=float(ranging_config.get("offline_timeout", 3.0)),
        sweep_interval=float(ranging_config.get("sweep_interval", 1.0)),
        countdown_interval=float(ranging_config.get("countdown_interval", 1.0)),
    )


def _start_mqtt_thread(processor: MQTTDataProcessor) -> threading.Thread:
    t = threading.Thread(target=processor.start_mqtt_client, daemon=True)
    t.start()
    return t


def run_mqtt(args):
    config = ConfigManager(args.config)
    store = FingerprintStore(config)
    corpus = store.load(args.corpus)

    plan_id = args.plan or config.get_localization_config()["plan_id"]
    uuid = args.uuid or config.get_ranging_config()["uuid"]

    ranger = build_ranger(config)
    localizer = LocalizationEngine.from_config(ranger, config.get_localization_config())
    localizer.attach_corpus(corpus)
    processor = MQTTDataProcessor(config, ranger, localizer)

    try:
        if not localizer.start(uuid, plan_id):
            logger.error("无法启动定位: %s", localizer.status)
            return 1
    except LocatorError as e:
        logger.error("无法启动定位: %s", e)
        return 1

    t = _start_mqtt_thread(processor)

    # graceful shutdown
    def handle_sigint(sig, frame):
        localizer.stop()
        processor.stop_mqtt_client()
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_sigint)
    signal.signal(signal.SIGTERM, handle_sigint)

    t.join()
    localizer.stop()
    return 0


def run_capture(args):
    config = ConfigManager(args.config)
    store = FingerprintStore(config)
    ranging_config = config.get_ranging_config()

    uuid = args.uuid or ranging_config["uuid"]
    seconds = args.seconds or int(ranging_config.get("capture_seconds", 8))
    plan_id = args.plan or config.get_localization_config()["plan_id"]
    point = ReferencePoint.create(args.point, args.x, args.y)

    ranger = build_ranger(config)
    processor = MQTTDataProcessor(config, ranger)
    done = threading.Event()
    ranger.on_window_complete = lambda medians: done.set()

    try:
        ranger.start_ranging(uuid)
    except LocatorError as e:
        logger.error("无法开始测距: %s", e)
        return 1

    _start_mqtt_thread(processor)
    try:
        # 预热，等待实时读数
        time.sleep(args.warmup)
        ranger.start_capture(seconds)
        if not done.wait(seconds + args.warmup + 5):
            logger.error("采集超时")
            return 1
        medians = ranger.window_medians()
    finally:
        ranger.stop_ranging()
        processor.stop_mqtt_client()

    if not medians:
        logger.warning("窗口内无有效信标中值")
        return 1

    records_path = args.records or config.get_records_path()
    try:
        store.load_records(records_path)
    except FileNotFoundError:
        pass
    store.add_medians(plan_id, point, medians, uuid, seconds)
    store.export_records(records_path)
    for ident, rssi in sorted(medians.items()):
        print(f"{ident}\t{rssi} dBm")
    return 0


def run_import(args):
    config = ConfigManager(args.config)
    store = FingerprintStore(config)
    corpus = store.import_records(args.records)
    if corpus.is_empty:
        logger.error(corpus.status)
        return 1
    path = store.save(args.corpus)
    print(f"{corpus.status} -> {path}")
    return 0


def run_summary(args):
    config = ConfigManager(args.config)
    store = FingerprintStore(config)
    corpus = store.load(args.corpus)
    print(f"beacons: {len(corpus.beacons)}")
    for plan_id, count in store.summary().items():
        print(f"{plan_id}\t{count}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="ble-fingerprint-locator", description="BLE Fingerprint Locator CLI")
    parser.add_argument("--config", default=None, help="配置文件路径，默认读取 ./config/config.yaml 或环境变量 BLE_FP_CONFIG")
    parser.add_argument("--log-level", default="INFO", help="日志级别")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="通过 MQTT 读数实时定位")
    p_run.add_argument("--uuid", default=None, help="信标 UUID")
    p_run.add_argument("--plan", default=None, help="平面图 ID")
    p_run.add_argument("--corpus", default=None, help="指纹库 CSV 路径")
    p_run.set_defaults(func=run_mqtt)

    p_cap = sub.add_parser("capture", help="在参考点采集一个中值窗口")
    p_cap.add_argument("point", help="参考点名称")
    p_cap.add_argument("x", type=float, help="归一化 x (0..1)")
    p_cap.add_argument("y", type=float, help="归一化 y (0..1)")
    p_cap.add_argument("--uuid", default=None, help="信标 UUID")
    p_cap.add_argument("--plan", default=None, help="平面图 ID")
    p_cap.add_argument("--seconds", type=int, default=None, help="窗口秒数")
    p_cap.add_argument("--warmup", type=float, default=2.0, help="采集前预热秒数")
    p_cap.add_argument("--records", default=None, help="记录 CSV 路径")
    p_cap.set_defaults(func=run_capture)

    p_imp = sub.add_parser("import", help="由记录 CSV 构建指纹库")
    p_imp.add_argument("--records", default=None, help="记录 CSV 路径")
    p_imp.add_argument("--corpus", default=None, help="指纹库 CSV 输出路径")
    p_imp.set_defaults(func=run_import)

    p_sum = sub.add_parser("summary", help="打印指纹库概况")
    p_sum.add_argument("--corpus", default=None, help="指纹库 CSV 路径")
    p_sum.set_defaults(func=run_summary)

    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    # 无子命令时默认启动实时定位
    if not hasattr(args, "func"):
        args.uuid = args.plan = args.corpus = None
        return run_mqtt(args)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
