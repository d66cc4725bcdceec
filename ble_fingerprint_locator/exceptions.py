from __future__ import annotations


class LocatorError(Exception):
    """定位服务异常基类"""


class InvalidIdentity(LocatorError):
    """信标 UUID 范围非法"""

    def __init__(self, uuid_string: str):
        super().__init__(f"Bad UUID: {uuid_string!r}")
        self.uuid_string = uuid_string


class NotRanging(LocatorError):
    """未在测距状态下开始采集"""


class NoTrainingData(LocatorError):
    """指定平面图没有训练样本"""

    def __init__(self, plan_id: str):
        super().__init__(f"No training samples for {plan_id}")
        self.plan_id = plan_id
