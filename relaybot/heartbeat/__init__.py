"""健康巡检模块：探针、分诊与告警去重。"""

from relaybot.heartbeat.service import HeartbeatService

__all__ = ["HeartbeatService"]
