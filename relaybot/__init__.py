"""
relaybot - 个人助理宿主进程

模块概述：
    本文件是 relaybot 包的入口文件（__init__.py），定义了包的元信息。
    relaybot 不内置任何"智能"，而是把外部事件（聊天消息、定时器）
    转换为对外部推理 Agent（如 `claude -p` 命令行）的调用，
    并把 Agent 的产出可靠地投递回用户。

    编排核心包括：
    - 定时调度（cron）：周期性/一次性触发 Agent 调用，单飞保证
    - 后台任务（agent）：按需创建的长时间任务，有界并发
    - 发件箱（outbox）：解耦"工作完成"与"用户已收到通知"
    - 健康巡检（heartbeat）：探针 + Agent 分诊 + 告警去重
    - 状态存储（store）：SQLite 事务存储，崩溃安全
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "📮"
