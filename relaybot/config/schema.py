"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 relaybot 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── agent       - 外部推理 Agent 的调用方式（命令行、输出格式、默认超时）
├── scheduler   - 定时调度配置（tick 间隔、默认投递目标、并发上限）
├── tasks       - 后台任务配置（并发上限、轮询间隔、保留策略）
├── outbox      - 发件箱配置（投递轮询间隔、保留时长）
├── heartbeat   - 健康巡检配置（间隔、告警抑制窗口、探针参数）
└── channels    - 投递渠道配置（目前只有 Telegram）
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


# ==============================================================================
# Agent 调用配置
# ==============================================================================


class AgentConfig(BaseModel):
    """
    外部推理 Agent 配置。

    Agent 被当作黑盒命令行程序：指令通过 stdin 写入，
    输出从 stdout 读取。output_format="json" 时取 JSON 的 result 字段。
    """
    command: list[str] = Field(default_factory=lambda: [
        "claude",
        "-p",
        "--output-format", "json",
        "--dangerously-skip-permissions",
        "--no-session-persistence",
    ])
    output_format: str = "json"  # "json" | "text"
    timeout_s: int = 600  # 默认超时（秒），Schedule/Task 可单独覆盖
    workspace: str = "~/.relaybot/workspace"  # Agent 子进程的工作目录根
    max_output_chars: int = 50_000  # 保存到存储中的输出上限


# ==============================================================================
# 编排核心配置
# ==============================================================================


class SchedulerConfig(BaseModel):
    """定时调度配置。tick 间隔与任何单个 Schedule 的节奏无关。"""
    enabled: bool = True
    tick_interval_s: int = 30  # 调度器唤醒间隔（秒）
    default_destination: str = "cli:direct"  # 未指定目标时的默认投递地址
    max_concurrent_runs: int = 4  # 不同 Schedule 的最大并发运行数


class TasksConfig(BaseModel):
    """后台任务配置。"""
    max_concurrent: int = 4  # 工作池大小，超出的任务保持 pending
    poll_interval_s: int = 5  # 轮询 pending 任务的间隔（秒）
    retention_days: int = 7  # 终态任务保留天数
    max_terminal: int = 100  # 终态任务保留上限（超出按完成时间淘汰）
    stuck_after_s: int = 2 * 60 * 60  # 运行超过该时长视为卡死（健康探针使用）


class OutboxConfig(BaseModel):
    """发件箱配置。"""
    poll_interval_s: int = 2  # 投递轮询间隔（秒）
    retention_days: int = 3  # 已投递条目的审计保留天数


class HeartbeatConfig(BaseModel):
    """
    健康巡检配置。

    巡检流程：collect（运行探针）→ triage（Agent 分诊）→ 抑制或告警。
    同一指纹的告警在 suppression_window_s 内最多投递一次。
    """
    enabled: bool = True
    interval_s: int = 30 * 60  # 巡检间隔（秒），默认 30 分钟
    suppression_window_s: int = 2 * 60 * 60  # 告警去重窗口（秒），默认 2 小时
    alert_destination: str = ""  # 告警投递地址，为空时使用 scheduler.default_destination
    triage_timeout_s: int = 120  # 分诊调用的超时（秒）
    stale_after_s: int = 10 * 60  # 新鲜度标记超过该时长视为陈旧
    failing_runs_threshold: int = 3  # 连续失败多少次视为"中毒"的 Schedule
    http_probes: list[str] = Field(default_factory=list)  # 需要探测连通性的 URL 列表


class TelegramConfig(BaseModel):
    """Telegram 投递渠道配置。只用于发送消息，不接收。"""
    enabled: bool = False
    token: str = ""  # 从 @BotFather 获取的 Bot Token
    proxy: str | None = None  # HTTP/SOCKS5 代理地址，如 "http://127.0.0.1:7890"


class ChannelsConfig(BaseModel):
    """所有投递渠道的聚合配置。cli 渠道始终可用，无需配置。"""
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)


# ==============================================================================
# 根配置类
# ==============================================================================


class Config(BaseSettings):
    """
    relaybot 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: RELAYBOT_
    - 嵌套分隔符: __ (双下划线)
    - 示例: RELAYBOT_AGENT__TIMEOUT_S=300 可覆盖 agent.timeout_s
    """
    agent: AgentConfig = Field(default_factory=AgentConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    tasks: TasksConfig = Field(default_factory=TasksConfig)
    outbox: OutboxConfig = Field(default_factory=OutboxConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)

    @property
    def workspace_path(self) -> Path:
        """获取展开后的工作区绝对路径（将 ~ 展开为用户主目录）。"""
        return Path(self.agent.workspace).expanduser()

    @property
    def alert_destination(self) -> str:
        """健康告警的投递地址（未单独配置时回落到默认目标）。"""
        return self.heartbeat.alert_destination or self.scheduler.default_destination

    model_config = ConfigDict(
        env_prefix="RELAYBOT_",
        env_nested_delimiter="__"
    )
