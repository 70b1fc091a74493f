"""
工具函数集合 - relaybot 项目全局通用的辅助函数。

函数分类：
- 路径管理：ensure_dir, get_data_path, get_workspace_path
- 字符串工具：truncate_string, safe_filename, is_noop
- 时间工具：now_ms, format_local_time, time_ago
- 解析工具：parse_destination, short_id
"""

import time
import uuid
from datetime import datetime
from pathlib import Path

# Agent 表示"无需输出"的哨兵文本，产出为该文本时不写入发件箱
NOOP_SENTINEL = "SKIP"


def ensure_dir(path: Path) -> Path:
    """
    确保目录存在，不存在则递归创建。

    参数:
        path: 目标目录路径

    返回:
        创建后的目录路径（原样返回）
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """获取 relaybot 数据目录（~/.relaybot）。自动创建不存在的目录。"""
    return ensure_dir(Path.home() / ".relaybot")


def get_workspace_path(workspace: str | None = None) -> Path:
    """
    获取工作空间路径。

    工作空间是 Agent 子进程的工作根目录，后台任务会在其下
    按投递目标划分子目录（tasks/<destination>）。

    参数:
        workspace: 自定义工作空间路径。为 None 时使用默认路径 ~/.relaybot/workspace

    返回:
        展开并确保存在的工作空间路径
    """
    if workspace:
        path = Path(workspace).expanduser()
    else:
        path = Path.home() / ".relaybot" / "workspace"
    return ensure_dir(path)


def now_ms() -> int:
    """获取当前时间的毫秒级 Unix 时间戳。"""
    return int(time.time() * 1000)


def short_id(length: int = 8) -> str:
    """生成短 ID（uuid4 十六进制前缀），方便日志追踪。"""
    return uuid.uuid4().hex[:length]


def format_local_time(ms: int) -> str:
    """把毫秒时间戳格式化为本地时间，如 "2026-10-18 09:30 (Sunday)"。"""
    return datetime.fromtimestamp(ms / 1000).astimezone().strftime("%Y-%m-%d %H:%M (%A)")


def time_ago(ms: int, now: int | None = None) -> str:
    """把时间戳格式化为相对时间，如 "just now"、"5m ago"、"3h ago"。"""
    diff = (now if now is not None else now_ms()) - ms
    mins = diff // 60_000
    if mins < 1:
        return "just now"
    if mins < 60:
        return f"{mins}m ago"
    hours = mins // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """
    截断字符串到指定最大长度，超出时添加后缀。

    参数:
        s: 原始字符串
        max_len: 最大长度（包含后缀），默认 100
        suffix: 截断后缀，默认 "..."

    返回:
        截断后的字符串
    """
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def safe_filename(name: str) -> str:
    """
    将字符串转换为安全的文件名（移除/替换不安全字符）。

    替换的不安全字符包括：< > : " / \\ | ? *
    """
    unsafe = '<>:"/\\|?*'
    for char in unsafe:
        name = name.replace(char, "_")
    return name.strip()


def is_noop(text: str | None) -> bool:
    """
    判断 Agent 的产出是否为"无需输出"。

    空文本视为无输出；否则去掉首尾空白、反引号、句点后，
    与 SKIP 哨兵做大小写无关比较。
    """
    if text is None:
        return True
    stripped = text.strip().strip("`").strip().rstrip(".").strip()
    if not stripped:
        return True
    return stripped.upper() == NOOP_SENTINEL


def parse_destination(destination: str) -> tuple[str, str]:
    """
    解析投递目标为渠道名和聊天 ID。

    目标格式为 "channel:chat_id"，如 "telegram:123456"、"cli:direct"。

    参数:
        destination: 投递目标字符串

    返回:
        (channel, chat_id) 元组

    异常:
        ValueError: 目标格式不正确（不包含冒号分隔符）
    """
    parts = destination.split(":", 1)
    if len(parts) != 2 or not parts[0]:
        raise ValueError(f"Invalid destination: {destination}")
    return parts[0], parts[1]
