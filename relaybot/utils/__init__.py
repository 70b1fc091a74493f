"""
工具模块 - 提供 relaybot 各模块共享的辅助函数。
"""

from relaybot.utils.helpers import ensure_dir, get_data_path, get_workspace_path, is_noop, now_ms

__all__ = ["ensure_dir", "get_data_path", "get_workspace_path", "is_noop", "now_ms"]
