"""
Telegram 投递渠道 - 基于 python-telegram-bot 的 Bot 客户端，只发送不接收。

目标地址形如 "telegram:<chat_id>"，chat_id 为整数。

发送策略：
1. 超长消息按 Telegram 的长度限制切分（优先在换行处切分）
2. 先把 Markdown 转为 Telegram HTML 发送
3. HTML 解析失败（BadRequest）时回退为纯文本
4. 网络错误等可重试的失败抛出 DeliveryError，由发件箱分发器放回队列
"""

from __future__ import annotations

import re

from loguru import logger
from telegram import Bot
from telegram.error import BadRequest, Forbidden, TelegramError
from telegram.request import HTTPXRequest

from relaybot.config.schema import TelegramConfig
from relaybot.delivery.base import BaseDeliverer
from relaybot.errors import DeliveryError

# Telegram 单条消息上限为 4096 字符，留出 HTML 标签膨胀的余量
MAX_MESSAGE_CHARS = 4000


def _markdown_to_telegram_html(text: str) -> str:
    """
    将 Markdown 格式文本转换为 Telegram 兼容的 HTML。

    Telegram 的 HTML 支持有限（仅支持 <b>、<i>、<code>、<pre>、<a> 等），
    采用"保护-转换-恢复"三步法：先把代码提取为占位符，
    转换剩余文本，最后恢复代码并包裹 HTML 标签。
    """
    if not text:
        return ""

    code_blocks: list[str] = []

    def save_code_block(m: re.Match) -> str:
        code_blocks.append(m.group(1))
        return f"\x00CB{len(code_blocks) - 1}\x00"

    text = re.sub(r'```[\w]*\n?([\s\S]*?)```', save_code_block, text)

    inline_codes: list[str] = []

    def save_inline_code(m: re.Match) -> str:
        inline_codes.append(m.group(1))
        return f"\x00IC{len(inline_codes) - 1}\x00"

    text = re.sub(r'`([^`]+)`', save_inline_code, text)

    # 标题、引用 → 纯文本
    text = re.sub(r'^#{1,6}\s+(.+)$', r'\1', text, flags=re.MULTILINE)
    text = re.sub(r'^>\s*(.*)$', r'\1', text, flags=re.MULTILINE)

    # 转义必须在生成 HTML 标签之前
    text = _escape_html(text)

    text = re.sub(r'\[([^\]]+)\]\(([^)]+)\)', r'<a href="\2">\1</a>', text)
    text = re.sub(r'\*\*(.+?)\*\*', r'<b>\1</b>', text)
    text = re.sub(r'__(.+?)__', r'<b>\1</b>', text)
    text = re.sub(r'(?<![a-zA-Z0-9])_([^_]+)_(?![a-zA-Z0-9])', r'<i>\1</i>', text)
    text = re.sub(r'~~(.+?)~~', r'<s>\1</s>', text)
    text = re.sub(r'^[-*]\s+', '• ', text, flags=re.MULTILINE)

    for i, code in enumerate(inline_codes):
        text = text.replace(f"\x00IC{i}\x00", f"<code>{_escape_html(code)}</code>")
    for i, code in enumerate(code_blocks):
        text = text.replace(f"\x00CB{i}\x00", f"<pre><code>{_escape_html(code)}</code></pre>")

    return text


def _escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def split_message(text: str, limit: int = MAX_MESSAGE_CHARS) -> list[str]:
    """按长度上限切分消息，优先在换行处切分，找不到换行时硬切。"""
    chunks: list[str] = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


class TelegramDeliverer(BaseDeliverer):
    """
    Telegram 投递渠道。

    属性:
        config: Telegram 配置（token、代理）
        _bot: python-telegram-bot 的 Bot 实例，start() 时创建
    """

    name = "telegram"

    def __init__(self, config: TelegramConfig, bot: Bot | None = None):
        super().__init__()
        self.config = config
        self._bot = bot

    async def start(self) -> None:
        if not self.config.token and self._bot is None:
            logger.error("Telegram bot token not configured")
            return

        if self._bot is None:
            req = HTTPXRequest(
                connection_pool_size=8,
                connect_timeout=30.0,
                read_timeout=30.0,
                proxy=self.config.proxy,
            )
            self._bot = Bot(token=self.config.token, request=req)

        await self._bot.initialize()
        self._running = True
        logger.info("Telegram deliverer ready")

    async def stop(self) -> None:
        self._running = False
        if self._bot:
            await self._bot.shutdown()
            self._bot = None

    async def send(self, chat_id: str, text: str) -> None:
        if not self._bot:
            raise DeliveryError("Telegram deliverer not running")

        try:
            numeric_id = int(chat_id)
        except ValueError:
            raise DeliveryError(f"Invalid Telegram chat_id: {chat_id}", permanent=True)

        for chunk in split_message(text):
            await self._send_chunk(numeric_id, chunk)

    async def _send_chunk(self, chat_id: int, text: str) -> None:
        try:
            await self._bot.send_message(
                chat_id=chat_id,
                text=_markdown_to_telegram_html(text),
                parse_mode="HTML",
            )
            return
        except BadRequest as e:
            logger.warning(f"HTML parse failed, falling back to plain text: {e}")
        except Forbidden as e:
            raise DeliveryError(f"Telegram refused chat {chat_id}: {e}", permanent=True) from e
        except TelegramError as e:
            raise DeliveryError(f"Error sending Telegram message: {e}") from e

        try:
            await self._bot.send_message(chat_id=chat_id, text=text)
        except BadRequest as e:
            raise DeliveryError(f"Telegram rejected message for chat {chat_id}: {e}", permanent=True) from e
        except TelegramError as e:
            raise DeliveryError(f"Error sending Telegram message: {e}") from e
