"""Tests for delivery channels: routing, Telegram formatting and error classification."""

import pytest
from rich.console import Console
from telegram.error import BadRequest, Forbidden, NetworkError

from relaybot.config.schema import Config, TelegramConfig
from relaybot.delivery.console import ConsoleDeliverer
from relaybot.delivery.router import DeliveryRouter
from relaybot.delivery.telegram import (
    TelegramDeliverer,
    _markdown_to_telegram_html,
    split_message,
)
from relaybot.errors import DeliveryError


class FakeBot:
    """Minimal stand-in for telegram.Bot that records send_message calls."""

    def __init__(self, errors: list[Exception] | None = None):
        self.errors = list(errors or [])
        self.messages: list[dict] = []

    async def send_message(self, **kwargs):
        if self.errors:
            raise self.errors.pop(0)
        self.messages.append(kwargs)


# ── Formatting ───────────────────────────────────────────────────────


class TestFormatting:
    def test_markdown_to_html(self):
        html = _markdown_to_telegram_html("**bold** and `a<b>` see [docs](https://x.io)")
        assert "<b>bold</b>" in html
        assert "<code>a&lt;b&gt;</code>" in html
        assert '<a href="https://x.io">docs</a>' in html

    def test_code_block_is_preserved(self):
        html = _markdown_to_telegram_html("```python\nx = 1 < 2\n```")
        assert html == "<pre><code>x = 1 &lt; 2\n</code></pre>"

    def test_split_prefers_newlines(self):
        text = "a" * 30 + "\n" + "b" * 30
        assert split_message(text, limit=40) == ["a" * 30, "b" * 30]

    def test_split_hard_cuts_without_newline(self):
        assert split_message("x" * 25, limit=10) == ["x" * 10, "x" * 10, "x" * 5]

    def test_short_message_is_single_chunk(self):
        assert split_message("hello") == ["hello"]


# ── Telegram ─────────────────────────────────────────────────────────


class TestTelegram:
    async def test_sends_html(self):
        bot = FakeBot()
        deliverer = TelegramDeliverer(TelegramConfig(enabled=True, token="t"), bot=bot)
        await deliverer.send("42", "**hi**")
        assert bot.messages == [{"chat_id": 42, "text": "<b>hi</b>", "parse_mode": "HTML"}]

    async def test_bad_html_falls_back_to_plain_text(self):
        bot = FakeBot(errors=[BadRequest("can't parse entities")])
        deliverer = TelegramDeliverer(TelegramConfig(), bot=bot)
        await deliverer.send("42", "**hi**")
        assert bot.messages == [{"chat_id": 42, "text": "**hi**"}]

    async def test_invalid_chat_id_is_permanent(self):
        deliverer = TelegramDeliverer(TelegramConfig(), bot=FakeBot())
        with pytest.raises(DeliveryError) as exc:
            await deliverer.send("not-a-number", "hi")
        assert exc.value.permanent

    async def test_forbidden_is_permanent(self):
        deliverer = TelegramDeliverer(TelegramConfig(), bot=FakeBot(errors=[Forbidden("bot was blocked")]))
        with pytest.raises(DeliveryError) as exc:
            await deliverer.send("42", "hi")
        assert exc.value.permanent

    async def test_network_error_is_transient(self):
        deliverer = TelegramDeliverer(TelegramConfig(), bot=FakeBot(errors=[NetworkError("timed out")]))
        with pytest.raises(DeliveryError) as exc:
            await deliverer.send("42", "hi")
        assert not exc.value.permanent

    async def test_long_message_is_chunked(self):
        bot = FakeBot()
        deliverer = TelegramDeliverer(TelegramConfig(), bot=bot)
        await deliverer.send("42", "line\n" * 2000)
        assert len(bot.messages) == 3


# ── Router ───────────────────────────────────────────────────────────


class TestRouter:
    def test_console_always_enabled(self):
        router = DeliveryRouter.from_config(Config())
        assert router.enabled_channels == ["cli"]

    def test_telegram_registered_when_enabled(self):
        config = Config()
        config.channels.telegram.enabled = True
        config.channels.telegram.token = "123:abc"
        router = DeliveryRouter.from_config(config)
        assert router.enabled_channels == ["cli", "telegram"]

    async def test_routes_to_console(self):
        console = Console(record=True, width=80)
        router = DeliveryRouter([ConsoleDeliverer(console)])
        await router.deliver("cli:direct", "hello there")
        assert "hello there" in console.export_text()

    async def test_malformed_destination_is_permanent(self):
        router = DeliveryRouter([ConsoleDeliverer(Console(record=True))])
        with pytest.raises(DeliveryError) as exc:
            await router.deliver("no-separator", "x")
        assert exc.value.permanent

    async def test_status_reflects_lifecycle(self):
        router = DeliveryRouter([ConsoleDeliverer(Console(record=True))])
        await router.start_all()
        assert router.get_status() == {"cli": {"enabled": True, "running": True}}
        await router.stop_all()
        assert router.get_status()["cli"]["running"] is False
