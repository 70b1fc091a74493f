"""控制台投递渠道：把消息打印到终端（rich 面板），目标地址形如 "cli:direct"。"""

from rich.console import Console
from rich.panel import Panel

from relaybot import __logo__
from relaybot.delivery.base import BaseDeliverer


class ConsoleDeliverer(BaseDeliverer):
    """控制台渠道，始终可用，无需配置。"""

    name = "cli"

    def __init__(self, console: Console | None = None):
        super().__init__()
        self.console = console or Console()

    async def send(self, chat_id: str, text: str) -> None:
        self.console.print(
            Panel(text, title=f"{__logo__} {chat_id}", title_align="left", border_style="cyan")
        )
