"""投递渠道模块：把发件箱中的产出送达控制台或 Telegram。"""

from relaybot.delivery.base import BaseDeliverer
from relaybot.delivery.console import ConsoleDeliverer
from relaybot.delivery.router import DeliveryRouter

__all__ = ["BaseDeliverer", "ConsoleDeliverer", "DeliveryRouter"]
