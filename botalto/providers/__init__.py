"""Messaging providers for botalto."""

from .base import MessageHandler, Provider, ProviderConnection, parse_command
from .telegram import TelegramConnection, TelegramProvider

__all__ = [
    "MessageHandler",
    "Provider",
    "ProviderConnection",
    "TelegramConnection",
    "TelegramProvider",
    "parse_command",
]
