"""Zeno: a Telegram bot that answers questions in group chats.

Public API:
- run_bot(): start the telegram bot (provided by zeno.telegram_bot.run_bot)
"""

from .telegram_bot import run_bot

__all__ = ["run_bot"]
