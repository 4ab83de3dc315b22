from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TELEGRAM_CHANNEL = "telegram"

COMMAND_ALIASES = {
    "/start": "subscribe",
    "/subscribe": "subscribe",
    "/join": "subscribe",
    "/stop": "unsubscribe",
    "/unsubscribe": "unsubscribe",
    "/leave": "unsubscribe",
    "/status": "status",
    "/help": "help",
    "/commands": "help",
}

HELP_TEXT = "\n".join(
    [
        "Available commands:",
        "/subscribe - Subscribe to alerts",
        "/unsubscribe - Unsubscribe from alerts",
        "/status - Show current subscription status",
        "/help - Show this list",
    ]
)
UNKNOWN_TEXT = "Unknown command. Try /subscribe, /unsubscribe, /status, or /help."
FAILURE_TEXT = "Sorry, something went wrong. Please try again."


def parse_command(text: str | None) -> str | None:
    """Map the first word of a chat message to a command name.

    Group chats address bots as ``/subscribe@SomeBot``; the suffix is ignored.
    """
    words = (text or "").split(maxsplit=1)
    if not words:
        return None
    token = words[0].split("@", maxsplit=1)[0].lower()
    return COMMAND_ALIASES.get(token)


@dataclass(slots=True)
class CommandReply:
    command: str
    text: str
    subscribed: bool


class SubscriptionService:
    """Applies chat commands to the subscriber table and words the reply."""

    def __init__(self, repository, channel: str = TELEGRAM_CHANNEL) -> None:
        self.repository = repository
        self.channel = channel

    async def handle(self, chat_id: str, text: str) -> CommandReply:
        command = parse_command(text) or "unknown"
        current = await self.repository.get_subscriber_status(self.channel, chat_id)

        if command == "subscribe":
            await self.repository.subscribe(self.channel, chat_id)
            logger.info("subscriber added channel=%s chat_id=%s already=%s", self.channel, chat_id, bool(current))
            reply = "You are already subscribed." if current else "Subscribed. You will receive alerts here."
            return CommandReply(command=command, text=reply, subscribed=True)

        if command == "unsubscribe":
            await self.repository.unsubscribe(self.channel, chat_id)
            logger.info("subscriber removed channel=%s chat_id=%s", self.channel, chat_id)
            reply = "Unsubscribed. You will no longer receive alerts." if current else "You are already unsubscribed."
            return CommandReply(command=command, text=reply, subscribed=False)

        subscribed = bool(current)
        if command == "status":
            reply = "Status: subscribed." if subscribed else "Status: not subscribed."
            return CommandReply(command=command, text=reply, subscribed=subscribed)
        if command == "help":
            return CommandReply(command=command, text=HELP_TEXT, subscribed=subscribed)
        return CommandReply(command=command, text=UNKNOWN_TEXT, subscribed=subscribed)
