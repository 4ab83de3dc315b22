import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from obitwatch.api.deps import get_subscriptions, get_telegram_bot
from obitwatch.core.config import Settings, get_settings
from obitwatch.services.notifier import TelegramNotifier
from obitwatch.services.repository import RepositoryError, RepositoryUnavailableError
from obitwatch.services.subscriptions import FAILURE_TEXT, SubscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


def _secret_matches(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


@router.post("/telegram")
async def telegram_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    bot: TelegramNotifier | None = Depends(get_telegram_bot),
    subscriptions: SubscriptionService = Depends(get_subscriptions),
) -> dict[str, Any]:
    if settings.telegram_webhook_secret and not _secret_matches(
        request.headers.get(SECRET_HEADER), settings.telegram_webhook_secret
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        update = json.loads(await request.body())
    except (UnicodeDecodeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from exc

    message = update.get("message") if isinstance(update, dict) else None
    chat = message.get("chat") if isinstance(message, dict) else None
    chat_id = chat.get("id") if isinstance(chat, dict) else None
    text = message.get("text") if isinstance(message, dict) else None
    if chat_id in (None, "") or not isinstance(text, str) or not text.strip():
        return {"ok": True, "ignored": True}

    if bot is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="telegram bot is not configured")

    chat_key = str(chat_id)
    try:
        reply = await subscriptions.handle(chat_key, text)
    except RepositoryError as exc:
        logger.exception("telegram command failed chat_id=%s", chat_key)
        await bot.send_text(chat_key, FAILURE_TEXT)
        code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if isinstance(exc, RepositoryUnavailableError)
            else status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        raise HTTPException(status_code=code, detail="subscription update failed") from exc

    delivered = await bot.send_text(chat_key, reply.text)
    return {"ok": True, "command": reply.command, "subscribed": reply.subscribed, "replied": delivered}
