import logging
from typing import Optional

from telegram import Bot


async def send_telegram_message(token: Optional[str], chat_id: Optional[int], text: str) -> bool:
    """Send ``text`` to ``chat_id``. Returns False instead of raising on any failure."""
    if not token or not chat_id:
        logging.debug("Telegram is not configured; message skipped")
        return False
    try:
        bot = Bot(token=token)
        logging.info("Sending Telegram message: chat_id=%s", chat_id)
        await bot.send_message(chat_id=chat_id, text=text)
        return True
    except Exception:
        logging.exception("Failed to send Telegram message to chat_id=%s", chat_id)
        return False
