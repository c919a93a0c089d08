import logging

from telegram import Bot

from academy.config import get_settings


async def send_telegram_message(chat_id: int, text: str, token: str = None):
    """Send ``text`` to a Telegram chat; failures are logged, not raised."""
    token = token or get_settings().telegram_bot_token
    if not token:
        logging.warning("TELEGRAM_BOT_TOKEN is not set, dropping message for chat_id=%s", chat_id)
        return
    try:
        bot = Bot(token=token)
        logging.info("Sending Telegram message: chat_id=%s", chat_id)
        await bot.send_message(chat_id=chat_id, text=text)
    except Exception:
        logging.exception("Failed to send Telegram message to chat_id=%s", chat_id)


async def send_ops_alert(text: str):
    """Post to the operations chat configured by OPS_CHAT_ID."""
    settings = get_settings()
    if settings.ops_chat_id is None:
        logging.warning("OPS_CHAT_ID is not set, ops alert not sent: %s", text)
        return
    await send_telegram_message(settings.ops_chat_id, text, token=settings.telegram_bot_token)


def format_dispute_alert(data: dict) -> str:
    amount = data.get("amount")
    amount_text = f"${amount / 100:.2f}" if isinstance(amount, int) else "unknown amount"
    return (
        "⚠️ Payment dispute opened\n"
        f"Dispute: {data.get('dispute_id')}\n"
        f"Charge: {data.get('charge_id')}\n"
        f"User: {data.get('user_id') or 'unknown'}\n"
        f"Amount: {amount_text}\n"
        f"Reason: {data.get('reason') or 'n/a'}\n"
        f"Evidence due: {data.get('evidence_due_by') or 'n/a'}"
    )
