"""Scheduled batch: expire lapsed enrollments and send due expiry warnings.

Run from cron (e.g. hourly): ``python process_expired.py``.
"""

import asyncio
import logging

from academy.config import get_settings
from academy.db.session import SessionLocal
from academy.dependencies import build_services
from academy.services.notification_service import EXPIRATION_WARNING


async def send_due_warnings(services) -> int:
    sent = 0
    async with services.session_factory() as db:
        for notification, enrollment in await services.ledger.due_notifications(db):
            services.notifier.trigger(
                EXPIRATION_WARNING,
                {
                    "user_id": enrollment.user_id,
                    "email": (enrollment.meta or {}).get("user_email"),
                    "enrollment_id": enrollment.id,
                    "product": enrollment.product_key,
                    "warning": notification.notification_type,
                    "expires_at": enrollment.expires_at.isoformat() if enrollment.expires_at else None,
                },
            )
            await services.ledger.mark_notification_sent(db, notification)
            sent += 1
        await db.commit()
    return sent


async def run(services) -> dict:
    async with services.session_factory() as db:
        expired = await services.ledger.process_expired(db)
        await db.commit()
    warned = await send_due_warnings(services)
    await services.notifier.drain()
    logging.info("Expiry run: %s expired, %s warnings sent", expired, warned)
    return {"expired": expired, "warnings": warned}


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    asyncio.run(run(build_services(settings, SessionLocal)))


if __name__ == "__main__":
    main()
