"""Best-effort, fire-and-forget notification dispatch.

A notification never blocks or rolls back the state change that caused it:
``trigger`` schedules a task and returns immediately, and send failures are
logged and dropped.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

import httpx

ENROLLMENT_CONFIRMATION = "enrollmentConfirmation"
PAYMENT_CONFIRMATION = "paymentConfirmation"
SUBSCRIPTION_CANCELLATION = "subscriptionCancellation"
REFUND_CONFIRMATION = "refundConfirmation"
DISPUTE_NOTIFICATION = "disputeNotification"
PAYMENT_FAILURE = "paymentFailure"
EXPIRATION_WARNING = "expirationWarning"

# Also mirrored to the operations chat
OPS_NOTIFICATIONS = {DISPUTE_NOTIFICATION}

Sender = Callable[[str, Dict], Awaitable[None]]


class HttpEmailSender:
    """Posts ``{"template", "data"}`` to the transactional email service."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def __call__(self, name: str, data: Dict) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json={"template": name, "data": data})
            response.raise_for_status()


async def log_email_sender(name: str, data: Dict) -> None:
    logging.info("Email %s (no email service configured): %s", name, data)


class NotificationTrigger:
    def __init__(self, send_email: Sender, ops_alert: Optional[Sender] = None):
        self.send_email = send_email
        self.ops_alert = ops_alert
        self._tasks: Set[asyncio.Task] = set()

    def trigger(self, name: str, data: Dict) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(name, dict(data)))
        # Held until done
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, name: str, data: Dict) -> None:
        try:
            await self.send_email(name, data)
        except Exception:
            logging.exception("Notification %s failed", name)

        if name in OPS_NOTIFICATIONS and self.ops_alert is not None:
            try:
                await self.ops_alert(name, data)
            except Exception:
                logging.exception("Ops alert for %s failed", name)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every notification scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
