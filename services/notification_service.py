"""
Notification Service

Fire-and-forget hooks for ledger lifecycle events. Delivery channels (email,
admin alerts, push) register handlers; a failing handler is logged and never
affects the state transition that triggered it.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from models import utcnow

logger = logging.getLogger(__name__)


class NotificationEvent(Enum):
    """Lifecycle events that trigger notifications"""
    WITHDRAW_REQUESTED = "withdraw_requested"
    WITHDRAW_STATUS = "withdraw_status"
    DEPOSIT_REQUESTED = "deposit_requested"
    DEPOSIT_STATUS = "deposit_status"
    CONTRACT_APPROVED = "contract_approved"
    CONTRACT_REJECTED = "contract_rejected"
    CONTRACT_COMPLETED = "contract_completed"
    REFERRAL_COMMISSION = "referral_commission"
    GIFT_CARD_REDEEMED = "gift_card_redeemed"
    ADMIN_ALERT = "admin_alert"


@dataclass
class NotificationRequest:
    """Structured notification request"""
    event: NotificationEvent
    account_id: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)
    email: Optional[str] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utcnow()


NotificationHandler = Callable[[NotificationRequest], Any]


class NotificationService:
    """Dispatches notification requests to registered handlers"""

    def __init__(self):
        self._handlers: List[NotificationHandler] = []
        self._pending_tasks = set()
        self.delivery_stats = defaultdict(int)

    def register_handler(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    def clear_handlers(self) -> None:
        self._handlers.clear()

    def notify(
        self,
        event: NotificationEvent,
        account=None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Deliver to every handler; never raises"""
        try:
            request = NotificationRequest(
                event=event,
                account_id=getattr(account, 'id', account),
                email=getattr(account, 'email', None),
                payload=dict(payload or {}),
            )
        except Exception as e:
            logger.error(f"❌ Failed to build notification {event}: {e}")
            self.delivery_stats['failed'] += 1
            return

        if not self._handlers:
            logger.debug(f"No notification handlers registered for {event.value}")
            return

        for handler in list(self._handlers):
            self._deliver(handler, request)

    def _deliver(self, handler: NotificationHandler, request: NotificationRequest) -> None:
        try:
            if inspect.iscoroutinefunction(handler):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(self._run_async(handler, request))
                else:
                    task = loop.create_task(self._run_async(handler, request))
                    self._pending_tasks.add(task)
                    task.add_done_callback(self._pending_tasks.discard)
                return

            handler(request)
            self.delivery_stats['sent'] += 1
        except Exception as e:
            self.delivery_stats['failed'] += 1
            logger.error(
                f"❌ Notification {request.event.value} for account {request.account_id} failed (non-critical): {e}"
            )

    async def _run_async(self, handler: NotificationHandler, request: NotificationRequest) -> None:
        try:
            await handler(request)
            self.delivery_stats['sent'] += 1
        except Exception as e:
            self.delivery_stats['failed'] += 1
            logger.error(
                f"❌ Notification {request.event.value} for account {request.account_id} failed (non-critical): {e}"
            )


# Global notification service instance
notification_service = NotificationService()
