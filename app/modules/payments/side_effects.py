"""Best-effort side effects fired once per confirmed purchase."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from app.core.cache import CacheBackend, get_cache_backend
from app.modules.notifications.mailer import PurchaseNotifier, get_purchase_notifier
from app.modules.payments.models import Order

logger = logging.getLogger(__name__)


def learner_cache_keys(learner_id: UUID) -> tuple[str, ...]:
    """Cached read-models that reflect the learner's entitlements."""
    return (f"learner:home:{learner_id}", f"learner:profile:{learner_id}")


@dataclass(slots=True, frozen=True)
class PurchaseConfirmation:
    order_id: UUID
    learner_id: UUID
    learner_email: str
    learner_name: str
    program_name: str
    amount: Decimal
    currency: str

    @classmethod
    def from_order(cls, order: Order) -> "PurchaseConfirmation":
        return cls(
            order_id=order.id,
            learner_id=order.learner_id,
            learner_email=order.learner.email,
            learner_name=order.learner.name,
            program_name=order.program.name,
            amount=order.amount,
            currency=order.currency,
        )


class PaymentSideEffectDispatcher:
    """Invalidate learner caches inline and send the confirmation in background.

    Failures are logged and never propagate: the financial transition has
    already been committed when this runs.
    """

    def __init__(self, notifier: PurchaseNotifier, cache: CacheBackend | None = None) -> None:
        self.cache = cache
        self.notifier = notifier
        self._tasks: set[asyncio.Task[None]] = set()

    async def dispatch_purchase_confirmed(self, confirmation: PurchaseConfirmation) -> None:
        await self._invalidate_learner_cache(confirmation.learner_id)

        task = asyncio.create_task(self._send_confirmation(confirmation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _cache(self) -> CacheBackend:
        # get_cache_backend() returns a new backend after a settings change.
        return self.cache if self.cache is not None else get_cache_backend()

    async def _invalidate_learner_cache(self, learner_id: UUID) -> None:
        for key in learner_cache_keys(learner_id):
            try:
                await self._cache().delete(key)
            except Exception:
                logger.exception("Failed to invalidate cache key %s", key)

    async def _send_confirmation(self, confirmation: PurchaseConfirmation) -> None:
        try:
            await self.notifier.send_purchase_confirmation(
                confirmation.learner_email,
                confirmation.learner_name,
                confirmation.program_name,
                confirmation.amount,
                confirmation.currency,
            )
        except Exception:
            logger.exception(
                "Failed to send purchase confirmation for order %s",
                confirmation.order_id,
            )


_dispatcher: PaymentSideEffectDispatcher | None = None


def get_side_effect_dispatcher() -> PaymentSideEffectDispatcher:
    """Return process-wide dispatcher so in-flight tasks can be drained on shutdown."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = PaymentSideEffectDispatcher(notifier=get_purchase_notifier())
    return _dispatcher
