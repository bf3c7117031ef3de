from __future__ import annotations

import logging
from typing import Protocol

from training_market.models import Order

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def order_paid(self, order: Order) -> None:
        ...


class LoggingNotifier:
    def order_paid(self, order: Order) -> None:
        logger.info(
            "order %s paid: confirmation for %s, total %.2f",
            order.order_number,
            order.billing_email,
            order.total_amount,
        )
