# collaborators.py
import logging
from decimal import Decimal

import httpx

from order_service import config

logger = logging.getLogger("order-service.collaborators")


class HttpPaymentGateway:
    """Asks the payment service to refund a rejected or cancelled order. One attempt."""

    def __init__(self, base_url: str = None, timeout: float = None):
        self.base_url = (base_url or config.PAYMENT_SERVICE_URL).rstrip("/")
        self.timeout = timeout or config.COLLABORATOR_TIMEOUT

    async def refund(self, order):
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.post(
                f"{self.base_url}/refunds",
                json={
                    "order_id": order.id,
                    "amount": str(order.final_amount),
                    "transaction_id": order.payment.get("transaction_id"),
                    "reason": order.status.value,
                },
            )
            r.raise_for_status()
        logger.info(f"[Refund] 💸 Refund requested for order {order.id} ({order.final_amount})")


class HttpEarningsLedger:
    """Reports a completed delivery's earnings to the driver service."""

    def __init__(self, base_url: str = None, timeout: float = None):
        self.base_url = (base_url or config.DRIVER_SERVICE_URL).rstrip("/")
        self.timeout = timeout or config.COLLABORATOR_TIMEOUT

    async def settle(self, order, amount: Decimal):
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.post(
                f"{self.base_url}/internal/earnings",
                json={
                    "driver_id": order.driver_id,
                    "order_id": order.id,
                    "amount": str(amount),
                    "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
                },
            )
            r.raise_for_status()
        logger.info(f"[Earnings] Driver {order.driver_id} credited {amount} for order {order.id}")
