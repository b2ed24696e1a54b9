from typing import Optional

import httpx
from pydantic import BaseModel

from payment_hub.logging_config import get_logger
from payment_hub.models import Invoice, PaymentOutcome

logger = get_logger(__name__)

HOOK_NAMES = {
    PaymentOutcome.WAITING: "on_waiting",
    PaymentOutcome.CONFIRMING: "on_confirming",
    PaymentOutcome.FINISHED: "on_finished",
    PaymentOutcome.FAILED: "on_failed",
    PaymentOutcome.REFUNDED: "on_refunded",
    PaymentOutcome.EXPIRED: "on_expired",
}


class PaymentEvent(BaseModel):
    order_id: str
    invoice_id: str
    outcome: PaymentOutcome
    reason: str
    invoice: Invoice

    def as_payload(self) -> dict:
        return {
            "event": HOOK_NAMES.get(self.outcome, "on_waiting"),
            "orderId": self.order_id,
            "invoiceId": self.invoice_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "invoice": self.invoice.summary(),
        }


class PaymentHooks:
    """
    Downstream side effects, one per outcome. Subclass and override what you need.
    """

    async def on_waiting(self, event: PaymentEvent) -> None:
        pass

    async def on_confirming(self, event: PaymentEvent) -> None:
        pass

    async def on_finished(self, event: PaymentEvent) -> None:
        pass

    async def on_failed(self, event: PaymentEvent) -> None:
        pass

    async def on_refunded(self, event: PaymentEvent) -> None:
        pass

    async def on_expired(self, event: PaymentEvent) -> None:
        pass

    async def fire(self, hook_name: str, event: PaymentEvent) -> None:
        await getattr(self, hook_name)(event)


class LoggingPaymentHooks(PaymentHooks):
    async def fire(self, hook_name: str, event: PaymentEvent) -> None:
        invoice = event.invoice
        logger.info(
            "Payment %s order_id=%s invoice_id=%s expected=%s %s paid=%s %s fiat=%s reason=%s",
            event.outcome.value,
            event.order_id,
            event.invoice_id,
            invoice.price_amount.describe(),
            invoice.price_currency,
            invoice.paid.describe(),
            invoice.paid_currency,
            invoice.paid_fiat.describe(),
            event.reason,
        )
        await super().fire(hook_name, event)


class ForwardingPaymentHooks(LoggingPaymentHooks):
    """
    Forwards every outcome event to the merchant application's webhook URL.
    Delivery is attempted once; failures are logged.
    """

    def __init__(self, target_url: str, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 5.0):
        self.target_url = target_url
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def fire(self, hook_name: str, event: PaymentEvent) -> None:
        await super().fire(hook_name, event)
        try:
            response = await self.client.post(self.target_url, json=event.as_payload())
        except httpx.RequestError as exc:
            logger.warning(
                "Failed to forward %s for order_id=%s target=%s error=%s",
                hook_name,
                event.order_id,
                self.target_url,
                exc,
            )
            return
        if not response.is_success:
            logger.warning(
                "Merchant webhook rejected %s for order_id=%s status=%s",
                hook_name,
                event.order_id,
                response.status_code,
            )
            return
        logger.info("Forwarded %s for order_id=%s target=%s", hook_name, event.order_id, self.target_url)

    async def aclose(self) -> None:
        await self.client.aclose()
