from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel

from payment_hub.amounts import is_sufficient
from payment_hub.classifier import Classification, assess_invoice
from payment_hub.config import Settings
from payment_hub.errors import PaymentHubError, ValidationError
from payment_hub.gateway import InvoiceGateway
from payment_hub.helpers import as_identifier, first_present, hash_payload
from payment_hub.hooks import HOOK_NAMES, PaymentEvent, PaymentHooks
from payment_hub.logging_config import get_logger, mask_payload
from payment_hub.models import (
    INVOICE_ID_FIELDS,
    Failure,
    Invoice,
    InvoicesFound,
    NotificationProcessed,
    PaymentOutcome,
)
from payment_hub.security import verify_notification

logger = get_logger(__name__)


class WebhookNotification(BaseModel):
    order_id: str
    invoice_id: str
    invoice: Invoice
    payload: dict


def normalize_notification(payload: Any) -> WebhookNotification:
    """
    Resolve the identifier aliases of a webhook payload. The generic ``id``
    field stands in for a missing ``invoice_id``.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Webhook payload must be a JSON object", raw=payload)
    order_id = as_identifier(payload.get("order_id"))
    if not order_id:
        raise ValidationError("Missing required field: order_id", raw=mask_payload(payload))
    invoice_id = as_identifier(first_present(payload, INVOICE_ID_FIELDS))
    if not invoice_id:
        raise ValidationError("Missing required field: invoice_id or id", raw=mask_payload(payload))
    normalized = {**payload, "order_id": order_id, "invoice_id": invoice_id}
    return WebhookNotification(
        order_id=order_id,
        invoice_id=invoice_id,
        invoice=Invoice.from_processor(normalized),
        payload=normalized,
    )


class NotificationHandler:
    """
    Turns processor notifications into exactly one downstream hook call.

    UNKNOWN triggers a single lookup at the processor; if the refreshed record
    is still inconclusive the notification is handled as waiting, never as
    finished.
    """

    def __init__(self, gateway: InvoiceGateway, hooks: PaymentHooks, settings: Settings):
        self.gateway = gateway
        self.hooks = hooks
        self.settings = settings

    async def handle(
        self,
        payload: Any,
        signature: Optional[str] = None,
        verify: bool = True,
    ) -> Union[NotificationProcessed, Failure]:
        try:
            notification = normalize_notification(payload)
            strategy = verify_notification(payload, self.settings, signature) if verify else None
        except PaymentHubError as exc:
            logger.warning("Webhook rejected reason=%s error=%s", exc.reason.value, exc.message)
            return Failure.from_error(exc)
        logger.info(
            "Webhook accepted order_id=%s invoice_id=%s status=%s authenticity=%s fingerprint=%s",
            notification.order_id,
            notification.invoice_id,
            notification.invoice.status,
            strategy or "none",
            hash_payload(notification.payload),
        )
        return await self.dispatch(notification)

    async def process_invoice(self, invoice: Invoice) -> Union[NotificationProcessed, Failure]:
        """
        Run an invoice fetched from the processor API through the same dispatch.
        """
        return await self.handle(invoice.raw, verify=False)

    async def dispatch(self, notification: WebhookNotification, attempt: int = 0) -> NotificationProcessed:
        ratio = self.settings.sufficiency_ratio
        classification = assess_invoice(notification.invoice, ratio)
        outcome = classification.outcome

        if outcome == PaymentOutcome.UNKNOWN:
            if attempt == 0:
                refreshed = await self._refresh(notification)
                if refreshed is not None:
                    return await self.dispatch(refreshed, attempt + 1)
            logger.warning(
                "Status still unknown for order_id=%s, handling as waiting: %s",
                notification.order_id,
                classification.reason,
            )
            return await self._fire(
                notification,
                PaymentOutcome.WAITING,
                classification,
                f"{classification.reason}; defaulted to waiting",
            )

        if outcome == PaymentOutcome.CONFIRMING:
            invoice = notification.invoice
            if is_sufficient(invoice.price_amount, invoice.paid, ratio) or is_sufficient(
                invoice.price_amount, invoice.paid_fiat, ratio
            ):
                return await self._fire(
                    notification,
                    PaymentOutcome.FINISHED,
                    classification,
                    f"{classification.reason}; amount sufficient on re-check",
                    rechecked=True,
                )

        return await self._fire(notification, outcome, classification, classification.reason)

    async def _refresh(self, notification: WebhookNotification) -> Optional[WebhookNotification]:
        result = await self.gateway.lookup(notification.order_id, notification.invoice_id)
        if not isinstance(result, InvoicesFound):
            logger.warning(
                "Could not refresh order_id=%s invoice_id=%s from processor kind=%s",
                notification.order_id,
                notification.invoice_id,
                result.kind,
            )
            return None
        record = result.select(notification.order_id, notification.invoice_id)
        if record is None:
            logger.warning(
                "Refresh for order_id=%s invoice_id=%s returned only foreign records count=%s",
                notification.order_id,
                notification.invoice_id,
                len(result.invoices),
            )
            return None
        merged = {**notification.payload, **{k: v for k, v in record.raw.items() if v is not None}}
        merged["order_id"] = notification.order_id
        merged["invoice_id"] = notification.invoice_id
        logger.info(
            "Refreshed order_id=%s from processor status=%s",
            notification.order_id,
            record.status,
        )
        return normalize_notification(merged)

    async def _fire(
        self,
        notification: WebhookNotification,
        outcome: PaymentOutcome,
        classification: Classification,
        reason: str,
        rechecked: bool = False,
    ) -> NotificationProcessed:
        hook_name = HOOK_NAMES[outcome]
        event = PaymentEvent(
            order_id=notification.order_id,
            invoice_id=notification.invoice_id,
            outcome=outcome,
            reason=reason,
            invoice=notification.invoice,
        )
        await self.hooks.fire(hook_name, event)
        logger.info(
            "Notification processed order_id=%s invoice_id=%s outcome=%s hook=%s",
            notification.order_id,
            notification.invoice_id,
            outcome.value,
            hook_name,
        )
        return NotificationProcessed(
            order_id=notification.order_id,
            invoice_id=notification.invoice_id,
            outcome=outcome,
            hook=hook_name,
            reason=reason,
            inferred=not classification.label_recognized,
            rechecked=rechecked,
        )
