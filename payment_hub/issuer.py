import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Tuple, Union
from urllib.parse import urlencode, urlparse

import pydantic
from pydantic import AnyHttpUrl, TypeAdapter

from payment_hub.amounts import parse_amount
from payment_hub.classifier import assess_invoice
from payment_hub.clients.processor_client import ProcessorClient
from payment_hub.config import Settings
from payment_hub.contracts.contracts import CreateInvoicePayload
from payment_hub.errors import (
    PaymentHubError,
    ProcessorRejectedError,
    UnrecognizedResponseShapeError,
    ValidationError,
)
from payment_hub.gateway import ERROR_STATUSES
from payment_hub.helpers import as_identifier, utcnow
from payment_hub.logging_config import get_logger, mask_payload
from payment_hub.models import Failure, Invoice, IssuedInvoice, PaymentOutcome

logger = get_logger(__name__)

_http_url = TypeAdapter(AnyHttpUrl)


def validate_price_amount(price_amount: Any, field_name: str = "priceAmount") -> Decimal:
    evidence = parse_amount(price_amount)
    if price_amount is None or (isinstance(price_amount, str) and not price_amount.strip()):
        raise ValidationError(f"{field_name} is required")
    if not evidence.present:
        raise ValidationError(f"{field_name} must be a valid number", raw=price_amount)
    if evidence.value <= 0:
        raise ValidationError(f"{field_name} must be greater than 0", raw=price_amount)
    return evidence.value


def validate_redirect_url(url: Optional[str], field_name: str) -> Optional[str]:
    if url is None or not str(url).strip():
        return None
    try:
        _http_url.validate_python(str(url).strip())
    except pydantic.ValidationError as exc:
        raise ValidationError(f"{field_name} must be a valid URL", raw=url) from exc
    return str(url).strip()


def decode_creation_response(
    body: Any,
    request: dict,
    ttl_hours: int,
    now: Optional[datetime] = None,
) -> Tuple[Invoice, bool]:
    """
    Normalize the two known ``create_invoice`` answers. Returns the invoice
    and whether it had to be synthesized from a bare payment URL.
    """
    if not isinstance(body, dict):
        raise UnrecognizedResponseShapeError("invoice creation answer is not an object", raw=body)
    status = str(body.get("status", "")).strip().lower()
    defaults = {
        "order_id": request.get("order_id"),
        "price_amount": request.get("price_amount"),
        "price_currency": request.get("price_currency"),
    }

    result = body.get("result")
    if isinstance(result, dict):
        invoice = Invoice.from_processor({**defaults, **result})
        if not invoice.payment_url:
            raise UnrecognizedResponseShapeError("invoice creation result has no payment URL", raw=body)
        return invoice, False

    message = body.get("message")
    if status == "success" and isinstance(message, str) and message.strip().startswith(("http://", "https://")):
        payment_url = message.strip()
        invoice_id = urlparse(payment_url).path.rstrip("/").rsplit("/", 1)[-1]
        if not invoice_id:
            raise UnrecognizedResponseShapeError("payment URL has no invoice segment", raw=body)
        now = now or utcnow()
        record = {
            **defaults,
            "invoice_id": invoice_id,
            "status": PaymentOutcome.WAITING.value,
            "invoice_url": payment_url,
            "created_at": now,
            "expires_at": now + timedelta(hours=ttl_hours),
        }
        return Invoice.from_processor(record), True

    if status in ERROR_STATUSES or body.get("error"):
        raise ProcessorRejectedError(str(message or body.get("error") or "invoice creation rejected"), raw=body)
    raise UnrecognizedResponseShapeError("unknown invoice creation envelope", raw=body)


class InvoiceIssuer:
    """
    Builds and submits invoice creation requests. Creation is not idempotent
    at the processor, so a request is sent at most once.
    """

    endpoint = "create_invoice"

    def __init__(self, client: ProcessorClient, settings: Settings):
        self.client = client
        self.settings = settings

    def _redirect(self, path: str, target: Optional[str]) -> str:
        base = self.settings.public_url(path)
        if not target:
            return base
        return f"{base}?{urlencode({'return_url': target})}"

    def build_request(
        self,
        price_amount: Decimal,
        price_currency: str,
        order_id: str,
        description: str,
        customer_email: Optional[str],
        success_url: Optional[str],
        cancel_url: Optional[str],
    ) -> dict:
        payload = CreateInvoicePayload(
            price_amount=float(price_amount),
            price_currency=price_currency,
            order_id=order_id,
            title=description,
            description=description,
            callback_url=self.settings.public_url(self.settings.callback_path),
            success_url=self._redirect(self.settings.success_path, success_url),
            cancel_url=self._redirect(self.settings.cancel_path, cancel_url),
            customer_email=customer_email or None,
        )
        return payload.model_dump(exclude_none=True)

    async def create_invoice(
        self,
        price_amount: Any,
        price_currency: Optional[str] = None,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        customer_email: Optional[str] = None,
        success_url: Optional[str] = None,
        failure_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Union[IssuedInvoice, Failure]:
        try:
            amount = validate_price_amount(price_amount)
            success_url = validate_redirect_url(success_url, "successUrl")
            failure_url = validate_redirect_url(failure_url, "failureUrl")
            cancel_url = validate_redirect_url(cancel_url, "cancelUrl")
            currency = (price_currency or self.settings.default_currency).strip().upper()
            final_order_id = as_identifier(order_id) or f"order_{uuid.uuid4()}"
            request = self.build_request(
                amount,
                currency,
                final_order_id,
                description or f"Payment for order {final_order_id}",
                customer_email,
                success_url,
                cancel_url or failure_url,
            )
            logger.info("Creating invoice order_id=%s request=%s", final_order_id, mask_payload(request))
            body = await self.client.post(self.endpoint, request, retry=False)
            invoice, synthesized = decode_creation_response(body, request, self.settings.invoice_ttl_hours)
        except PaymentHubError as exc:
            logger.error(
                "Invoice creation failed order_id=%s reason=%s error=%s",
                order_id,
                exc.reason.value,
                exc.message,
            )
            return Failure.from_error(exc)

        outcome = assess_invoice(invoice, self.settings.sufficiency_ratio).outcome
        if outcome == PaymentOutcome.UNKNOWN:
            outcome = PaymentOutcome.WAITING
        logger.info(
            "Invoice created order_id=%s invoice_id=%s outcome=%s synthesized=%s",
            final_order_id,
            invoice.invoice_id,
            outcome.value,
            synthesized,
        )
        return IssuedInvoice(order_id=final_order_id, invoice=invoice, outcome=outcome, synthesized=synthesized)
