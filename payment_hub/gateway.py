import json
from typing import Any, Optional, Union

from payment_hub.clients.processor_client import ProcessorClient
from payment_hub.contracts.contracts import InvoiceLookupQuery
from payment_hub.errors import (
    PaymentHubError,
    ProcessorRejectedError,
    UnrecognizedResponseShapeError,
    ValidationError,
)
from payment_hub.helpers import as_identifier
from payment_hub.logging_config import get_logger
from payment_hub.models import (
    Failure,
    Invoice,
    InvoiceQueryResult,
    InvoicesFound,
    NoMatchingInvoice,
    Probe,
)

logger = get_logger(__name__)

ERROR_STATUSES = {"error", "failed", "fail"}


def _envelope_status(body: dict) -> Optional[str]:
    status = body.get("status")
    return str(status).strip().lower() if status is not None else None


def _decode_embedded(payload: Any, body: dict) -> Any:
    """
    The processor sometimes JSON-encodes the payload a second time inside the envelope.
    """
    if not isinstance(payload, str):
        return payload
    try:
        return json.loads(payload.strip())
    except ValueError as exc:
        raise UnrecognizedResponseShapeError("invoice payload is not valid JSON", raw=body) from exc


def decode_invoices_response(body: Any, probe: Optional[Probe] = None) -> Union[InvoicesFound, NoMatchingInvoice]:
    """
    Normalize the known ``get_invoices`` answers:

    * ``{"result": ...}`` holding an invoice, a list of invoices or their JSON text;
    * ``{"status": "success", "message": "<JSON>"}``;
    * either of the above whose payload is an empty list, which becomes
      ``NoMatchingInvoice``.
    """
    if not isinstance(body, dict):
        raise UnrecognizedResponseShapeError("invoice lookup answer is not an object", raw=body)
    status = _envelope_status(body)
    if body.get("result") is not None:
        payload = _decode_embedded(body["result"], body)
    elif status == "success" and body.get("message") is not None:
        payload = _decode_embedded(body["message"], body)
    elif status in ERROR_STATUSES or body.get("error"):
        message = body.get("message") or body.get("error") or "processor rejected the lookup"
        raise ProcessorRejectedError(str(message), raw=body)
    else:
        raise UnrecognizedResponseShapeError("unknown invoice lookup envelope", raw=body)

    if isinstance(payload, dict):
        records = [payload]
    elif isinstance(payload, list):
        records = payload
    else:
        raise UnrecognizedResponseShapeError("invoice payload is neither an object nor a list", raw=body)
    if not records:
        return NoMatchingInvoice(probe=probe)
    if not all(isinstance(record, dict) for record in records):
        raise UnrecognizedResponseShapeError("invoice list holds non-object entries", raw=body)
    return InvoicesFound(probe=probe, invoices=[Invoice.from_processor(record) for record in records])


class InvoiceGateway:
    """
    Invoice lookups against the processor. Every outcome, including transport
    and decoding problems, comes back as a value; nothing is raised.
    """

    endpoint = "get_invoices"

    def __init__(self, client: ProcessorClient):
        self.client = client

    @staticmethod
    def build_query(order_id: Optional[str], invoice_id: Optional[str], probe: Optional[int]) -> dict:
        query = InvoiceLookupQuery(order_id=as_identifier(order_id), invoice_id=as_identifier(invoice_id))
        if query.empty:
            raise ValidationError("Missing required parameter: order_id or invoice_id")
        if probe is not None:
            try:
                query.status = Probe(probe).value
            except ValueError as exc:
                raise ValidationError(f"probe must be 0 or 1, got {probe!r}") from exc
        return query.model_dump(exclude_none=True)

    async def lookup(
        self,
        order_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        probe: Optional[int] = None,
    ) -> InvoiceQueryResult:
        try:
            query = self.build_query(order_id, invoice_id, probe)
            body = await self.client.post(self.endpoint, query, retry=True)
            result = decode_invoices_response(body, Probe(probe) if probe is not None else None)
        except PaymentHubError as exc:
            logger.warning(
                "Invoice lookup failed order_id=%s invoice_id=%s probe=%s reason=%s error=%s",
                order_id,
                invoice_id,
                probe,
                exc.reason.value,
                exc.message,
            )
            return Failure.from_error(exc)
        logger.info(
            "Invoice lookup order_id=%s invoice_id=%s probe=%s kind=%s count=%s",
            order_id,
            invoice_id,
            probe,
            result.kind,
            len(result.invoices) if isinstance(result, InvoicesFound) else 0,
        )
        return result
