import html
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import parse_qsl

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse

from payment_hub.clients.processor_client import ProcessorClient
from payment_hub.config import Settings, settings as default_settings
from payment_hub.errors import FailureReason, ValidationError
from payment_hub.gateway import InvoiceGateway
from payment_hub.hooks import ForwardingPaymentHooks, LoggingPaymentHooks, PaymentHooks
from payment_hub.issuer import InvoiceIssuer, validate_redirect_url
from payment_hub.logging_config import get_logger, mask_payload
from payment_hub.models import Failure, InvoicesFound, NoMatchingInvoice
from payment_hub.notifications import NotificationHandler
from payment_hub.reconciliation import ReconciliationEngine, generate_reconciliation_csv
from payment_hub.schemas.app_schemas import (
    CreateInvoiceRequest,
    CreateInvoiceResponse,
    InvoiceData,
    RefreshResult,
    RefreshStatusRequest,
    StatusData,
    StatusResponse,
)
from payment_hub.security import require_bearer_token


logger = get_logger(__name__)

FAILURE_STATUS_CODES = {
    FailureReason.VALIDATION: 400,
    FailureReason.AUTHENTICITY: 401,
    FailureReason.TRANSPORT: 502,
    FailureReason.PROCESSOR_REJECTED: 502,
    FailureReason.UNRECOGNIZED_RESPONSE: 502,
}


@dataclass(frozen=True)
class PaymentHub:
    settings: Settings
    client: ProcessorClient
    gateway: InvoiceGateway
    engine: ReconciliationEngine
    issuer: InvoiceIssuer
    notifications: NotificationHandler
    hooks: PaymentHooks

    async def aclose(self) -> None:
        await self.client.aclose()
        if isinstance(self.hooks, ForwardingPaymentHooks):
            await self.hooks.aclose()


def build_hub(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    hooks: Optional[PaymentHooks] = None,
) -> PaymentHub:
    if hooks is None:
        if settings.merchant_webhook_url:
            hooks = ForwardingPaymentHooks(str(settings.merchant_webhook_url))
        else:
            hooks = LoggingPaymentHooks()
    client = ProcessorClient(settings, transport=transport)
    gateway = InvoiceGateway(client)
    return PaymentHub(
        settings=settings,
        client=client,
        gateway=gateway,
        engine=ReconciliationEngine(gateway, settings),
        issuer=InvoiceIssuer(client, settings),
        notifications=NotificationHandler(gateway, hooks, settings),
        hooks=hooks,
    )


def get_hub(request: Request) -> PaymentHub:
    return request.app.state.hub


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def failure_response(failure: Failure, error: str, message: str) -> JSONResponse:
    content = {
        "success": False,
        "error": error,
        "reason": failure.reason.value,
        "message": message,
        "details": failure.message,
    }
    if failure.reason == FailureReason.UNRECOGNIZED_RESPONSE:
        content["raw"] = failure.raw
    return JSONResponse(status_code=FAILURE_STATUS_CODES[failure.reason], content=jsonable_encoder(content))


router = APIRouter()


@router.post("/api/payment/create-invoice", response_model=CreateInvoiceResponse)
async def create_invoice(
    request: CreateInvoiceRequest,
    _auth=Depends(require_bearer_token),
    hub: PaymentHub = Depends(get_hub),
):
    logger.info("Create invoice request body=%s", mask_payload(request.model_dump()))
    result = await hub.issuer.create_invoice(
        request.priceAmount,
        price_currency=request.priceCurrency,
        order_id=request.orderId,
        description=request.orderDescription,
        customer_email=request.customerEmail,
        success_url=request.successUrl,
        failure_url=request.failureUrl,
        cancel_url=request.cancelUrl,
    )
    if isinstance(result, Failure):
        error = "Validation Error" if result.reason == FailureReason.VALIDATION else "Invoice Creation Failed"
        return failure_response(result, error, "Failed to create invoice")
    return CreateInvoiceResponse(data=InvoiceData.from_issued(result))


@router.get("/api/payment/invoices")
async def list_invoices(
    orderId: str | None = None,
    invoiceId: str | None = None,
    status: int | None = Query(None, ge=0, le=1),
    _auth=Depends(require_bearer_token),
    hub: PaymentHub = Depends(get_hub),
):
    result = await hub.gateway.lookup(orderId, invoiceId, probe=status)
    if isinstance(result, Failure):
        return failure_response(result, "Retrieval Failed", "Failed to retrieve invoices")
    invoices = result.invoices if isinstance(result, InvoicesFound) else []
    return {
        "success": True,
        "message": f"Found {len(invoices)} invoice(s)",
        "data": [invoice.summary() for invoice in invoices],
        "finishedSignal": isinstance(result, NoMatchingInvoice) and result.finished_signal,
    }


async def _status(hub: PaymentHub, order_id: Optional[str], invoice_id: Optional[str]):
    report = await hub.engine.reconcile_detailed(order_id, invoice_id)
    if isinstance(report, Failure):
        return failure_response(report, "Invalid Request", "Failed to check payment status")
    return StatusResponse(data=StatusData.from_report(report), timestamp=_timestamp())


@router.get("/api/payment/status/{order_id}", response_model=StatusResponse)
async def payment_status_by_path(
    order_id: str,
    invoice_id: str | None = None,
    _auth=Depends(require_bearer_token),
    hub: PaymentHub = Depends(get_hub),
):
    return await _status(hub, order_id, invoice_id)


@router.get("/api/payment/status", response_model=StatusResponse)
async def payment_status(
    order_id: str | None = None,
    invoice_id: str | None = None,
    _auth=Depends(require_bearer_token),
    hub: PaymentHub = Depends(get_hub),
):
    return await _status(hub, order_id, invoice_id)


@router.post("/api/payment/refresh-status")
async def refresh_status(
    request: RefreshStatusRequest,
    _auth=Depends(require_bearer_token),
    hub: PaymentHub = Depends(get_hub),
):
    """
    Fetch the processor's current record(s) and run them through webhook dispatch.
    """
    result = await hub.gateway.lookup(request.order_id, request.invoice_id)
    if isinstance(result, Failure):
        return failure_response(result, "Refresh Failed", "Failed to refresh invoice status")
    if isinstance(result, NoMatchingInvoice):
        return JSONResponse(status_code=404, content={"success": False, "error": "Invoice not found"})
    processed: List[RefreshResult] = []
    for invoice in result.invoices:
        outcome = await hub.notifications.process_invoice(invoice)
        if isinstance(outcome, Failure):
            processed.append(
                RefreshResult(
                    invoice_id=invoice.invoice_id,
                    order_id=invoice.order_id,
                    processed=False,
                    error=outcome.message,
                )
            )
        else:
            processed.append(RefreshResult.from_processed(outcome))
    return {
        "success": True,
        "data": [item.model_dump() for item in processed],
        "message": f"Refreshed status for {len(processed)} invoice(s)",
        "timestamp": _timestamp(),
    }


async def _read_webhook_body(request: Request):
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded"):
        return dict(parse_qsl(body.decode()))
    return json.loads(body or b"null")


@router.post("/api/webhook/callback")
async def webhook_callback(
    request: Request,
    x_payid19_signature: str | None = Header(None),
    signature: str | None = Header(None),
    hub: PaymentHub = Depends(get_hub),
):
    try:
        payload = await _read_webhook_body(request)
    except ValueError:
        failure = Failure.from_error(ValidationError("Webhook body is not valid JSON"))
        return failure_response(failure, "Invalid webhook data", "Failed to process webhook")
    result = await hub.notifications.handle(payload, signature=x_payid19_signature or signature)
    if isinstance(result, Failure):
        error = "Invalid signature" if result.reason == FailureReason.AUTHENTICITY else "Invalid webhook data"
        return failure_response(result, error, "Failed to process webhook")
    return {
        "status": "success",
        "message": "Webhook processed successfully",
        "outcome": result.outcome.value,
        "timestamp": _timestamp(),
    }


def _redirect_page(title: str, message: str, return_url: Optional[str]) -> HTMLResponse:
    try:
        target = validate_redirect_url(return_url, "return_url")
    except ValidationError:
        target = None
    refresh = ""
    link = ""
    if target:
        escaped = html.escape(target, quote=True)
        refresh = f'<meta http-equiv="refresh" content="3;url={escaped}">'
        link = f'<p><a href="{escaped}">Continue</a></p>'
    page = (
        f"<!DOCTYPE html><html><head><title>{html.escape(title)}</title>{refresh}</head>"
        f"<body><h1>{html.escape(title)}</h1><p>{html.escape(message)}</p>{link}</body></html>"
    )
    return HTMLResponse(content=page)


@router.get("/payment/success", include_in_schema=False)
async def payment_success(return_url: str | None = None):
    return _redirect_page("Payment received", "Your payment is being confirmed.", return_url)


@router.get("/payment/cancel", include_in_schema=False)
async def payment_cancel(return_url: str | None = None):
    return _redirect_page("Payment cancelled", "The payment was cancelled.", return_url)


@router.get("/reconciliation_data")
async def download_reconciliation_csv(
    order_id: List[str] = Query(...),
    _auth=Depends(require_bearer_token),
    hub: PaymentHub = Depends(get_hub),
):
    csv_text, unpaid_count = await generate_reconciliation_csv(hub.engine, order_id)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="reconciliation.csv"',
            "X-Unpaid-Count": str(unpaid_count),
        },
    )


@router.get("/api/payment/health")
async def payment_health():
    return {
        "status": "OK",
        "service": "Payment Hub",
        "timestamp": _timestamp(),
        "endpoints": {
            "createInvoice": "POST /api/payment/create-invoice",
            "getInvoices": "GET /api/payment/invoices",
            "status": "GET /api/payment/status/{order_id}",
            "refreshStatus": "POST /api/payment/refresh-status",
        },
    }


@router.get("/health")
async def health():
    return {"status": "ok"}


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    hooks: Optional[PaymentHooks] = None,
) -> FastAPI:
    settings = settings or default_settings
    app = FastAPI(title="Payment Hub")
    app.state.settings = settings
    app.state.hub = build_hub(settings, transport=transport, hooks=hooks)
    app.include_router(router)

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Closing processor client")
        await app.state.hub.aclose()

    @app.get("/swagger", include_in_schema=False)
    async def swagger_ui():
        return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="Payment Hub - Swagger UI")

    return app


app = create_app()
