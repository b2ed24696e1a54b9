from pydantic import BaseModel
from typing import Optional, Any, List

from payment_hub.models import Evidence, IssuedInvoice, NotificationProcessed, ReconciliationReport


class CreateInvoiceRequest(BaseModel):
    # Amount is validated by the issuer so that bad input yields a 400 with a readable message.
    priceAmount: Any = None
    priceCurrency: Optional[str] = None
    orderId: Optional[str] = None
    orderDescription: Optional[str] = None
    customerEmail: Optional[str] = None
    successUrl: Optional[str] = None
    failureUrl: Optional[str] = None
    cancelUrl: Optional[str] = None


class InvoiceData(BaseModel):
    orderId: str
    invoiceId: Optional[str] = None
    paymentUrl: Optional[str] = None
    priceAmount: Optional[str] = None
    priceCurrency: Optional[str] = None
    payAmount: Optional[str] = None
    payCurrency: Optional[str] = None
    status: str
    createdAt: Optional[str] = None
    expiresAt: Optional[str] = None
    synthesized: bool = False

    @classmethod
    def from_issued(cls, issued: IssuedInvoice) -> "InvoiceData":
        invoice = issued.invoice
        return cls(
            orderId=issued.order_id,
            invoiceId=invoice.invoice_id,
            paymentUrl=invoice.payment_url,
            priceAmount=invoice.price_amount.describe() if invoice.price_amount.present else None,
            priceCurrency=invoice.price_currency,
            payAmount=invoice.pay_amount.describe() if invoice.pay_amount.present else None,
            payCurrency=invoice.pay_currency,
            status=issued.outcome.value,
            createdAt=invoice.created_at.isoformat() if invoice.created_at else None,
            expiresAt=invoice.expires_at.isoformat() if invoice.expires_at else None,
            synthesized=issued.synthesized,
        )


class CreateInvoiceResponse(BaseModel):
    success: bool = True
    message: str = "Invoice created successfully"
    data: InvoiceData


class StatusData(BaseModel):
    orderId: Optional[str] = None
    invoiceId: Optional[str] = None
    outcome: str
    paid: bool
    confidence: str
    evidence: List[Evidence]
    invoice: Optional[dict] = None

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> "StatusData":
        return cls(
            orderId=report.order_id,
            invoiceId=report.invoice_id,
            outcome=report.outcome.value,
            paid=report.paid,
            confidence=report.confidence.value,
            evidence=report.evidence,
            invoice=report.invoice.summary() if report.invoice else None,
        )


class StatusResponse(BaseModel):
    success: bool = True
    data: StatusData
    timestamp: str


class RefreshStatusRequest(BaseModel):
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None


class RefreshResult(BaseModel):
    invoice_id: Optional[str] = None
    order_id: Optional[str] = None
    processed: bool
    outcome: Optional[str] = None
    hook: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_processed(cls, processed: NotificationProcessed) -> "RefreshResult":
        return cls(
            invoice_id=processed.invoice_id,
            order_id=processed.order_id,
            processed=True,
            outcome=processed.outcome.value,
            hook=processed.hook,
        )
