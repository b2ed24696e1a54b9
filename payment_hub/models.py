from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from payment_hub.amounts import AmountEvidence, parse_amount
from payment_hub.errors import FailureReason, PaymentHubError
from payment_hub.helpers import as_identifier, first_present, parse_timestamp

INVOICE_ID_FIELDS = ("invoice_id", "id")
PAID_AMOUNT_FIELDS = ("actually_paid", "paid_amount", "amount")
PAID_CURRENCY_FIELDS = ("paid_currency", "amount_currency", "pay_currency")
PAID_FIAT_FIELDS = ("actually_paid_at_fiat", "paid_amount_fiat")
EXPIRY_FIELDS = ("expires_at", "expiration_date", "expiry_date")
PAYMENT_URL_FIELDS = ("invoice_url", "payment_url", "url")


def _plain(evidence: AmountEvidence) -> Any:
    if isinstance(evidence.raw, Decimal):
        return str(evidence.raw)
    return evidence.raw


class PaymentOutcome(str, Enum):
    WAITING = "waiting"
    CONFIRMING = "confirming"
    FINISHED = "finished"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class Probe(int, Enum):
    WAITING = 0
    SUCCESSFUL = 1


class Invoice(BaseModel):
    """
    Canonical view of an invoice as reported by the processor.
    """

    model_config = ConfigDict(frozen=True)

    invoice_id: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None
    price_amount: AmountEvidence = AmountEvidence()
    price_currency: Optional[str] = None
    paid: AmountEvidence = AmountEvidence()
    paid_currency: Optional[str] = None
    paid_fiat: AmountEvidence = AmountEvidence()
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    pay_amount: AmountEvidence = AmountEvidence()
    pay_currency: Optional[str] = None
    payment_url: Optional[str] = None
    raw: dict = Field(default_factory=dict, repr=False)

    @classmethod
    def from_processor(cls, record: Mapping[str, Any]) -> "Invoice":
        """
        Build from a processor record. Text fields are coerced, so a record
        with odd value types still yields an invoice.
        """
        return cls(
            invoice_id=as_identifier(first_present(record, INVOICE_ID_FIELDS)),
            order_id=as_identifier(record.get("order_id")),
            status=as_identifier(record.get("status")),
            price_amount=parse_amount(record.get("price_amount")),
            price_currency=as_identifier(record.get("price_currency")),
            paid=parse_amount(first_present(record, PAID_AMOUNT_FIELDS)),
            paid_currency=as_identifier(first_present(record, PAID_CURRENCY_FIELDS)),
            paid_fiat=parse_amount(first_present(record, PAID_FIAT_FIELDS)),
            created_at=parse_timestamp(record.get("created_at")),
            expires_at=parse_timestamp(first_present(record, EXPIRY_FIELDS)),
            pay_amount=parse_amount(record.get("pay_amount")),
            pay_currency=as_identifier(record.get("pay_currency")),
            payment_url=as_identifier(first_present(record, PAYMENT_URL_FIELDS)),
            raw=dict(record),
        )

    def contradicts(self, order_id: Optional[str] = None, invoice_id: Optional[str] = None) -> bool:
        """True when this record carries an order or invoice id other than the ones asked for."""
        if order_id and self.order_id and self.order_id != order_id:
            return True
        if invoice_id and self.invoice_id and self.invoice_id != invoice_id:
            return True
        return False

    def summary(self) -> dict:
        return {
            "invoiceId": self.invoice_id,
            "orderId": self.order_id,
            "status": self.status,
            "priceAmount": _plain(self.price_amount),
            "priceCurrency": self.price_currency,
            "paidAmount": _plain(self.paid),
            "paidCurrency": self.paid_currency,
            "paidFiat": _plain(self.paid_fiat),
            "payAmount": _plain(self.pay_amount),
            "payCurrency": self.pay_currency,
            "paymentUrl": self.payment_url,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


class Failure(BaseModel):
    ok: Literal[False] = False
    kind: Literal["failure"] = "failure"
    reason: FailureReason
    message: str
    raw: Any = None

    @classmethod
    def from_error(cls, exc: PaymentHubError) -> "Failure":
        return cls(reason=exc.reason, message=exc.message, raw=exc.raw)


class InvoicesFound(BaseModel):
    ok: Literal[True] = True
    kind: Literal["invoices"] = "invoices"
    probe: Optional[Probe] = None
    invoices: List[Invoice]

    def select(self, order_id: Optional[str] = None, invoice_id: Optional[str] = None) -> Optional[Invoice]:
        """
        Record for the queried order: the one matching the invoice id, else
        the first whose identifiers do not contradict the query. None when
        every record belongs to another order or invoice.
        """
        candidates = [invoice for invoice in self.invoices if not invoice.contradicts(order_id, invoice_id)]
        if invoice_id:
            for invoice in candidates:
                if invoice.invoice_id == invoice_id:
                    return invoice
        return candidates[0] if candidates else None


class NoMatchingInvoice(BaseModel):
    """
    The processor's empty-array answer. Under the successful-status probe the
    processor uses it to say that no invoice is still waiting, which is
    evidence that the invoice is finished; otherwise it means not found.
    """

    ok: Literal[True] = True
    kind: Literal["empty"] = "empty"
    probe: Optional[Probe] = None

    @property
    def finished_signal(self) -> bool:
        return self.probe == Probe.SUCCESSFUL


InvoiceQueryResult = Annotated[
    Union[InvoicesFound, NoMatchingInvoice, Failure],
    Field(discriminator="kind"),
]


class Confidence(str, Enum):
    RECORD = "record"
    PROBE = "probe"
    NONE = "none"


class Evidence(BaseModel):
    step: str
    probe: Optional[Probe] = None
    kind: str
    outcome: Optional[PaymentOutcome] = None
    reason: str


class ReconciliationReport(BaseModel):
    ok: Literal[True] = True
    kind: Literal["report"] = "report"
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    outcome: PaymentOutcome
    confidence: Confidence
    evidence: List[Evidence] = Field(default_factory=list)
    invoice: Optional[Invoice] = None

    @property
    def paid(self) -> bool:
        return self.outcome == PaymentOutcome.FINISHED


class IssuedInvoice(BaseModel):
    ok: Literal[True] = True
    kind: Literal["issued"] = "issued"
    order_id: str
    invoice: Invoice
    outcome: PaymentOutcome
    synthesized: bool = False


class NotificationProcessed(BaseModel):
    ok: Literal[True] = True
    kind: Literal["processed"] = "processed"
    order_id: str
    invoice_id: str
    outcome: PaymentOutcome
    hook: str
    reason: str
    inferred: bool
    rechecked: bool = False
