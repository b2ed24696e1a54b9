from typing import Optional

from pydantic import BaseModel


class CreateInvoicePayload(BaseModel):
    """Body of the processor's ``create_invoice`` call, credentials excluded."""

    price_amount: float
    price_currency: str
    order_id: str
    title: str
    description: str
    callback_url: str
    success_url: str
    cancel_url: str
    customer_email: Optional[str] = None


class InvoiceLookupQuery(BaseModel):
    """Body of the processor's ``get_invoices`` call, credentials excluded."""

    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    status: Optional[int] = None

    @property
    def empty(self) -> bool:
        return not self.order_id and not self.invoice_id
