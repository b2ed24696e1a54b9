import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy import Column, Integer, String, Float, DateTime, create_engine, false
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.sql import func

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-processor")

DB_URL = os.getenv("MOCK_DB_URL", "sqlite:///./mock_processor.db")
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Payment Processor")

PUBLIC_KEY = os.getenv("PUBLIC_KEY", "change_public_key")
PRIVATE_KEY = os.getenv("PRIVATE_KEY", "change_private_key")
PUBLIC_URL = os.getenv("MOCK_PUBLIC_URL", "http://mock-processor:8001")
# "result" wraps invoice data; "message" returns the payment URL / JSON text in the message field.
RESPONSE_STYLE = os.getenv("MOCK_RESPONSE_STYLE", "message")
SEND_SHARED_SECRET = os.getenv("MOCK_SEND_SHARED_SECRET", "true").lower() == "true"


class Credentials(BaseModel):
    public_key: str
    private_key: str


class CreateInvoice(Credentials):
    price_amount: float
    price_currency: str = "USD"
    order_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    customer_email: Optional[str] = None
    callback_url: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class GetInvoices(Credentials):
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    status: Optional[int] = None


class Payment(BaseModel):
    amount: float
    currency: str = "USDT"
    status: Optional[str] = None


class Invoice(Base):
    __tablename__ = "invoices"
    id = Column(Integer, primary_key=True)
    order_id = Column(String, index=True, nullable=False)
    price_amount = Column(Float, nullable=False)
    price_currency = Column(String, nullable=False)
    amount = Column(Float, nullable=True)
    amount_currency = Column(String, nullable=True)
    status = Column(String, nullable=False, default="waiting")
    description = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    callback_url = Column(String, nullable=True)
    success_url = Column(String, nullable=True)
    cancel_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expiration_date = Column(DateTime(timezone=True), nullable=True)


Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _check_keys(body: Credentials) -> Optional[dict]:
    if body.public_key != PUBLIC_KEY or body.private_key != PRIVATE_KEY:
        logger.warning("Rejected request with invalid keys")
        return {"status": "error", "message": "Invalid public or private key"}
    return None


def _invoice_url(invoice: Invoice) -> str:
    return f"{PUBLIC_URL}/invoice/{invoice.id}"


def _serialize_invoice(invoice: Invoice) -> dict:
    return {
        "id": invoice.id,
        "order_id": invoice.order_id,
        "status": invoice.status,
        "price_amount": f"{invoice.price_amount:.8f}",
        "price_currency": invoice.price_currency,
        "amount": f"{invoice.amount:.8f}" if invoice.amount is not None else None,
        "amount_currency": invoice.amount_currency,
        "invoice_url": _invoice_url(invoice),
        "created_at": invoice.created_at.strftime("%Y-%m-%d %H:%M:%S") if invoice.created_at else None,
        "expiration_date": invoice.expiration_date.strftime("%Y-%m-%d %H:%M:%S") if invoice.expiration_date else None,
    }


async def _send_callback(invoice_data: dict, callback_url: Optional[str]):
    if not callback_url:
        return
    payload = {key: value for key, value in invoice_data.items() if key not in ("status", "invoice_url")}
    if SEND_SHARED_SECRET:
        payload["privatekey"] = PRIVATE_KEY
    logger.info(
        "Sending callback order_id=%s id=%s amount=%s",
        payload.get("order_id"),
        payload.get("id"),
        payload.get("amount"),
    )
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(callback_url, json=payload)
    except httpx.HTTPError:
        # Ignore callback delivery errors to keep the mock simple.
        logger.warning("Failed to send callback for order_id=%s", payload.get("order_id"))


@app.post("/create_invoice")
async def create_invoice(body: CreateInvoice, db: Session = Depends(get_db)):
    rejected = _check_keys(body)
    if rejected:
        return rejected
    if body.price_amount <= 0:
        return {"status": "error", "message": "price_amount must be greater than 0"}
    invoice = Invoice(
        order_id=body.order_id,
        price_amount=body.price_amount,
        price_currency=body.price_currency,
        description=body.description,
        customer_email=body.customer_email,
        callback_url=body.callback_url,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        expiration_date=datetime.now(timezone.utc) + timedelta(hours=48),
    )
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    logger.info("Created invoice id=%s order_id=%s style=%s", invoice.id, invoice.order_id, RESPONSE_STYLE)
    if RESPONSE_STYLE == "result":
        return {"status": "success", "result": {**_serialize_invoice(invoice), "invoice_id": invoice.id}}
    return {"status": "success", "message": _invoice_url(invoice)}


@app.post("/get_invoices")
async def get_invoices(body: GetInvoices, db: Session = Depends(get_db)):
    rejected = _check_keys(body)
    if rejected:
        return rejected
    query = db.query(Invoice)
    if body.order_id:
        query = query.filter(Invoice.order_id == body.order_id)
    if body.invoice_id:
        query = query.filter(Invoice.id == int(body.invoice_id)) if body.invoice_id.isdigit() else query.filter(false())
    if body.status == 1:
        # "check as successful": lists what is not finished yet, so an empty list means paid.
        query = query.filter(Invoice.status != "finished")
    elif body.status == 0:
        query = query.filter(Invoice.status == "waiting")
    invoices: List[Invoice] = query.order_by(Invoice.created_at).all()
    logger.info("Listing %s invoices order_id=%s status=%s", len(invoices), body.order_id, body.status)
    records = [_serialize_invoice(invoice) for invoice in invoices]
    if body.status is not None or RESPONSE_STYLE == "message":
        return {"status": "success", "message": json.dumps(records)}
    return {"status": "success", "result": records}


@app.post("/admin/invoices/{invoice_id}/pay")
async def pay_invoice(
    invoice_id: int,
    payment: Payment,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Simulate an on-chain payment and deliver the processor's webhook.
    """
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise HTTPException(status_code=404, detail="invoice not found")
    invoice.amount = payment.amount
    invoice.amount_currency = payment.currency
    if payment.status:
        invoice.status = payment.status
    elif payment.amount >= invoice.price_amount * 0.95:
        invoice.status = "finished"
    else:
        invoice.status = "partially_paid"
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    background_tasks.add_task(_send_callback, _serialize_invoice(invoice), invoice.callback_url)
    return _serialize_invoice(invoice)


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all mock processor invoices.
    """
    db.query(Invoice).delete()
    db.commit()
    logger.warning("Cleared mock processor invoices via admin endpoint")
    return {"status": "cleared"}
