"""
Status classification.

The processor's status vocabulary is neither complete nor stable across API
versions, so an explicit label wins only when it is recognized; everything
else falls back to the amounts. The order of the checks in ``classify``
decides how partially paid invoices come out and must not change.
"""
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from payment_hub.amounts import (
    DEFAULT_SUFFICIENCY_RATIO,
    AmountLike,
    is_sufficient,
    parse_amount,
    threshold,
)
from payment_hub.logging_config import get_logger
from payment_hub.models import Invoice, PaymentOutcome

logger = get_logger(__name__)

FINISHED_LABELS = frozenset({"finished", "completed", "complete", "confirmed"})
WAITING_LABELS = frozenset({"waiting", "pending", "new", "created"})
AMOUNT_CHECKED_LABELS = frozenset({"confirming", "partially_paid"})
TERMINAL_LABELS = {
    "failed": PaymentOutcome.FAILED,
    "refunded": PaymentOutcome.REFUNDED,
    "expired": PaymentOutcome.EXPIRED,
}
KNOWN_LABELS = FINISHED_LABELS | WAITING_LABELS | AMOUNT_CHECKED_LABELS | frozenset(TERMINAL_LABELS)


class Classification(BaseModel):
    outcome: PaymentOutcome
    reason: str
    label_recognized: bool


def normalize_status(raw_status: Optional[str]) -> Optional[str]:
    if raw_status is None:
        return None
    label = str(raw_status).strip().lower().replace("-", "_").replace(" ", "_")
    return label or None


def classify(
    raw_status: Optional[str],
    expected: AmountLike,
    paid: AmountLike,
    ratio: Decimal = DEFAULT_SUFFICIENCY_RATIO,
) -> PaymentOutcome:
    return _classify(raw_status, expected, paid, ratio).outcome


def assess(
    raw_status: Optional[str],
    expected: AmountLike,
    paid: AmountLike,
    ratio: Decimal = DEFAULT_SUFFICIENCY_RATIO,
) -> Classification:
    """
    Like ``classify`` but returns UNKNOWN when the label is not recognized and
    the amounts cannot settle the question either.
    """
    classification = _classify(raw_status, expected, paid, ratio)
    if classification.label_recognized:
        return classification
    expected_evidence = parse_amount(expected)
    paid_evidence = parse_amount(paid)
    if not paid_evidence.present or not expected_evidence.present:
        return Classification(
            outcome=PaymentOutcome.UNKNOWN,
            reason=(
                f"Status: {raw_status!r} not recognized; expected={expected_evidence.describe()} "
                f"paid={paid_evidence.describe()}"
            ),
            label_recognized=False,
        )
    return classification


def assess_invoice(invoice: Invoice, ratio: Decimal = DEFAULT_SUFFICIENCY_RATIO) -> Classification:
    return assess(invoice.status, invoice.price_amount, invoice.paid, ratio)


def _classify(
    raw_status: Optional[str],
    expected: AmountLike,
    paid: AmountLike,
    ratio: Decimal,
) -> Classification:
    label = normalize_status(raw_status)
    expected_evidence = parse_amount(expected)
    paid_evidence = parse_amount(paid)
    for name, evidence in (("expected", expected_evidence), ("paid", paid_evidence)):
        if evidence.unparsable:
            logger.warning("Unparsable %s amount treated as absent raw=%r", name, evidence.raw)

    if label in FINISHED_LABELS:
        return Classification(outcome=PaymentOutcome.FINISHED, reason=f"Status: {raw_status}", label_recognized=True)
    if label in WAITING_LABELS:
        return Classification(outcome=PaymentOutcome.WAITING, reason=f"Status: {raw_status}", label_recognized=True)

    sufficient = is_sufficient(expected_evidence, paid_evidence, ratio)
    comparison = _describe_comparison(expected_evidence, paid_evidence, ratio, sufficient)

    if label in AMOUNT_CHECKED_LABELS:
        outcome = PaymentOutcome.FINISHED if sufficient else PaymentOutcome.WAITING
        return Classification(outcome=outcome, reason=f"Status: {raw_status}; {comparison}", label_recognized=True)
    if label in TERMINAL_LABELS:
        return Classification(outcome=TERMINAL_LABELS[label], reason=f"Status: {raw_status}", label_recognized=True)

    if sufficient:
        outcome = PaymentOutcome.FINISHED
    elif paid_evidence.present and paid_evidence.value > 0:
        outcome = PaymentOutcome.CONFIRMING
    else:
        outcome = PaymentOutcome.WAITING
    prefix = "No status" if label is None else f"Status: {raw_status} (unrecognized)"
    return Classification(outcome=outcome, reason=f"{prefix}; {comparison}", label_recognized=False)


def _describe_comparison(expected, paid, ratio: Decimal, sufficient: bool) -> str:
    if not paid.present:
        return f"no paid amount ({paid.describe()})"
    line = threshold(expected, ratio)
    if line is None:
        return f"paid {paid.value} against {expected.describe()} expected amount"
    if sufficient:
        return f"Payment sufficient: {paid.value} >= {line}"
    return f"Payment insufficient: {paid.value} < {line}"
