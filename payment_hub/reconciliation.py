import csv
from io import StringIO
from typing import Iterable, List, Optional, Tuple, Union

from payment_hub.classifier import Classification, assess_invoice
from payment_hub.config import Settings
from payment_hub.errors import ValidationError
from payment_hub.gateway import InvoiceGateway
from payment_hub.logging_config import get_logger
from payment_hub.models import (
    Confidence,
    Evidence,
    Failure,
    Invoice,
    InvoiceQueryResult,
    InvoicesFound,
    NoMatchingInvoice,
    PaymentOutcome,
    Probe,
    ReconciliationReport,
)

logger = get_logger(__name__)

Classified = Tuple[Invoice, Classification]


class ReconciliationEngine:
    """
    Answers "what is the true status of this order" by polling the processor.

    When the status-probe convention is enabled, the order is first looked up
    as if successful (probe 1): the processor's empty answer there means no
    invoice is still waiting and short-circuits to FINISHED. Otherwise the
    waiting probe (probe 0) and finally a plain lookup supply a record to
    classify. The probes run one after the other because the second is only
    needed when the first is inconclusive. Anything unresolved is UNKNOWN,
    which the two-state view reports as WAITING.
    """

    def __init__(self, gateway: InvoiceGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    async def reconcile(self, order_id: str) -> PaymentOutcome:
        report = await self.reconcile_detailed(order_id)
        if isinstance(report, ReconciliationReport) and report.paid:
            return PaymentOutcome.FINISHED
        return PaymentOutcome.WAITING

    async def reconcile_detailed(
        self,
        order_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> Union[ReconciliationReport, Failure]:
        try:
            self.gateway.build_query(order_id, invoice_id, None)
        except ValidationError as exc:
            return Failure.from_error(exc)

        evidence: List[Evidence] = []
        if self.settings.use_status_probes:
            successful = await self.gateway.lookup(order_id, invoice_id, probe=Probe.SUCCESSFUL)
            if isinstance(successful, NoMatchingInvoice) and successful.finished_signal:
                evidence.append(
                    Evidence(
                        step="probe",
                        probe=Probe.SUCCESSFUL,
                        kind=successful.kind,
                        outcome=PaymentOutcome.FINISHED,
                        reason="no invoice left in the waiting state",
                    )
                )
                return self._report(order_id, invoice_id, PaymentOutcome.FINISHED, Confidence.PROBE, evidence)
            from_successful = self._classify_result("probe", successful, order_id, invoice_id, evidence)

            waiting = await self.gateway.lookup(order_id, invoice_id, probe=Probe.WAITING)
            from_waiting = self._classify_result("probe", waiting, order_id, invoice_id, evidence)
            if from_waiting is not None:
                invoice, classification = from_waiting
                if from_successful is not None and from_successful[1].outcome != classification.outcome:
                    logger.warning(
                        "Status probes disagree order_id=%s successful_probe=%s waiting_probe=%s",
                        order_id,
                        from_successful[1].outcome.value,
                        classification.outcome.value,
                    )
                if classification.outcome == PaymentOutcome.UNKNOWN:
                    # A record under the waiting filter is itself evidence of waiting.
                    return self._report(
                        order_id, invoice_id, PaymentOutcome.WAITING, Confidence.PROBE, evidence, invoice
                    )
                return self._report(
                    order_id, invoice_id, classification.outcome, Confidence.RECORD, evidence, invoice
                )

        unprobed = await self.gateway.lookup(order_id, invoice_id)
        classified = self._classify_result("lookup", unprobed, order_id, invoice_id, evidence)
        if classified is not None:
            invoice, classification = classified
            confidence = Confidence.NONE if classification.outcome == PaymentOutcome.UNKNOWN else Confidence.RECORD
            return self._report(order_id, invoice_id, classification.outcome, confidence, evidence, invoice)

        logger.warning("Reconciliation unresolved order_id=%s invoice_id=%s", order_id, invoice_id)
        return self._report(order_id, invoice_id, PaymentOutcome.UNKNOWN, Confidence.NONE, evidence)

    def _classify_result(
        self,
        step: str,
        result: InvoiceQueryResult,
        order_id: Optional[str],
        invoice_id: Optional[str],
        evidence: List[Evidence],
    ) -> Optional[Classified]:
        if isinstance(result, InvoicesFound):
            invoice = result.select(order_id, invoice_id)
            if invoice is None:
                logger.warning(
                    "Processor returned only foreign records order_id=%s invoice_id=%s count=%s",
                    order_id,
                    invoice_id,
                    len(result.invoices),
                )
                evidence.append(
                    Evidence(
                        step=step,
                        probe=result.probe,
                        kind=result.kind,
                        reason=f"{len(result.invoices)} record(s) returned, none for this order",
                    )
                )
                return None
            classification = assess_invoice(invoice, self.settings.sufficiency_ratio)
            evidence.append(
                Evidence(
                    step=step,
                    probe=result.probe,
                    kind=result.kind,
                    outcome=classification.outcome,
                    reason=classification.reason,
                )
            )
            return invoice, classification
        if isinstance(result, NoMatchingInvoice):
            evidence.append(Evidence(step=step, probe=result.probe, kind=result.kind, reason="no matching invoice"))
            return None
        evidence.append(
            Evidence(step=step, kind=result.kind, reason=f"{result.reason.value}: {result.message}")
        )
        return None

    def _report(
        self,
        order_id: Optional[str],
        invoice_id: Optional[str],
        outcome: PaymentOutcome,
        confidence: Confidence,
        evidence: List[Evidence],
        invoice: Optional[Invoice] = None,
    ) -> ReconciliationReport:
        report = ReconciliationReport(
            order_id=order_id or (invoice.order_id if invoice else None),
            invoice_id=(invoice.invoice_id if invoice else None) or invoice_id,
            outcome=outcome,
            confidence=confidence,
            evidence=evidence,
            invoice=invoice,
        )
        logger.info(
            "Reconciled order_id=%s invoice_id=%s outcome=%s confidence=%s lookups=%s",
            report.order_id,
            report.invoice_id,
            outcome.value,
            confidence.value,
            len(evidence),
        )
        return report


async def generate_reconciliation_csv(engine: ReconciliationEngine, order_ids: Iterable[str]) -> Tuple[str, int]:
    """
    Reconcile each order in turn and return CSV text plus the number of orders not paid.
    """
    rows = []
    unpaid = 0
    for order_id in order_ids:
        report = await engine.reconcile_detailed(order_id)
        if isinstance(report, Failure):
            rows.append((order_id, "", PaymentOutcome.WAITING.value, Confidence.NONE.value, False))
            unpaid += 1
            continue
        if not report.paid:
            unpaid += 1
        rows.append(
            (
                order_id,
                report.invoice_id or "",
                report.outcome.value,
                report.confidence.value,
                report.paid,
            )
        )

    logger.info("Reconciliation complete orders=%s unpaid=%s", len(rows), unpaid)
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["orderId", "invoiceId", "outcome", "confidence", "paid"])
    for row in rows:
        writer.writerow(row)
    return output.getvalue(), unpaid
