import asyncio
import json

import httpx

from payment_hub.errors import FailureReason
from payment_hub.main import build_hub
from payment_hub.models import Confidence, Failure, PaymentOutcome, ReconciliationReport
from payment_hub.reconciliation import generate_reconciliation_csv

EMPTY = {"status": "success", "message": "[]"}


def _record(**overrides):
    record = {
        "id": 42,
        "order_id": "o1",
        "status": "waiting",
        "price_amount": "100",
        "price_currency": "USD",
    }
    record.update(overrides)
    return record


def _message(*records):
    return {"status": "success", "message": json.dumps(list(records))}


def _by_probe(answers):
    """Answer get_invoices according to the probe flag in the request body."""

    def respond(body):
        return answers[body.get("status")]

    return respond


def test_successful_probe_empty_marker_short_circuits_to_finished(hub, processor):
    processor.on("get_invoices", EMPTY)
    report = asyncio.run(hub.engine.reconcile_detailed("o1"))
    assert isinstance(report, ReconciliationReport)
    assert report.outcome == PaymentOutcome.FINISHED
    assert report.confidence == Confidence.PROBE
    assert [call["status"] for call in processor.calls_to("get_invoices")] == [1]
    assert asyncio.run(hub.engine.reconcile("o1")) == PaymentOutcome.FINISHED


def test_waiting_probe_record_is_classified(hub, processor):
    processor.on("get_invoices", _by_probe({1: _message(_record()), 0: _message(_record())}))
    report = asyncio.run(hub.engine.reconcile_detailed("o1"))
    assert report.outcome == PaymentOutcome.WAITING
    assert report.confidence == Confidence.RECORD
    assert report.invoice.invoice_id == "42"
    assert [call.get("status") for call in processor.calls_to("get_invoices")] == [1, 0]


def test_partial_payment_is_confirming_and_not_paid(hub, processor):
    processor.on(
        "get_invoices",
        _by_probe({1: _message(_record(status=None, amount="50")), 0: _message(_record(status=None, amount="50"))}),
    )
    report = asyncio.run(hub.engine.reconcile_detailed("o1"))
    assert report.outcome == PaymentOutcome.CONFIRMING
    assert asyncio.run(hub.engine.reconcile("o1")) == PaymentOutcome.WAITING


def test_probe_disagreement_is_logged(hub, processor, caplog):
    processor.on(
        "get_invoices",
        _by_probe({1: _message(_record(status="finished")), 0: _message(_record(status="waiting"))}),
    )
    with caplog.at_level("WARNING"):
        report = asyncio.run(hub.engine.reconcile_detailed("o1"))
    assert report.outcome == PaymentOutcome.WAITING
    assert "Status probes disagree" in caplog.text


def test_waiting_probe_with_unclassifiable_record_reports_waiting(hub, processor):
    processor.on("get_invoices", _by_probe({1: _message(_record(status="sending")), 0: _message(_record(status="sending"))}))
    report = asyncio.run(hub.engine.reconcile_detailed("o1"))
    assert report.outcome == PaymentOutcome.WAITING
    assert report.confidence == Confidence.PROBE


def test_falls_back_to_unprobed_lookup(hub, processor):
    processor.on(
        "get_invoices",
        _by_probe(
            {
                1: httpx.Response(500),
                0: {"status": "success", "message": "[]"},
                None: {"result": _record(status="Completed")},
            }
        ),
    )
    report = asyncio.run(hub.engine.reconcile_detailed("o1"))
    assert report.outcome == PaymentOutcome.FINISHED
    assert report.confidence == Confidence.RECORD
    assert [call.get("status") for call in processor.calls_to("get_invoices")] == [1, 0, None]
    assert [item.step for item in report.evidence] == ["probe", "probe", "lookup"]


def test_total_failure_is_waiting_never_finished(hub, processor):
    processor.on("get_invoices", httpx.ConnectError("connection refused"))
    report = asyncio.run(hub.engine.reconcile_detailed("o1"))
    assert report.outcome == PaymentOutcome.UNKNOWN
    assert report.confidence == Confidence.NONE
    assert len(processor.calls_to("get_invoices")) == 3
    assert asyncio.run(hub.engine.reconcile("o1")) == PaymentOutcome.WAITING


def test_unprobed_empty_result_is_not_found(hub, processor):
    processor.on("get_invoices", _by_probe({1: httpx.Response(502), 0: httpx.Response(502), None: EMPTY}))
    assert asyncio.run(hub.engine.reconcile("o1")) == PaymentOutcome.WAITING


def test_probes_can_be_disabled(settings, processor):
    hub = build_hub(settings.model_copy(update={"use_status_probes": False}), transport=processor.transport)
    processor.on("get_invoices", EMPTY)
    report = asyncio.run(hub.engine.reconcile_detailed("o1"))
    assert report.outcome == PaymentOutcome.UNKNOWN
    assert [call.get("status") for call in processor.calls_to("get_invoices")] == [None]


def test_reconcile_detailed_requires_an_identifier(hub, processor):
    result = asyncio.run(hub.engine.reconcile_detailed())
    assert isinstance(result, Failure)
    assert result.reason == FailureReason.VALIDATION
    assert processor.calls == []


def test_reconciliation_csv_counts_unpaid_orders(hub, processor):
    def respond(body):
        if body["order_id"] == "paid":
            return EMPTY
        return _message(_record(order_id=body["order_id"]))

    processor.on("get_invoices", respond)
    csv_text, unpaid = asyncio.run(generate_reconciliation_csv(hub.engine, ["paid", "open"]))
    assert unpaid == 1
    lines = csv_text.splitlines()
    assert lines[0] == "orderId,invoiceId,outcome,confidence,paid"
    assert lines[1] == "paid,,finished,probe,True"
    assert lines[2] == "open,42,waiting,record,False"


def test_reconcile_command_writes_csv_and_exit_code(settings, processor, tmp_path):
    from payment_hub.commands.reconcile import reconcile

    processor.on("get_invoices", _by_probe({1: _message(_record()), 0: _message(_record())}))
    output = tmp_path / "reconciliation.csv"
    exit_code = asyncio.run(reconcile(["o1"], str(output), settings=settings, transport=processor.transport))
    assert exit_code == 1
    assert output.read_text().splitlines()[1] == "o1,42,waiting,record,False"


def test_foreign_record_never_decides_the_outcome(hub, processor):
    foreign = _record(id=99, order_id="other", status="finished", amount="100")
    processor.on("get_invoices", _by_probe({1: _message(foreign), 0: EMPTY, None: {"result": foreign}}))
    report = asyncio.run(hub.engine.reconcile_detailed("o1"))
    assert report.outcome == PaymentOutcome.UNKNOWN
    assert report.confidence == Confidence.NONE
    assert report.invoice is None
    assert report.order_id == "o1"
    assert "none for this order" in report.evidence[-1].reason
    assert asyncio.run(hub.engine.reconcile("o1")) == PaymentOutcome.WAITING
