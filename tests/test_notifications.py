import asyncio

import pytest

from payment_hub.errors import AuthenticityError, FailureReason, ValidationError
from payment_hub.models import Failure, NotificationProcessed, PaymentOutcome
from payment_hub.notifications import normalize_notification
from payment_hub.security import compute_signature, verify_notification

WEBHOOK = {
    "id": 237727,
    "order_id": "sub_21_a7594de2",
    "price_amount": "2.00000000",
    "price_currency": "USD",
    "amount": "1.90000000",
    "amount_currency": "USDT",
    "created_at": "2025-09-17 12:58:09",
    "expiration_date": "2025-09-19 12:58:09",
}


def test_generic_id_stands_in_for_invoice_id():
    notification = normalize_notification({"order_id": "o1", "id": 42})
    assert notification.invoice_id == "42"
    assert notification.payload["invoice_id"] == "42"


def test_dedicated_invoice_id_wins_over_generic_id():
    notification = normalize_notification({"order_id": "o1", "invoice_id": "inv-1", "id": 42})
    assert notification.invoice_id == "inv-1"


@pytest.mark.parametrize("payload", [{"order_id": "o1"}, {"id": 42}, {}, ["order_id"], None])
def test_missing_identifiers_are_rejected(payload):
    with pytest.raises(ValidationError):
        normalize_notification(payload)


def test_label_less_sufficient_payment_fires_on_finished_once(hub, hooks, processor):
    payload = {"order_id": "o1", "id": 42, "price_amount": "100", "amount": "96", "amount_currency": "USDT"}
    result = asyncio.run(hub.notifications.handle(payload))
    assert isinstance(result, NotificationProcessed)
    assert result.outcome == PaymentOutcome.FINISHED
    assert result.inferred is True
    assert hooks.names == ["on_finished"]
    event = hooks.fired[0][1]
    assert event.invoice_id == "42"
    assert event.invoice.paid_currency == "USDT"
    assert processor.calls == []


def test_order_only_payload_is_rejected_before_classification(hub, hooks, processor):
    result = asyncio.run(hub.notifications.handle({"order_id": "o1"}))
    assert isinstance(result, Failure)
    assert result.reason == FailureReason.VALIDATION
    assert hooks.fired == []
    assert processor.calls == []


@pytest.mark.parametrize(
    "status,hook",
    [
        ("waiting", "on_waiting"),
        ("finished", "on_finished"),
        ("Confirmed", "on_finished"),
        ("failed", "on_failed"),
        ("refunded", "on_refunded"),
        ("expired", "on_expired"),
    ],
)
def test_each_outcome_maps_to_one_hook(hub, hooks, status, hook):
    result = asyncio.run(hub.notifications.handle({**WEBHOOK, "status": status}))
    assert result.hook == hook
    assert hooks.names == [hook]


def test_partial_payment_fires_on_confirming(hub, hooks):
    payload = {"order_id": "o1", "id": 1, "price_amount": "100", "amount": "40"}
    result = asyncio.run(hub.notifications.handle(payload))
    assert result.outcome == PaymentOutcome.CONFIRMING
    assert hooks.names == ["on_confirming"]


def test_confirming_escalates_when_fiat_equivalent_is_sufficient(hub, hooks):
    payload = {
        "order_id": "o1",
        "id": 1,
        "price_amount": "100",
        "price_currency": "USD",
        "amount": "0.0015",
        "amount_currency": "BTC",
        "actually_paid_at_fiat": "99.10",
    }
    result = asyncio.run(hub.notifications.handle(payload))
    assert result.outcome == PaymentOutcome.FINISHED
    assert result.rechecked is True
    assert hooks.names == ["on_finished"]


def test_unknown_status_is_refreshed_from_processor(hub, hooks, processor):
    processor.on("get_invoices", {"result": {"id": 42, "order_id": "o1", "status": "finished", "price_amount": "100"}})
    result = asyncio.run(hub.notifications.handle({"order_id": "o1", "id": 42, "status": "sending"}))
    assert result.outcome == PaymentOutcome.FINISHED
    assert hooks.names == ["on_finished"]
    assert processor.calls_to("get_invoices") == [
        {"public_key": "pub-key", "private_key": "priv-key", "order_id": "o1", "invoice_id": "42"}
    ]


def test_still_unknown_after_refresh_defaults_to_waiting(hub, hooks, processor):
    processor.on("get_invoices", {"result": {"id": 42, "order_id": "o1", "status": "sending"}})
    result = asyncio.run(hub.notifications.handle({"order_id": "o1", "id": 42}))
    assert result.outcome == PaymentOutcome.WAITING
    assert hooks.names == ["on_waiting"]
    assert len(processor.calls_to("get_invoices")) == 1


def test_unknown_with_failed_refresh_defaults_to_waiting(hub, hooks, processor):
    processor.on("get_invoices", {"status": "error", "message": "Invalid key"})
    result = asyncio.run(hub.notifications.handle({"order_id": "o1", "id": 42, "amount": "96"}))
    assert result.outcome == PaymentOutcome.WAITING
    assert hooks.names == ["on_waiting"]


def test_valid_signature_is_accepted(hub, hooks, settings):
    signature = compute_signature(WEBHOOK, settings.signing_key)
    result = asyncio.run(hub.notifications.handle(WEBHOOK, signature=signature))
    assert isinstance(result, NotificationProcessed)
    assert hooks.names == ["on_finished"]


def test_tampered_signature_stops_processing(hub, hooks, settings):
    signature = compute_signature(WEBHOOK, settings.signing_key)
    tampered = {**WEBHOOK, "amount": "2.00000000"}
    result = asyncio.run(hub.notifications.handle(tampered, signature=signature))
    assert isinstance(result, Failure)
    assert result.reason == FailureReason.AUTHENTICITY
    assert hooks.fired == []


def test_shared_secret_field_is_checked(hub, hooks):
    accepted = asyncio.run(hub.notifications.handle({**WEBHOOK, "privatekey": "priv-key"}))
    assert isinstance(accepted, NotificationProcessed)

    rejected = asyncio.run(hub.notifications.handle({**WEBHOOK, "privatekey": "guess"}))
    assert isinstance(rejected, Failure)
    assert rejected.reason == FailureReason.AUTHENTICITY
    assert hooks.names == ["on_finished"]


def test_signature_is_independent_of_key_order(settings):
    reordered = dict(reversed(list({**WEBHOOK, "meta": {"b": 1, "a": [1, {"z": 0, "y": 1}]}}.items())))
    original = {**WEBHOOK, "meta": {"a": [1, {"y": 1, "z": 0}], "b": 1}}
    assert compute_signature(reordered, "k") == compute_signature(original, "k")


def test_signature_field_in_payload_is_verified(settings):
    signed = {**WEBHOOK, "signature": compute_signature(WEBHOOK, settings.signing_key)}
    assert verify_notification(signed, settings) == "hmac"
    with pytest.raises(AuthenticityError):
        verify_notification({**signed, "order_id": "other"}, settings)


def test_authentication_can_be_required(settings):
    strict = settings.model_copy(update={"require_webhook_authentication": True})
    assert verify_notification(WEBHOOK, settings) is None
    with pytest.raises(AuthenticityError):
        verify_notification(WEBHOOK, strict)


def test_refreshed_invoice_runs_through_dispatch_without_authenticity(hub, hooks):
    from payment_hub.models import Invoice

    invoice = Invoice.from_processor({**WEBHOOK, "status": "expired", "privatekey": "not-checked"})
    result = asyncio.run(hub.notifications.process_invoice(invoice))
    assert result.outcome == PaymentOutcome.EXPIRED
    assert hooks.names == ["on_expired"]


def test_logged_payloads_hide_credentials():
    from payment_hub.logging_config import mask_payload

    masked = mask_payload({"privatekey": "priv-key", "customer_email": "a@b.c", "meta": {"secret": "s"}, "id": 1})
    assert masked == {"privatekey": "***", "customer_email": "***@***.***", "meta": {"secret": "***"}, "id": 1}


def test_refresh_ignores_records_of_other_orders(hub, hooks, processor):
    processor.on("get_invoices", {"result": [{"id": 99, "order_id": "other", "status": "finished"}]})
    result = asyncio.run(hub.notifications.handle({"order_id": "o1", "id": "42", "status": "sending"}))
    assert result.outcome == PaymentOutcome.WAITING
    assert result.order_id == "o1"
    assert hooks.names == ["on_waiting"]
    assert hooks.fired[0][1].invoice.status == "sending"


def test_non_ascii_signature_is_an_authenticity_failure(hub, hooks):
    payload = {"order_id": "o1", "id": 42, "status": "finished", "signature": "éabc"}
    result = asyncio.run(hub.notifications.handle(payload))
    assert isinstance(result, Failure)
    assert result.reason == FailureReason.AUTHENTICITY
    assert hooks.fired == []


def test_non_text_fields_in_webhook_are_coerced(hub, hooks):
    payload = {
        "order_id": "o1",
        "id": 42,
        "status": "finished",
        "price_currency": 840,
        "amount_currency": 1,
        "url": 99,
        "expiration_date": 10**20,
    }
    result = asyncio.run(hub.notifications.handle(payload))
    assert isinstance(result, NotificationProcessed)
    assert result.outcome == PaymentOutcome.FINISHED
    event = hooks.fired[0][1]
    assert event.invoice.price_currency == "840"
    assert event.invoice.expires_at is None
