from __future__ import annotations

import hashlib
import hmac
import json
from urllib.parse import parse_qs

import httpx
import pytest

from app.core.errors import ProcessorError, ValidationError
from app.services.processor import HttpPaymentProcessor, map_status, parse_event, verify_webhook_signature

SECRET = "whsec_unit"


def _sign(body: bytes, timestamp: int, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_signature_accepts_valid_header() -> None:
    body = b'{"id": "pi_1"}'

    verify_webhook_signature(body, _sign(body, 1_000), SECRET, now=1_010)


@pytest.mark.parametrize(
    "header,now",
    [
        (None, 1_000),
        ("garbage", 1_000),
        ("t=abc,v1=00", 1_000),
        (_sign(b'{"id": "pi_1"}', 1_000, "other"), 1_000),
        (_sign(b'{"id": "pi_1"}', 1_000), 2_000),
    ],
)
def test_signature_rejections(header, now) -> None:
    with pytest.raises(ValidationError):
        verify_webhook_signature(b'{"id": "pi_1"}', header, SECRET, now=now)


def test_signature_requires_configured_secret() -> None:
    with pytest.raises(ValidationError):
        verify_webhook_signature(b"{}", "t=1,v1=00", None, now=1)


def test_parse_event_envelope() -> None:
    event = parse_event(
        json.dumps(
            {
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": "pi_9", "metadata": {"member_dues_id": "4"}}},
            }
        ).encode()
    )

    assert event.processor_intent_id == "pi_9"
    assert event.status == "succeeded"
    assert event.metadata == {"member_dues_id": "4"}


def test_parse_event_bare_notification_and_untracked_types() -> None:
    event = parse_event({"id": "pi_2", "status": "failed", "failure_reason": "insufficient_funds"})

    assert event.status == "failed"
    assert event.failure_reason == "insufficient_funds"
    assert parse_event({"type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}) is None


@pytest.mark.parametrize("payload", [b"not json", b"[]", b'{"status": "succeeded"}'])
def test_parse_event_rejects_malformed_payloads(payload: bytes) -> None:
    with pytest.raises(ValidationError):
        parse_event(payload)


def test_status_mapping() -> None:
    assert map_status("requires_payment_method") == "pending"
    assert map_status("requires_payment_method", has_error=True) == "failed"
    assert map_status("requires_capture") == "processing"
    assert map_status("something_new") == "pending"


def _processor(handler, max_attempts: int = 2) -> HttpPaymentProcessor:
    return HttpPaymentProcessor(
        "sk_test",
        base_url="https://processor.test/v1",
        max_attempts=max_attempts,
        transport=httpx.MockTransport(handler),
    )


def test_create_retries_transient_failures_with_same_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if len(seen) == 1:
            return httpx.Response(503, json={"error": {"message": "try later"}})
        return httpx.Response(200, json={"id": "pi_live", "status": "requires_payment_method", "client_secret": "cs"})

    handle = _processor(handler).create_authorization(
        amount=51524,
        method_type="card",
        transfer_amount=49500,
        metadata={"member_dues_id": 7, "installment_payment_id": None},
        idempotency_key="dues-7-attempt-1-card-51524",
        destination="acct_alpha",
    )

    assert handle.id == "pi_live"
    assert handle.status == "pending"
    assert handle.client_handle == "cs"
    assert len(seen) == 2
    assert {request.headers["Idempotency-Key"] for request in seen} == {"dues-7-attempt-1-card-51524"}
    form = parse_qs(seen[-1].content.decode())
    assert form["amount"] == ["51524"]
    assert form["transfer_data[destination]"] == ["acct_alpha"]
    assert form["metadata[member_dues_id]"] == ["7"]


def test_bank_transfer_uses_bank_account_method() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "pi_bank", "status": "processing"})

    handle = _processor(handler).create_authorization(
        amount=50000,
        method_type="bank_transfer",
        transfer_amount=49100,
        metadata={},
        idempotency_key="dues-1-attempt-1-bank_transfer-50000",
    )

    assert handle.status == "processing"
    assert parse_qs(seen[0].content.decode())["payment_method_types[]"] == ["us_bank_account"]


def test_client_errors_are_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(402, json={"error": {"message": "Your card was declined.", "code": "card_declined"}})

    with pytest.raises(ProcessorError) as excinfo:
        _processor(handler, max_attempts=3).create_authorization(
            amount=100, method_type="card", transfer_amount=90, metadata={}, idempotency_key="k"
        )

    assert excinfo.value.processor_code == "card_declined"
    assert excinfo.value.retryable is False
    assert len(calls) == 1


def test_unconfigured_processor_refuses_requests() -> None:
    processor = HttpPaymentProcessor(None, base_url="https://processor.test/v1")

    with pytest.raises(ProcessorError):
        processor.retrieve_authorization("pi_1")
