from __future__ import annotations

import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ProcessorError
from app.models.dues import DuesPayment, MemberDues
from app.models.payment_intent import PaymentIntent
from app.services import payment_intents as payment_intents_service

WEBHOOK_SECRET = "whsec_test"


def _signed_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> dict[str, str]:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return {"Processor-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}


@pytest.fixture()
def webhook_secret(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setattr(settings, "PROCESSOR_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


def _create(client, record_id: int, method_type: str = "card", amount: str | None = None):
    payload = {"member_dues_id": record_id, "method_type": method_type}
    if amount is not None:
        payload["amount"] = amount
    return client.post("/payment-intents", json=payload)


def test_member_creates_card_authorization(client, authorize, member_user, sample_record, processor) -> None:
    authorize(member_user)

    response = _create(client, sample_record.id)

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["reused"] is False
    intent = body["intent"]
    assert intent["status"] == "pending"
    assert Decimal(intent["amount"]) == Decimal("500.00")
    assert Decimal(intent["charge_amount"]) == Decimal("515.24")
    assert Decimal(intent["processor_fee"]) == Decimal("15.24")
    assert Decimal(intent["transfer_amount"]) == Decimal("495.00")
    assert intent["client_secret"] == f"{intent['processor_intent_id']}_secret"

    [call] = processor.created
    assert call["amount"] == 51524
    assert call["transfer_amount"] == 49500
    assert call["destination"] == "acct_alpha"
    assert call["metadata"]["member_dues_id"] == sample_record.id
    assert call["idempotency_key"].startswith(f"dues-{sample_record.id}-")


def test_repeat_request_reuses_open_authorization(client, authorize, member_user, sample_record, processor) -> None:
    authorize(member_user)

    first = _create(client, sample_record.id).json()
    second = _create(client, sample_record.id)

    assert second.status_code == 201
    assert second.json()["reused"] is True
    assert second.json()["intent"]["id"] == first["intent"]["id"]
    assert second.json()["intent"]["processor_intent_id"] == first["intent"]["processor_intent_id"]
    assert len(processor.created) == 1


def test_processing_authorization_blocks_new_requests(
    client, authorize, member_user, sample_record, db_session: Session, processor
) -> None:
    authorize(member_user)
    intent_id = _create(client, sample_record.id).json()["intent"]["id"]
    db_session.expire_all()
    intent = db_session.get(PaymentIntent, intent_id)
    intent.status = "processing"
    db_session.commit()

    response = _create(client, sample_record.id, "bank_transfer")

    assert response.status_code == 409
    assert response.json()["code"] == "conflict"
    assert len(processor.created) == 1
    assert processor.canceled == []


def test_method_switch_cancels_then_recreates(client, authorize, member_user, sample_record, processor) -> None:
    authorize(member_user)
    card = _create(client, sample_record.id).json()["intent"]

    response = _create(client, sample_record.id, "bank_transfer")

    assert response.status_code == 201
    body = response.json()
    assert body["reused"] is False
    assert body["canceled_intent_id"] == card["id"]
    assert body["intent"]["method_type"] == "bank_transfer"
    assert Decimal(body["intent"]["charge_amount"]) == Decimal("500.00")
    assert Decimal(body["intent"]["processor_fee"]) == Decimal("4.00")
    assert Decimal(body["intent"]["transfer_amount"]) == Decimal("491.00")
    assert processor.canceled == [card["processor_intent_id"]]

    history = client.get(f"/payment-intents/records/{sample_record.id}").json()
    statuses = {item["id"]: item["status"] for item in history}
    assert statuses[card["id"]] == "canceled"
    assert statuses[body["intent"]["id"]] == "pending"


def test_requested_amount_is_limited_to_balance(client, authorize, member_user, make_record, sample_member) -> None:
    record = make_record(sample_member, "100.00")
    authorize(member_user)

    response = _create(client, record.id, "bank_transfer", amount="250.00")

    assert response.status_code == 201
    assert Decimal(response.json()["intent"]["amount"]) == Decimal("100.00")


def test_partial_amount_is_honoured(client, authorize, member_user, sample_record) -> None:
    authorize(member_user)

    response = _create(client, sample_record.id, "card", amount="100.00")

    assert response.status_code == 201
    assert Decimal(response.json()["intent"]["amount"]) == Decimal("100.00")


def test_chapter_admin_may_act_for_member(client, authorize, treasurer_user, sample_record) -> None:
    authorize(treasurer_user)

    assert _create(client, sample_record.id).status_code == 201


@pytest.mark.parametrize("user_fixture", ["stranger_user", "outside_admin"])
def test_other_callers_are_rejected(client, authorize, request, user_fixture, sample_record, processor) -> None:
    authorize(request.getfixturevalue(user_fixture))

    response = _create(client, sample_record.id)

    assert response.status_code == 403
    assert processor.created == []


def test_paid_record_cannot_be_charged(client, authorize, member_user, make_record, sample_member, processor) -> None:
    record = make_record(sample_member, amount_paid=Decimal("500.00"))
    authorize(member_user)

    response = _create(client, record.id)

    assert response.status_code == 409
    assert processor.created == []


def test_unsupported_method_is_rejected_before_processor(
    client, authorize, member_user, sample_record, processor
) -> None:
    authorize(member_user)

    response = _create(client, sample_record.id, "paypal")

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert processor.created == []


def test_processor_failure_leaves_no_local_row(
    client, authorize, member_user, sample_record, processor, db_session: Session
) -> None:
    processor.fail_create = ProcessorError("card_declined", processor_code="card_declined")
    authorize(member_user)

    response = _create(client, sample_record.id)

    assert response.status_code == 502
    db_session.expire_all()
    assert db_session.query(PaymentIntent).count() == 0
    assert db_session.get(MemberDues, sample_record.id).balance == Decimal("500.00")


def test_local_insert_failure_cancels_external_authorization(
    client, authorize, member_user, sample_record, processor, monkeypatch: pytest.MonkeyPatch, db_session: Session
) -> None:
    def _fail(db, intent):
        raise OperationalError("INSERT INTO payment_intents", {}, Exception("disk I/O error"))

    monkeypatch.setattr(payment_intents_service, "_persist_intent", _fail)
    authorize(member_user)

    response = _create(client, sample_record.id)

    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "consistency_error"
    [created] = processor.created
    assert body["processor_intent_id"] == created["id"]
    assert processor.canceled == [created["id"]]
    db_session.expire_all()
    assert db_session.query(PaymentIntent).count() == 0


def test_cancel_only_while_pending(client, authorize, member_user, sample_record, processor) -> None:
    authorize(member_user)
    intent = _create(client, sample_record.id).json()["intent"]

    response = client.post(f"/payment-intents/{intent['id']}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "canceled"
    assert processor.canceled == [intent["processor_intent_id"]]

    again = client.post(f"/payment-intents/{intent['id']}/cancel")
    assert again.status_code == 409


def test_settlement_webhook_applies_payment_once(
    client, authorize, member_user, sample_record, webhook_secret, db_session: Session
) -> None:
    authorize(member_user)
    intent = _create(client, sample_record.id).json()["intent"]
    body = json.dumps({"id": intent["processor_intent_id"], "status": "succeeded"}).encode()

    first = client.post("/payment-intents/webhook", content=body, headers=_signed_headers(body))
    second = client.post("/payment-intents/webhook", content=body, headers=_signed_headers(body))

    assert first.status_code == 200, first.text
    assert first.json()["status"] == "succeeded"
    assert second.status_code == 200
    db_session.expire_all()
    record = db_session.get(MemberDues, sample_record.id)
    assert record.amount_paid == Decimal("500.00")
    assert record.balance == Decimal("0.00")
    assert record.status == "paid"
    payments = db_session.query(DuesPayment).filter_by(member_dues_id=sample_record.id).all()
    assert [p.reference_number for p in payments] == [intent["processor_intent_id"]]


def test_failure_webhook_leaves_balance_untouched(
    client, authorize, member_user, sample_record, webhook_secret, db_session: Session
) -> None:
    authorize(member_user)
    intent = _create(client, sample_record.id).json()["intent"]
    event = {
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": intent["processor_intent_id"], "last_payment_error": {"message": "card_declined"}}},
    }
    body = json.dumps(event).encode()

    response = client.post("/payment-intents/webhook", content=body, headers=_signed_headers(body))

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    db_session.expire_all()
    stored = db_session.get(PaymentIntent, intent["id"])
    assert stored.failure_reason == "card_declined"
    assert db_session.get(MemberDues, sample_record.id).balance == Decimal("500.00")


def test_webhook_rejects_bad_signature(client, webhook_secret) -> None:
    body = json.dumps({"id": "pi_unknown", "status": "succeeded"}).encode()

    response = client.post(
        "/payment-intents/webhook",
        content=body,
        headers=_signed_headers(body, secret="not-the-secret"),
    )

    assert response.status_code == 400


def test_fee_preview(client, authorize, member_user) -> None:
    authorize(member_user)

    response = client.get("/payment-intents/fees", params={"amount": "500.00", "method_type": "bank_transfer"})

    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["processor_fee"]) == Decimal("4.00")
    assert Decimal(body["platform_fee"]) == Decimal("5.00")
    assert Decimal(body["transfer_amount"]) == Decimal("491.00")


def test_waive_cancels_pending_authorization(
    client, authorize, member_user, treasurer_user, sample_record, processor, db_session: Session
) -> None:
    authorize(member_user)
    intent = _create(client, sample_record.id).json()["intent"]

    authorize(treasurer_user)
    response = client.post(f"/dues/records/{sample_record.id}/waive", json={"note": "hardship"})

    assert response.status_code == 200
    assert response.json()["status"] == "waived"
    assert processor.canceled == [intent["processor_intent_id"]]
    db_session.expire_all()
    assert db_session.get(PaymentIntent, intent["id"]).status == "canceled"


def test_waive_blocked_while_payment_processing(
    client, authorize, member_user, treasurer_user, sample_record, processor, db_session: Session
) -> None:
    authorize(member_user)
    intent_id = _create(client, sample_record.id).json()["intent"]["id"]
    db_session.expire_all()
    db_session.get(PaymentIntent, intent_id).status = "processing"
    db_session.commit()

    authorize(treasurer_user)
    response = client.post(f"/dues/records/{sample_record.id}/waive", json={})

    assert response.status_code == 409
    assert processor.canceled == []
    db_session.expire_all()
    assert db_session.get(MemberDues, sample_record.id).status == "pending"


def test_settlement_after_waiver_is_still_recorded(
    client, authorize, member_user, treasurer_user, sample_record, webhook_secret, db_session: Session
) -> None:
    authorize(member_user)
    intent = _create(client, sample_record.id).json()["intent"]
    authorize(treasurer_user)
    assert client.post(f"/dues/records/{sample_record.id}/waive", json={}).status_code == 200
    body = json.dumps({"id": intent["processor_intent_id"], "status": "succeeded"}).encode()

    response = client.post("/payment-intents/webhook", content=body, headers=_signed_headers(body))

    assert response.status_code == 200, response.text
    assert response.json()["status"] == "succeeded"
    db_session.expire_all()
    record = db_session.get(MemberDues, sample_record.id)
    assert record.status == "paid"
    assert record.amount_paid == Decimal("500.00")
    assert "Waiver removed" in record.notes
    [payment] = db_session.query(DuesPayment).filter_by(member_dues_id=sample_record.id).all()
    assert payment.reference_number == intent["processor_intent_id"]
