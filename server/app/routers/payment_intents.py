from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.orm import Session

from app.auth.deps import get_current_user
from app.core.config import settings
from app.core.db import get_db
from app.models.user import User
from app.schemas.payment_intent import (
    FeePreviewOut,
    PaymentIntentCreate,
    PaymentIntentOut,
    PaymentIntentResponse,
    WebhookAck,
)
from app.services import payment_intents as payment_intents_service
from app.services.processor import PaymentProcessor, get_processor, parse_event, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment-intents", tags=["payment-intents"])


@router.post("", response_model=PaymentIntentResponse, status_code=status.HTTP_201_CREATED)
def create_payment_intent(
    payload: PaymentIntentCreate,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    current_user: User = Depends(get_current_user),
) -> PaymentIntentResponse:
    result = payment_intents_service.create_or_reuse_authorization(
        db,
        processor,
        payload.member_dues_id,
        method_type=payload.method_type,
        requested_amount=payload.amount,
        actor=current_user,
    )
    return PaymentIntentResponse(
        intent=PaymentIntentOut.from_orm(result.intent),
        reused=result.reused,
        canceled_intent_id=result.canceled_intent_id,
    )


@router.get("/fees", response_model=FeePreviewOut)
def preview_fees(
    amount: Decimal = Query(..., gt=0),
    method_type: str = Query("card"),
    _: User = Depends(get_current_user),
) -> FeePreviewOut:
    return FeePreviewOut(**payment_intents_service.fee_preview(amount, method_type))


@router.post("/{intent_id}/cancel", response_model=PaymentIntentOut)
def cancel_payment_intent(
    intent_id: int,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    current_user: User = Depends(get_current_user),
) -> PaymentIntentOut:
    intent = payment_intents_service.cancel_authorization(db, processor, intent_id, current_user)
    return PaymentIntentOut.from_orm(intent)


@router.get("/records/{record_id}", response_model=list[PaymentIntentOut])
def list_record_intents(
    record_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[PaymentIntentOut]:
    intents = payment_intents_service.list_intents_for_record(db, record_id, current_user)
    return [PaymentIntentOut.from_orm(intent) for intent in intents]


@router.post("/webhook", response_model=WebhookAck)
async def processor_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias="Processor-Signature"),
    db: Session = Depends(get_db),
) -> WebhookAck:
    body = await request.body()
    verify_webhook_signature(
        body,
        signature,
        settings.PROCESSOR_WEBHOOK_SECRET,
        tolerance_seconds=settings.PROCESSOR_WEBHOOK_TOLERANCE_SECONDS,
    )
    event = parse_event(body)
    if event is None:
        return WebhookAck()
    intent = payment_intents_service.handle_processor_event(db, event)
    if intent is None:
        return WebhookAck()
    return WebhookAck(payment_intent_id=intent.id, status=intent.status)
