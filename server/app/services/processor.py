"""Payment processor contract and the HTTP adapter used in production.

The billing engine only talks to :class:`PaymentProcessor`; the concrete
adapter speaks a Stripe-compatible form API over httpx and retries transient
failures with the same idempotency key so a retried create never produces a
second authorization.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.core.config import settings
from app.core.errors import ProcessorError, ValidationError
from app.services.fees import BANK_TRANSFER

logger = logging.getLogger(__name__)

# Processor status -> local intent status.
_STATUS_MAP = {
    "requires_payment_method": "pending",
    "requires_confirmation": "pending",
    "requires_action": "pending",
    "requires_capture": "processing",
    "processing": "processing",
    "succeeded": "succeeded",
    "canceled": "canceled",
    "failed": "failed",
    "pending": "pending",
}

_EVENT_STATUS = {
    "payment_intent.processing": "processing",
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}


@dataclass
class AuthorizationHandle:
    id: str
    status: str
    client_handle: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class ProcessorEvent:
    processor_intent_id: str
    status: str
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class PaymentProcessor:
    """Interface implemented by every processor adapter (and by test fakes)."""

    def create_authorization(
        self,
        *,
        amount: int,
        method_type: str,
        transfer_amount: int,
        metadata: dict[str, Any],
        idempotency_key: str,
        destination: str | None = None,
        payment_method_id: str | None = None,
        confirm: bool = False,
    ) -> AuthorizationHandle:
        raise NotImplementedError

    def cancel_authorization(self, processor_intent_id: str) -> AuthorizationHandle:
        raise NotImplementedError

    def retrieve_authorization(self, processor_intent_id: str) -> AuthorizationHandle:
        raise NotImplementedError


def map_status(raw_status: str | None, *, has_error: bool = False) -> str:
    if raw_status == "requires_payment_method" and has_error:
        return "failed"
    return _STATUS_MAP.get(raw_status or "", "pending")


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, ProcessorError) and exc.retryable


class HttpPaymentProcessor(PaymentProcessor):
    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str,
        currency: str = "usd",
        timeout: float = 10.0,
        max_attempts: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "HttpPaymentProcessor":
        return cls(
            settings.PROCESSOR_API_KEY,
            base_url=settings.PROCESSOR_BASE_URL,
            currency=settings.CURRENCY,
            timeout=settings.PROCESSOR_TIMEOUT_SECONDS,
            max_attempts=settings.PROCESSOR_MAX_ATTEMPTS,
        )

    def _client(self) -> httpx.Client:
        if not self.api_key:
            raise ProcessorError("Payment processing is not configured")
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            auth=(self.api_key, ""),
            transport=self._transport,
        )

    def _send(self, method: str, path: str, *, data: dict | None, idempotency_key: str | None) -> dict:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        with self._client() as client:
            resp = client.request(method, path, data=data, headers=headers)
        if resp.status_code >= 500 or resp.status_code == 429:
            logger.warning("processor_retryable_response", extra={"status_code": resp.status_code, "path": path})
            raise ProcessorError("Payment processor is temporarily unavailable", retryable=True)
        payload = resp.json() if resp.content else {}
        if resp.status_code >= 400:
            error = payload.get("error") or {}
            logger.error("processor_error_response", extra={"status_code": resp.status_code, "error": error})
            raise ProcessorError(
                error.get("message") or "Payment processor rejected the request",
                processor_code=error.get("code"),
            )
        return payload

    def _request(self, method: str, path: str, *, data: dict | None = None, idempotency_key: str | None = None) -> dict:
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, max=4),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        try:
            for attempt in retryer:
                with attempt:
                    return self._send(method, path, data=data, idempotency_key=idempotency_key)
        except httpx.HTTPError as exc:
            logger.exception("processor_request_failed", extra={"path": path})
            raise ProcessorError("Unable to reach the payment processor", retryable=True) from exc
        raise ProcessorError("Payment processor request did not complete")

    @staticmethod
    def _handle(payload: dict) -> AuthorizationHandle:
        error = payload.get("last_payment_error") or {}
        return AuthorizationHandle(
            id=payload["id"],
            status=map_status(payload.get("status"), has_error=bool(error)),
            client_handle=payload.get("client_secret"),
            failure_reason=error.get("message"),
        )

    def create_authorization(
        self,
        *,
        amount: int,
        method_type: str,
        transfer_amount: int,
        metadata: dict[str, Any],
        idempotency_key: str,
        destination: str | None = None,
        payment_method_id: str | None = None,
        confirm: bool = False,
    ) -> AuthorizationHandle:
        data: dict[str, Any] = {
            "amount": amount,
            "currency": self.currency,
            "payment_method_types[]": "us_bank_account" if method_type == BANK_TRANSFER else "card",
            "transfer_data[amount]": transfer_amount,
        }
        if destination:
            data["transfer_data[destination]"] = destination
        if payment_method_id:
            data["payment_method"] = payment_method_id
        if confirm:
            data["confirm"] = "true"
            data["off_session"] = "true"
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = "" if value is None else str(value)
        return self._handle(self._request("POST", "/payment_intents", data=data, idempotency_key=idempotency_key))

    def cancel_authorization(self, processor_intent_id: str) -> AuthorizationHandle:
        payload = self._request(
            "POST",
            f"/payment_intents/{processor_intent_id}/cancel",
            idempotency_key=f"cancel-{processor_intent_id}",
        )
        return self._handle(payload)

    def retrieve_authorization(self, processor_intent_id: str) -> AuthorizationHandle:
        return self._handle(self._request("GET", f"/payment_intents/{processor_intent_id}"))


def get_processor() -> PaymentProcessor:
    return HttpPaymentProcessor.from_settings()


def verify_webhook_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Check a ``t=<ts>,v1=<hex>`` HMAC-SHA256 signature header."""
    if not secret:
        raise ValidationError("Webhook secret is not configured")
    if not signature_header:
        raise ValidationError("Missing webhook signature")
    parts: dict[str, list[str]] = {}
    for element in signature_header.split(","):
        key, _, value = element.strip().partition("=")
        parts.setdefault(key, []).append(value)
    timestamps = parts.get("t") or []
    signatures = parts.get("v1") or []
    if not timestamps or not signatures:
        raise ValidationError("Malformed webhook signature")
    try:
        timestamp = int(timestamps[0])
    except ValueError as exc:
        raise ValidationError("Malformed webhook signature") from exc
    current = now if now is not None else time.time()
    if abs(current - timestamp) > tolerance_seconds:
        raise ValidationError("Webhook timestamp outside tolerance")
    signed = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise ValidationError("Invalid webhook signature")


def parse_event(payload: bytes | dict) -> ProcessorEvent | None:
    """Translate a settlement notification into a :class:`ProcessorEvent`.

    Accepts either a processor event envelope (``type`` + ``data.object``) or a
    bare ``{"id": ..., "status": ...}`` notification. Returns ``None`` for
    event types the engine does not track.
    """
    try:
        body = json.loads(payload) if isinstance(payload, (bytes, str)) else payload
    except ValueError as exc:
        raise ValidationError("Malformed settlement notification") from exc
    if not isinstance(body, dict):
        raise ValidationError("Malformed settlement notification")
    if "type" in body:
        status = _EVENT_STATUS.get(body["type"])
        if status is None:
            return None
        obj = (body.get("data") or {}).get("object") or {}
        error = obj.get("last_payment_error") or {}
        intent_id = obj.get("id")
        metadata = obj.get("metadata") or {}
    else:
        intent_id = body.get("id")
        status = map_status(body.get("status"))
        error = {"message": body.get("failure_reason")} if body.get("failure_reason") else {}
        metadata = body.get("metadata") or {}
    if not intent_id:
        raise ValidationError("Settlement notification is missing an authorization id")
    return ProcessorEvent(
        processor_intent_id=intent_id,
        status=status,
        failure_reason=error.get("message"),
        metadata=metadata,
    )
