"""
Billing provider webhooks.

Payment confirmations and cancellations from the provider are applied to
the prompt ledger through upgrade_plan. Processing is idempotent on the
provider's event id: the billing_events table records every event once.

Signature header: ``t=<unix seconds>,v1=<hex hmac-sha256>`` over
``"<t>." + raw body``.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from vanda.core.config import settings
from vanda.core.database import billing_events, get_db_session
from vanda.core.errors import ValidationError, WebhookSignatureError
from vanda.core.logging import log_event
from vanda.features.billing.plans import DEFAULT_PLAN_ID
from vanda.features.usage.service import ensure_subscription, upgrade_plan

SIGNATURE_HEADER = "x-billing-signature"

PLAN_ACTIVATING_EVENTS = {"payment.confirmed", "subscription.activated"}
PLAN_CANCELING_EVENTS = {"subscription.canceled"}


class BillingWebhookEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    user_id: Optional[str] = None
    plan: Optional[str] = None
    external_billing_id: Optional[str] = None


class BillingWebhookResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: BillingWebhookEvent
    duplicate: bool = False
    applied: bool = False


def sign_payload(secret: str, timestamp: int, body: bytes) -> str:
    signed_content = f"{timestamp}.".encode() + body
    digest = hmac.new(secret.encode(), signed_content, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _parse_signature_header(header: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            parts[key] = value
    return parts


def verify_signature(
    secret: str,
    header: Optional[str],
    body: bytes,
    now: Optional[int] = None,
    tolerance_seconds: Optional[int] = None,
) -> None:
    """
    Verify the signature header and replay window.

    Raises:
        WebhookSignatureError: If the header is missing, malformed, stale, or wrong
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing signature header")

    parts = _parse_signature_header(header)
    try:
        timestamp = int(parts["t"])
        provided = parts["v1"]
    except (KeyError, ValueError):
        raise WebhookSignatureError("Malformed signature header")

    tolerance = settings.BILLING_WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
    now = int(time.time()) if now is None else now
    if abs(now - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance window")

    expected = _parse_signature_header(sign_payload(secret, timestamp, body))["v1"]
    if not hmac.compare_digest(provided, expected):
        raise WebhookSignatureError("Signature mismatch")


def parse_event(body: bytes) -> BillingWebhookEvent:
    """
    Parse a provider payload.

    Expected shape::

        {"id": "evt_1", "type": "payment.confirmed",
         "data": {"user_id": "...", "plan": "pro", "billing_id": "..."}}
    """
    try:
        payload: Any = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise ValidationError("Webhook event requires id and type")

    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("Webhook event data must be an object")

    return BillingWebhookEvent(
        event_id=str(event_id),
        event_type=str(event_type),
        user_id=data.get("user_id"),
        plan=data.get("plan"),
        external_billing_id=data.get("billing_id"),
    )


def _apply_event(event: BillingWebhookEvent) -> bool:
    if event.event_type in PLAN_ACTIVATING_EVENTS:
        if not event.user_id or not event.plan:
            raise ValidationError(f"{event.event_type} requires user_id and plan")
        ensure_subscription(event.user_id)
        upgrade_plan(
            event.user_id,
            event.plan,
            source="external",
            external_billing_id=event.external_billing_id,
        )
        return True

    if event.event_type in PLAN_CANCELING_EVENTS:
        if not event.user_id:
            raise ValidationError(f"{event.event_type} requires user_id")
        ensure_subscription(event.user_id)
        upgrade_plan(event.user_id, DEFAULT_PLAN_ID, source="external")
        return True

    return False


def process_webhook_event(headers: Mapping[str, str], body: bytes) -> BillingWebhookResult:
    """
    Process a billing webhook (idempotent).

    1. Verify signature
    2. Record the event; skip if it was already processed, retry if an
       earlier delivery failed to apply
    3. Apply plan changes
    4. Mark as processed, or store the error and re-raise
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    verify_signature(settings.BILLING_WEBHOOK_SECRET or "", lowered.get(SIGNATURE_HEADER), body)
    event = parse_event(body)
    payload_hash = hashlib.sha256(body).hexdigest()

    try:
        with get_db_session() as session:
            existing = session.execute(
                select(billing_events.c.processed, billing_events.c.error).where(
                    billing_events.c.event_id == event.event_id
                )
            ).first()
            if existing and existing.processed:
                log_event(
                    "info",
                    "billing.webhook_duplicate",
                    user_id=event.user_id,
                    event_type=event.event_type,
                    extra={"event_id": event.event_id},
                )
                return BillingWebhookResult(event=event, duplicate=True)

            if existing:
                # Plan changes are absolute, so re-applying is safe
                log_event(
                    "info",
                    "billing.webhook_retry",
                    user_id=event.user_id,
                    event_type=event.event_type,
                    extra={"event_id": event.event_id, "previous_error": existing.error},
                )
            else:
                session.execute(
                    insert(billing_events).values(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        user_id=event.user_id,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
    except IntegrityError:
        # Another delivery of the same event got recorded first
        return BillingWebhookResult(event=event, duplicate=True)

    try:
        applied = _apply_event(event)
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.event_id == event.event_id)
                .values(error=str(e))
            )
        log_event(
            "error",
            "billing.webhook_failed",
            user_id=event.user_id,
            event_type=event.event_type,
            error_code=getattr(e, "code", type(e).__name__),
            extra={"event_id": event.event_id, "error": e},
        )
        raise

    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.event_id == event.event_id)
            .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
        )

    log_event(
        "info",
        "billing.webhook_processed",
        user_id=event.user_id,
        event_type=event.event_type,
        extra={"event_id": event.event_id, "applied": applied, "plan": event.plan},
    )
    return BillingWebhookResult(event=event, applied=applied)
