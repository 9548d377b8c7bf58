"""
Webhook gateway.

Authenticates inbound Stripe deliveries, records them in the event ledger
and hands them to the reconciler. The signature is checked against the raw
bytes before anything is parsed; a delivery that fails verification never
reaches the ledger or the store.
"""
import json
from dataclasses import dataclass
from typing import Optional

import stripe

from subsync.core.errors import ValidationError, WebhookSignatureError
from subsync.core.logging import log_event
from subsync.features.billing.events import EventParseError, WebhookEvent, parse_event
from subsync.features.billing.ledger import EventLedger, payload_hash
from subsync.features.billing.reconciler import ReconcileAction, SubscriptionReconciler


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    action: ReconcileAction
    duplicate: bool = False
    reason: Optional[str] = None


class WebhookGateway:
    def __init__(
        self,
        secret: Optional[str],
        reconciler: SubscriptionReconciler,
        ledger: EventLedger,
        *,
        tolerance_seconds: int = 300,
    ):
        self.secret = secret
        self.reconciler = reconciler
        self.ledger = ledger
        self.tolerance_seconds = tolerance_seconds

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> str:
        """
        Check the `Stripe-Signature` header against the raw body.

        Returns:
            The body decoded as text, safe to parse

        Raises:
            WebhookSignatureError: missing/invalid/expired signature, or no
                signing secret configured
        """
        if not self.secret:
            # Never accept unsigned deliveries, even when misconfigured
            log_event("error", "billing.webhook.secret_missing", error_code="unauthorized")
            raise WebhookSignatureError("Webhook signing secret not configured")
        if not signature_header:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookSignatureError("Webhook body is not valid UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.secret,
                tolerance=self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            log_event("warning", "billing.webhook.signature_invalid", error_code="unauthorized")
            raise WebhookSignatureError("Invalid webhook signature") from e
        return payload

    def parse(self, payload: str) -> WebhookEvent:
        try:
            envelope = json.loads(payload)
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON") from e
        try:
            return parse_event(envelope)
        except EventParseError as e:
            raise ValidationError(str(e)) from e

    def handle_inbound(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        """
        Verify, deduplicate and reconcile one delivery.

        Returns:
            WebhookOutcome; dropped and ignored events are still accepted

        Raises:
            WebhookSignatureError: authentication failed, nothing was touched
            ValidationError: authentic body that is not an event envelope
            TransientError: store or provider unavailable, the provider
                should redeliver
        """
        payload = self.verify(raw_body, signature_header)
        event = self.parse(payload)

        if not self.ledger.begin(event.event_id, event.event_type, payload_hash(raw_body)):
            log_event(
                "info",
                "billing.webhook.duplicate",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            return WebhookOutcome(
                event_id=event.event_id,
                event_type=event.event_type,
                action=ReconcileAction.UNCHANGED,
                duplicate=True,
            )

        try:
            result = self.reconciler.apply(event)
        except Exception as e:
            self._record_failure(event, e)
            raise

        self.ledger.mark_processed(event.event_id, result.action.value)
        return WebhookOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            action=result.action,
            reason=result.reason,
        )

    def _record_failure(self, event: WebhookEvent, exc: Exception) -> None:
        log_event(
            "error",
            "billing.webhook.processing_failed",
            event_id=event.event_id,
            event_type=event.event_type,
            error_code=getattr(exc, "code", "internal_error"),
            extra={"error": str(exc)},
        )
        try:
            self.ledger.mark_failed(event.event_id, f"{exc.__class__.__name__}: {exc}")
        except Exception:
            # The original failure is what the caller needs to see
            log_event("error", "billing.webhook.ledger_write_failed", event_id=event.event_id)
