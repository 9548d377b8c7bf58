"""
Webhook event ledger (`billing_events`).

One row per provider event id. Only rows marked processed short-circuit a
redelivery; an event whose handling failed stays unprocessed and is handled
again when the provider retries it.
"""
import hashlib
from datetime import datetime, timezone

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from subsync.core.database import get_db_session, billing_events
from subsync.features.billing.store import _store_errors


def payload_hash(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


class EventLedger:
    def __init__(self, session_factory=get_db_session):
        self._session = session_factory

    def is_processed(self, event_id: str) -> bool:
        with _store_errors(), self._session() as session:
            row = session.execute(
                select(billing_events.c.processed).where(billing_events.c.stripe_event_id == event_id)
            ).fetchone()
        return bool(row and row[0])

    def begin(self, event_id: str, event_type: str, body_hash: str) -> bool:
        """
        Register a delivery.

        Returns:
            False if the event was already processed, True if it should be
            handled now (first delivery, or a retry of a failed one)
        """
        if self.is_processed(event_id):
            return False
        try:
            with _store_errors(), self._session() as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=event_id,
                        event_type=event_type,
                        payload_hash=body_hash,
                        processed=False,
                    )
                )
                session.commit()
        except IntegrityError:
            # Row exists from an earlier failed attempt or a concurrent delivery
            return not self.is_processed(event_id)
        return True

    def mark_processed(self, event_id: str, outcome: str) -> None:
        with _store_errors(), self._session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(
                    processed=True,
                    processed_at=datetime.now(timezone.utc),
                    outcome=outcome,
                    error=None,
                )
            )
            session.commit()

    def mark_failed(self, event_id: str, error: str) -> None:
        with _store_errors(), self._session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(outcome="error", error=error[:2000])
            )
            session.commit()
