"""Idempotency ledger for provider webhook events.

The ledger row is written inside the same transaction as the handler's
projection write. ``event_id`` is the primary key, so when two deliveries of
the same event race past :meth:`IdempotencyLedger.has_processed`, the second
flush fails with a duplicate key and its transaction (projection write
included) is rolled back.
"""

from __future__ import annotations

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bms_billing.billing.errors import DuplicateEventError
from bms_billing.core.models import ProcessedWebhookEvent
from bms_billing.core.utils import utcnow

logger = structlog.get_logger()


class IdempotencyLedger:

    def has_processed(self, db: Session, event_id: str) -> bool:
        return db.get(ProcessedWebhookEvent, event_id) is not None

    def mark_processed(self, db: Session, event_id: str, event_type: str) -> ProcessedWebhookEvent:
        """Insert the ledger row and flush it.

        Raises ``DuplicateEventError`` when another delivery already recorded
        the id. The session must be rolled back by the caller in that case.
        """
        entry = ProcessedWebhookEvent(event_id=event_id, event_type=event_type, processed_at=utcnow())
        db.add(entry)
        try:
            db.flush()
        except IntegrityError as exc:
            logger.info("billing.ledger.duplicate", event_id=event_id, event_type=event_type)
            raise DuplicateEventError(event_id) from exc
        return entry
