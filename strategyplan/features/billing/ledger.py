"""
Idempotent event ledger.

`try_claim` is an unconditional insert keyed on the provider event id; the
primary key is the only concurrency guard. A claim is never released, even
when handling fails afterwards.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from strategyplan.core.database import get_session_factory, get_db_session, processed_events

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000


class EventLedger:

    def try_claim(self, event_id: str, event_type: str, payload_hash: Optional[str] = None) -> bool:
        """
        Claim an event for processing.

        Returns:
            True if this caller claimed it, False if it was already claimed
        """
        SessionLocal = get_session_factory()
        session = SessionLocal()
        try:
            session.execute(
                insert(processed_events).values(
                    event_id=event_id,
                    event_type=event_type,
                    payload_hash=payload_hash,
                    processed_at=datetime.now(timezone.utc),
                    handled=False,
                )
            )
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            logger.info("billing.event_duplicate", extra={"event_id": event_id, "event_type": event_type})
            return False
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def mark_handled(self, event_id: str) -> None:
        with get_db_session() as session:
            session.execute(
                update(processed_events)
                .where(processed_events.c.event_id == event_id)
                .values(handled=True, error=None)
            )

    def record_error(self, event_id: str, message: str) -> None:
        with get_db_session() as session:
            session.execute(
                update(processed_events)
                .where(processed_events.c.event_id == event_id)
                .values(handled=False, error=message[:_MAX_ERROR_LENGTH])
            )

    def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        with get_db_session() as session:
            row = session.execute(
                select(processed_events).where(processed_events.c.event_id == event_id)
            ).fetchone()
            return dict(row._mapping) if row else None
