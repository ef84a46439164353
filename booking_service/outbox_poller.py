import asyncio
import json
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from . import crud
from .config import settings
from .database import SessionLocal
from .projections import apply_event
from .search_index import SearchIndex

logger = logging.getLogger("outbox_poller")


async def dispatch_events(db: Session, index: SearchIndex, event_ids: Optional[List[int]] = None,
                          limit: int = 100) -> int:
    """
    Applies pending outbox events to the search index and deletes the ones
    that succeeded. Failed events stay PENDING for the next poll.
    Returns the number of events applied.
    """
    pending_events = crud.get_pending_events(db, limit=limit, event_ids=event_ids)
    if not pending_events:
        return 0

    events_processed = 0
    for event in pending_events:
        try:
            await apply_event(index, event.topic, json.loads(event.payload))
            db.delete(event)
            events_processed += 1
        except Exception as e:
            logger.error(f"Failed to apply outbox event {event.id} ({event.topic}): {e}")
            # Don't delete, will be retried next loop

    if events_processed > 0:
        db.commit()
    else:
        db.rollback()
    return events_processed


async def run_outbox_poller(index: SearchIndex, poll_interval: Optional[int] = None,
                            batch_size: Optional[int] = None):
    """
    Continuously polls the OutboxEvent table and applies pending mirror writes.
    """
    poll_interval = poll_interval or settings.OUTBOX_POLL_INTERVAL
    batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
    logger.info("Starting outbox poller...")

    try:
        while True:
            db: Session = SessionLocal()
            try:
                events_processed = await dispatch_events(db, index, limit=batch_size)
                if events_processed > 0:
                    logger.info(f"Successfully processed {events_processed} events.")
            except Exception as e:
                logger.error(f"Error in poller loop: {e}")
                db.rollback()
            finally:
                db.close()

            await asyncio.sleep(poll_interval)

    except asyncio.CancelledError:
        logger.info("Outbox poller task cancelled.")
        raise
    finally:
        logger.info("Outbox poller shut down.")
