"""
Dedup/merge engine.

Three things can happen to an inbound delivery:

- duplicate: its provider id is already stored; hand back that message
- merged: the same sender texted the same tags a moment ago; append to that row
- created: anything else becomes a new row

Deliveries without a provider id that land within milliseconds of each other
can both miss the merge window and both insert. Deliveries with a provider id
are protected by the unique deliveries table.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aside import storage
from aside.config import settings
from aside.schemas import IngestionRequest
from aside.tags import resolve_tags
from aside.utils import utcnow

logger = logging.getLogger(__name__)


class IngestOutcome(str, enum.Enum):
    CREATED = "created"
    MERGED = "merged"
    DUPLICATE = "duplicate"


@dataclass
class IngestResult:
    message: object
    outcome: IngestOutcome
    tags: list[str] = field(default_factory=list)

    @property
    def is_new_delivery(self) -> bool:
        """Whether anything downstream (fan-out, onboarding) should react."""
        return self.outcome is not IngestOutcome.DUPLICATE


def _already_stored(db: Session, provider_message_id: Optional[str]):
    if not provider_message_id:
        return None
    return storage.find_message_by_provider_id(db, provider_message_id)


def _merge(db: Session, existing, request: IngestionRequest):
    merged_content = f"{existing.content} {request.content}".strip()
    return storage.update_message_content(
        db,
        existing,
        merged_content,
        provider_message_id=request.provider_message_id,
        media_url=request.raw_media_url,
        media_type=request.raw_media_type,
    )


def ingest(db: Session, request: IngestionRequest, user, now: Optional[datetime] = None) -> IngestResult:
    """
    Store one normalized delivery for user.

    Idempotent per provider_message_id: a repeat returns the stored message
    untouched with outcome DUPLICATE.

    Args:
        db: Database session
        request: Normalized delivery
        user: Owning User row
        now: Clock override; defaults to current UTC time

    Raises:
        SQLAlchemyError: store failure (other than a lost idempotency race)
    """
    now = now or utcnow()

    existing = _already_stored(db, request.provider_message_id)
    if existing is not None:
        logger.info(f"Duplicate delivery {request.provider_message_id} -> message {existing.id}")
        return IngestResult(existing, IngestOutcome.DUPLICATE, list(existing.tags))

    tags = resolve_tags(db, request.content, user.id, request.sender_identity, now=now)

    window_start = now - timedelta(seconds=settings.MERGE_WINDOW_SECONDS)
    recent = storage.find_recent_message(db, request.sender_identity, user.id, window_start)

    try:
        if recent is not None and set(recent.tags or []) == set(tags):
            logger.info(f"Merging delivery into message {recent.id} (same tags {tags})")
            message = _merge(db, recent, request)
            return IngestResult(message, IngestOutcome.MERGED, tags)

        if recent is not None:
            logger.debug(f"Recent message {recent.id} has tags {recent.tags}, new tags {tags}; not merging")

        message = storage.insert_message(
            db,
            sender_id=request.sender_identity,
            user_id=user.id,
            content=request.content,
            tags=tags,
            created_at=now,
            media_url=request.raw_media_url,
            media_type=request.raw_media_type,
            provider_message_id=request.provider_message_id,
        )
        return IngestResult(message, IngestOutcome.CREATED, tags)

    except IntegrityError:
        # A concurrent redelivery stored the same provider id first
        existing = _already_stored(db, request.provider_message_id)
        if existing is None:
            raise
        logger.info(f"Lost idempotency race for {request.provider_message_id}; returning message {existing.id}")
        return IngestResult(existing, IngestOutcome.DUPLICATE, list(existing.tags))
