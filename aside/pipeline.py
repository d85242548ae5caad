"""
Ingestion pipeline: one webhook delivery from raw payload to stored,
routed and announced message.

    normalize -> find/create user -> resolve tags + dedup/merge -> store
              -> route boards -> fan out NEW_MESSAGE -> advance onboarding

Untagged messages carrying a link get a delayed second look at the sender's
recent tags (PostProcessor), since a split caption can arrive after its link.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from aside import boards, normalizer, storage
from aside.config import Settings, settings as default_settings
from aside.dedup import IngestOutcome, ingest
from aside.errors import MalformedPayload, PersistenceFailure
from aside.metrics import record_post_process
from aside.notifications import ConnectionRegistry
from aside.onboarding import OnboardingService
from aside.schemas import NormalizedInvalid, NormalizedSkip
from aside.tags import find_inherited_tags, has_url, is_untagged
from aside.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    status: str
    message_id: Optional[int] = None
    provider: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.status == IngestOutcome.DUPLICATE.value


class PostProcessor:
    """
    Fire-and-forget re-check of untagged link messages.

    Each run has its own session and its own error boundary: a failure is
    logged and counted, never raised into the request that scheduled it.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        session_factory: Callable[[], Session] = storage.SessionLocal,
        settings: Settings = default_settings,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.settings = settings
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, message_id: int, user_id: int, sender_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(message_id, user_id, sender_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Scheduled post-processing for untagged link message {message_id}")
        return task

    def correct(self, db: Session, message_id: int, user_id: int, sender_id: str) -> Optional[list[str]]:
        """
        Give a still-untagged message the sender's recent tags, if any.

        Returns:
            The tags applied, or None if the message was left alone
        """
        message = storage.find_message_by_id(db, message_id)
        if message is None or not is_untagged(message.tags or []):
            return None

        since = utcnow() - timedelta(seconds=self.settings.INHERIT_WINDOW_SECONDS)
        inherited = find_inherited_tags(db, user_id, sender_id, since, exclude_message_id=message_id)
        if not inherited:
            return None

        storage.update_message_tags(db, message_id, inherited)
        logger.info(f"Post-processing tagged message {message_id} with inherited tags {inherited}")
        return inherited

    async def _run(self, message_id: int, user_id: int, sender_id: str) -> None:
        await asyncio.sleep(self.settings.POST_PROCESS_DELAY_SECONDS)
        try:
            with self.session_factory() as db:
                applied = self.correct(db, message_id, user_id, sender_id)
                if applied is None:
                    record_post_process("unchanged")
                    return
                recipients = boards.notification_set(db, user_id, applied)
            await self.registry.broadcast_to(recipients)
            record_post_process("corrected")
        except Exception as e:
            logger.error(f"Post-processing failed for message {message_id}: {e}")
            record_post_process("failed")

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def pending(self) -> int:
        return len(self._tasks)


class IngestionPipeline:
    def __init__(
        self,
        registry: ConnectionRegistry,
        onboarding: OnboardingService,
        post_processor: PostProcessor,
        settings: Settings = default_settings,
    ):
        self.registry = registry
        self.onboarding = onboarding
        self.post_processor = post_processor
        self.settings = settings

    def _get_or_create_user(self, db: Session, phone_number: str):
        """
        Find the sender's user, or flush a new one.

        A new user is not committed here; it lands together with its first
        message, so a failed first delivery leaves no user behind and its
        retry is still treated as the user's first contact.
        """
        user = storage.find_user_by_phone(db, phone_number)
        if user is not None:
            return user, False
        try:
            return storage.create_user(db, phone_number, commit=False), True
        except IntegrityError:
            # Another delivery from the same new number created the account first
            db.rollback()
            return storage.find_user_by_phone(db, phone_number), False

    async def _advance_onboarding(self, db: Session, user, is_new_user: bool, content: str, tags: list[str]) -> None:
        try:
            if is_new_user:
                await self.onboarding.start(user)
            else:
                await self.onboarding.observe(db, user, content, tags)
        except Exception as e:
            logger.error(f"Onboarding step failed for user {user.id}: {e}")

    async def handle(self, db: Session, payload: dict[str, Any]) -> PipelineResult:
        """
        Process one decoded webhook payload.

        Raises:
            UntrustedSender: provider identity check failed
            MalformedPayload: payload matches no known shape
            PersistenceFailure: the store failed; the caller should answer retryably
        """
        result = normalizer.parse(payload, self.settings)
        if isinstance(result, NormalizedInvalid):
            raise MalformedPayload(result.reason)
        if isinstance(result, NormalizedSkip):
            return PipelineResult("skipped", provider=result.provider)

        request = result.request
        try:
            user, is_new_user = self._get_or_create_user(db, request.sender_identity)
            outcome = ingest(db, request, user)
            message = outcome.message
            if not outcome.is_new_delivery:
                return PipelineResult(outcome.outcome.value, message.id, request.provider)
            recipients = boards.notification_set_for(db, message)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Store failure while ingesting from {request.sender_identity}: {e}")
            raise PersistenceFailure(str(e)) from e

        await self.registry.broadcast_to(recipients)
        await self._advance_onboarding(db, user, is_new_user, request.content, outcome.tags)

        if is_untagged(outcome.tags) and has_url(message.content):
            self.post_processor.schedule(message.id, user.id, request.sender_identity)

        return PipelineResult(outcome.outcome.value, message.id, request.provider)
