"""Feedback ingestion: turn liked assistant answers into training examples.

For each recently liked assistant message the nearest preceding user turn
in the same conversation becomes the example input and the liked answer
its output.  Examples are keyed by message, so re-running collection
updates rather than duplicates, and unchanged rows are left alone.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.config import Settings, get_settings
from staytune.models.conversation import Message, MessageRole
from staytune.models.feedback import FeedbackReaction, MessageFeedback
from staytune.models.training import ExampleSource, TrainingExample, VectorStatus
from staytune.providers.openai_client import ProviderClientFactory
from staytune.training.schemas import CollectResult, ExampleMetadata
from staytune.training.vector_store import detach_examples

log = structlog.get_logger(__name__)

# Re-liking a message whose example is already in the knowledge store does
# not queue it for upload again.  Flip to True to revectorize on content change.
REVECTORIZE_UPLOADED_ON_CHANGE = False


def next_vector_status(current: str, *, content_changed: bool) -> str:
    """Vector status an existing example takes after re-collection."""
    if current == VectorStatus.UPLOADED.value:
        if REVECTORIZE_UPLOADED_ON_CHANGE and content_changed:
            return VectorStatus.PENDING.value
        return VectorStatus.UPLOADED.value
    if current == VectorStatus.UPLOADING.value:
        # A sync run owns this row right now
        return current
    return VectorStatus.PENDING.value


def reaction_score(reaction: str | None) -> float | None:
    if reaction == FeedbackReaction.LIKE:
        return 1.0
    if reaction == FeedbackReaction.DISLIKE:
        return -1.0
    return None


@dataclass(frozen=True)
class _LikedMessage:
    message: Message
    liked_at: datetime | None


class FeedbackIngestionService:
    """Collects training examples from end-user feedback."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None) -> None:
        self.db = db
        self._settings = settings or get_settings()

    async def _liked_assistant_messages(
        self, tenant_id: uuid.UUID, limit: int
    ) -> list[_LikedMessage]:
        latest_like = (
            select(
                MessageFeedback.message_id.label("message_id"),
                func.max(MessageFeedback.created_at).label("liked_at"),
            )
            .where(MessageFeedback.reaction == FeedbackReaction.LIKE.value)
            .group_by(MessageFeedback.message_id)
            .subquery()
        )
        stmt = (
            select(Message, latest_like.c.liked_at)
            .join(latest_like, latest_like.c.message_id == Message.id)
            .where(
                Message.tenant_id == tenant_id,
                Message.role == MessageRole.ASSISTANT.value,
            )
            .order_by(Message.created_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [_LikedMessage(message=row[0], liked_at=row[1]) for row in result.all()]

    async def _preceding_user_message(self, message: Message) -> Message | None:
        result = await self.db.execute(
            select(Message)
            .where(
                Message.conversation_id == message.conversation_id,
                Message.tenant_id == message.tenant_id,
                Message.role == MessageRole.USER.value,
                Message.sequence_number < message.sequence_number,
            )
            .order_by(Message.sequence_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _existing_example(self, message_id: uuid.UUID) -> TrainingExample | None:
        result = await self.db.execute(
            select(TrainingExample).where(TrainingExample.message_id == message_id)
        )
        return result.scalar_one_or_none()

    async def collect_examples(
        self,
        tenant_id: uuid.UUID,
        limit: int | None = None,
    ) -> CollectResult:
        """Upsert examples for the ``limit`` most recently created liked answers.

        Per-message failures are logged and skipped; this never raises for
        a single bad message.
        """
        scan_limit = self._settings.training_collect_limit if limit is None else limit
        liked = await self._liked_assistant_messages(tenant_id, scan_limit)

        created = 0
        updated = 0
        skipped = 0

        for item in liked:
            message = item.message
            try:
                prompt = await self._preceding_user_message(message)
                if prompt is None:
                    skipped += 1
                    continue

                score = (
                    message.quality_score
                    if message.quality_score is not None
                    else reaction_score(FeedbackReaction.LIKE.value)
                )

                metadata = ExampleMetadata(
                    conversation_id=str(message.conversation_id),
                    message_id=str(message.id),
                    reaction=FeedbackReaction.LIKE.value,
                ).to_stored()

                example = await self._existing_example(message.id)
                if example is None:
                    self.db.add(
                        TrainingExample(
                            tenant_id=tenant_id,
                            source=ExampleSource.CONVERSATION.value,
                            message_id=message.id,
                            input_text=prompt.content,
                            output_text=message.content,
                            score=score,
                            metadata_=metadata,
                            vector_status=VectorStatus.PENDING.value,
                        )
                    )
                    created += 1
                else:
                    content_changed = (
                        example.input_text != prompt.content
                        or example.output_text != message.content
                    )
                    if content_changed or example.score != score or example.metadata_ != metadata:
                        example.input_text = prompt.content
                        example.output_text = message.content
                        example.score = score
                        example.metadata_ = metadata
                        example.vector_status = next_vector_status(
                            example.vector_status, content_changed=content_changed
                        )
                        updated += 1

                message.quality_score = score
                message.feedback_at = item.liked_at or message.created_at
                message.included_in_training = True
            except Exception as exc:
                log.warning(
                    "training.examples.message_failed",
                    tenant_id=str(tenant_id),
                    message_id=str(message.id),
                    error=str(exc),
                )

        await self.db.flush()

        log.info(
            "training.examples.collected",
            tenant_id=str(tenant_id),
            scanned=len(liked),
            created=created,
            updated=updated,
            skipped=skipped,
        )
        return CollectResult(created=created, updated=updated)

    async def discard_message_example(
        self,
        tenant_id: uuid.UUID,
        message_id: uuid.UUID,
        client_factory: ProviderClientFactory | None = None,
    ) -> bool:
        """Remove the example derived from a message whose like was cleared.

        The remote attachment is detached best-effort when a client factory
        is given.  Returns True if an example was deleted.
        """
        result = await self.db.execute(
            select(TrainingExample).where(
                TrainingExample.tenant_id == tenant_id,
                TrainingExample.message_id == message_id,
            )
        )
        example = result.scalar_one_or_none()

        message = await self.db.get(Message, message_id)
        if message is not None and message.tenant_id == tenant_id:
            message.included_in_training = False

        if example is None:
            await self.db.flush()
            return False

        if client_factory is not None:
            await detach_examples(self.db, tenant_id, [example], client_factory)

        await self.db.delete(example)
        await self.db.flush()

        log.info(
            "training.examples.discarded",
            tenant_id=str(tenant_id),
            message_id=str(message_id),
            example_id=str(example.id),
        )
        return True
