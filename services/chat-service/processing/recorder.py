import uuid

from typing import Optional
from errors.errors import StorageWriteFailed
from configuration.config import logger
from models.models import ClassificationResult, EmotionSample, utcnow


def build_sample(author_id: str, room_id: Optional[str], text: str, result: ClassificationResult, message_id=None) -> EmotionSample:
    """Creates an unsaved sample from a classification result. The id is assigned up front."""
    return EmotionSample(
        id=str(uuid.uuid4()),
        author_id=author_id,
        room_id=room_id,
        message_id=message_id,
        text=text,
        emotion=result.emotion,
        sentiment_score=result.sentiment_score,
        magnitude=result.magnitude,
        confidence=result.confidence,
        classifier_source=result.source,
        created_at=utcnow(),
    )


class EmotionRecorder:
    """
    Append-only store of emotion samples.

    Samples are never deleted and never rewritten: linking a message and flagging
    a support alert are single guarded transitions.
    """

    def __init__(self, repository):
        self.repository = repository

    async def record(self, sample: EmotionSample) -> EmotionSample:
        stored = sample if sample.id else sample.model_copy(update={"id": str(uuid.uuid4())})
        try:
            await self.repository.insert_emotion_sample(stored)
        except Exception as e:
            raise StorageWriteFailed(f"Could not record emotion sample for user {sample.author_id}: {e}") from e
        logger.info(f"Emotion sample {stored.id} recorded for user {stored.author_id}: {stored.emotion.value} ({stored.sentiment_score})")
        return stored

    async def link(self, sample_id: str, message_id: str) -> bool:
        try:
            linked = await self.repository.link_emotion_sample(sample_id, message_id)
        except Exception as e:
            raise StorageWriteFailed(f"Could not link sample {sample_id} to message {message_id}: {e}") from e
        if not linked:
            logger.warning(f"Emotion sample {sample_id} was already linked. Keeping the existing message id.")
        return linked

    async def mark_support_triggered(self, sample_id: str) -> bool:
        try:
            flagged = await self.repository.mark_sample_support_triggered(sample_id)
        except Exception as e:
            raise StorageWriteFailed(f"Could not flag sample {sample_id} as support-triggered: {e}") from e
        if not flagged:
            logger.info(f"Emotion sample {sample_id} was already flagged as support-triggered.")
        return flagged

    async def find_for_message(self, message_id: str) -> Optional[EmotionSample]:
        """Returns the sample already linked to a message, if it was analyzed before."""
        return await self.repository.get_emotion_sample_for_message(message_id)
