import asyncio

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field
from cache.cache import SupportAlertGuard
from configuration.config import logger
from processing.trigger import TriggerPolicy
from errors.errors import InvalidInput, StorageWriteFailed
from notifications.payloads import new_message_payload
from notifications.registry import DeviceRegistry
from notifications.dispatcher import NotificationDispatcher
from processing.aggregator import TrendAggregator
from processing.recorder import EmotionRecorder, build_sample
from models.models import (
    ChatMessage,
    ChatRoom,
    DispatchResult,
    EmotionSample,
    MessageType,
    NotificationEvent,
    NotificationKind,
    PipelineJob,
    SupportDecision,
    UserRecord,
    default_display_name,
)

ANALYZED_MESSAGE_TYPES = {MessageType.TEXT, MessageType.EMOJI}

EMOTION_RECEIVED_EVENT = "emotion-received"


class PipelineStage(str, Enum):
    RECEIVED = "received"
    CLASSIFIED = "classified"
    STORED = "stored"
    LINKED = "linked"
    AGGREGATED = "aggregated"
    DECIDED = "decided"
    DISPATCHED = "dispatched"
    DONE = "done"


class PipelineOutcome(BaseModel):
    """What happened to one message on its way through the pipeline."""
    message_id: Optional[str] = None
    stages: List[PipelineStage] = Field(default_factory=lambda: [PipelineStage.RECEIVED])
    sample: Optional[EmotionSample] = None
    stored: bool = False
    reused: bool = False
    decision: Optional[SupportDecision] = None
    support_dispatched: bool = False
    support_result: Optional[DispatchResult] = None
    new_message_result: Optional[DispatchResult] = None
    errors: List[str] = Field(default_factory=list)

    @property
    def stage(self) -> PipelineStage:
        return self.stages[-1]

    def reached(self, stage: PipelineStage):
        self.stages.append(stage)

    def failed(self, message: str):
        logger.error(message)
        self.errors.append(message)


class MessagePipeline:
    """
    Runs the emotion side effects of one stored chat message:
    classify, record, link, aggregate, decide, and dispatch.

    Every stage is isolated. A failing stage is logged on the outcome and only the
    stages that depend on its result are skipped. The support alert and the
    new-message fanout run concurrently.

    A message is analyzed once: a redelivered job finds the sample already linked to
    its message and reuses it instead of classifying again.
    """

    def __init__(self, repository, classifier, recorder, aggregator, policy, registry, dispatcher, guard, broadcaster=None):
        self.repository = repository
        self.classifier = classifier
        self.recorder = recorder
        self.aggregator = aggregator
        self.policy = policy
        self.registry = registry
        self.dispatcher = dispatcher
        self.guard = guard
        self.broadcaster = broadcaster

    async def run(self, job: PipelineJob) -> PipelineOutcome:
        outcome = PipelineOutcome(message_id=job.message_id)
        logger.info(f"Pipeline started for message {job.message_id} in room {job.room_id}, traceId: {job.trace_id}")

        room = await self._load_room(job.room_id, outcome)
        author = await self._load_author(job.author_id, outcome)
        author_name = author.display_name if author else default_display_name(job.author_id)

        sample = None
        if job.message_type in ANALYZED_MESSAGE_TYPES:
            sample = await self._reuse_existing(job.message_id, outcome)
            if sample is None:
                sample = await self._classify(job, outcome)
                if sample is not None:
                    sample = await self._store_and_link(job.message_id, sample, outcome)
        else:
            logger.info(f"Message {job.message_id} is of type '{job.message_type.value}'. Skipping emotion analysis.")

        if sample is not None:
            if not outcome.reused:
                await self._share_emotion(room, sample)
                if outcome.stored:
                    await self._aggregate(room, sample, outcome)
            outcome.decision = self.policy.evaluate(sample, author_name)
            outcome.reached(PipelineStage.DECIDED)

        support_result, new_message_result = await asyncio.gather(
            self._dispatch_support(outcome.decision, sample, author, outcome),
            self._dispatch_new_message(job, room, author_name, sample, outcome),
            return_exceptions=True,
        )
        for label, result in (("support", support_result), ("new-message", new_message_result)):
            if isinstance(result, BaseException):
                outcome.failed(f"{label} dispatch for message {job.message_id} failed: {result!r}")
        if not isinstance(support_result, BaseException):
            outcome.support_result = support_result
        if not isinstance(new_message_result, BaseException):
            outcome.new_message_result = new_message_result
        outcome.reached(PipelineStage.DISPATCHED)

        outcome.reached(PipelineStage.DONE)
        logger.info(
            f"Pipeline finished for message {job.message_id}: stages={[stage.value for stage in outcome.stages]}, "
            f"reused={outcome.reused}, supportDispatched={outcome.support_dispatched}, errors={len(outcome.errors)}"
        )
        return outcome

    async def analyze(self, author_id: str, text: str, message: Optional[ChatMessage] = None, notify_support: bool = False) -> PipelineOutcome:
        """
        On-demand analysis of a text for its author.

        With a message, the sample is recorded, linked and aggregated like a chat
        message would be; a message that was already analyzed keeps its sample.
        With `notify_support`, the sample is always recorded and the support alert
        runs through the same guards as the pipeline. Otherwise the text is only
        classified. Raises InvalidInput for empty text.
        """
        outcome = PipelineOutcome(message_id=message.id if message else None)
        author = await self._load_author(author_id, outcome)
        author_name = author.display_name if author else default_display_name(author_id)
        room = await self._load_room(message.room_id, outcome) if message else None

        sample = await self._reuse_existing(message.id, outcome) if message else None
        if sample is None:
            result = await self.classifier.classify(text)
            outcome.reached(PipelineStage.CLASSIFIED)
            sample = build_sample(author_id, message.room_id if message else None, text, result)
            outcome.sample = sample
            if message is not None or notify_support:
                sample = await self._store_and_link(message.id if message else None, sample, outcome)
                if outcome.stored and not outcome.reused:
                    await self._aggregate(room, sample, outcome)

        if notify_support:
            outcome.decision = self.policy.evaluate(sample, author_name)
            outcome.reached(PipelineStage.DECIDED)
            try:
                outcome.support_result = await self._dispatch_support(outcome.decision, sample, author, outcome)
            except Exception as e:
                outcome.failed(f"support dispatch for user {author_id} failed: {e!r}")
            outcome.reached(PipelineStage.DISPATCHED)

        outcome.reached(PipelineStage.DONE)
        return outcome

    async def _load_room(self, room_id: str, outcome: PipelineOutcome) -> Optional[ChatRoom]:
        try:
            room = await self.repository.get_room(room_id)
        except Exception as e:
            outcome.failed(f"Could not load room {room_id}: {e}")
            return None
        if room is None:
            logger.warning(f"Room {room_id} not found. Room-level stages will be skipped.")
        return room

    async def _load_author(self, user_id: str, outcome: PipelineOutcome) -> Optional[UserRecord]:
        try:
            return await self.repository.get_user(user_id)
        except Exception as e:
            outcome.failed(f"Could not load user {user_id}: {e}")
            return None

    async def _find_sample(self, message_id: str, outcome: PipelineOutcome) -> Optional[EmotionSample]:
        try:
            return await self.recorder.find_for_message(message_id)
        except Exception as e:
            outcome.failed(f"Could not look up the emotion sample of message {message_id}: {e}")
            return None

    async def _reuse_existing(self, message_id: str, outcome: PipelineOutcome) -> Optional[EmotionSample]:
        sample = await self._find_sample(message_id, outcome)
        if sample is None:
            return None
        logger.info(f"Message {message_id} already has emotion sample {sample.id}. Reusing it.")
        outcome.sample = sample
        outcome.stored = True
        outcome.reused = True
        outcome.reached(PipelineStage.STORED)
        outcome.reached(PipelineStage.LINKED)
        await self._attach_to_message(message_id, sample, outcome)
        return sample

    async def _classify(self, job: PipelineJob, outcome: PipelineOutcome) -> Optional[EmotionSample]:
        try:
            result = await self.classifier.classify(job.text)
        except InvalidInput as e:
            logger.warning(f"Message {job.message_id} was not classified: {e}")
            return None
        except Exception as e:
            outcome.failed(f"Unexpected classifier error for message {job.message_id}: {e!r}")
            return None
        outcome.reached(PipelineStage.CLASSIFIED)
        sample = build_sample(job.author_id, job.room_id, job.text, result)
        outcome.sample = sample
        return sample

    async def _store_and_link(self, message_id: Optional[str], sample: EmotionSample, outcome: PipelineOutcome) -> EmotionSample:
        try:
            sample = await self.recorder.record(sample)
            outcome.stored = True
            outcome.reached(PipelineStage.STORED)
        except StorageWriteFailed as e:
            outcome.failed(f"{e}. Continuing without analytics for message {message_id}.")

        if outcome.stored and message_id is not None:
            linked = False
            try:
                linked = await self.recorder.link(sample.id, message_id)
            except StorageWriteFailed as e:
                outcome.failed(str(e))
            if linked:
                outcome.reached(PipelineStage.LINKED)
                await self._attach_to_message(message_id, sample, outcome)
            else:
                # Another delivery of the same message linked its sample first.
                existing = await self._find_sample(message_id, outcome)
                if existing is not None and existing.id != sample.id:
                    logger.warning(f"Message {message_id} was analyzed concurrently. Keeping sample {existing.id}.")
                    outcome.sample = existing
                    outcome.reused = True
                    outcome.reached(PipelineStage.LINKED)
                    return existing

        if message_id is not None:
            sample = sample.model_copy(update={"message_id": message_id})
        outcome.sample = sample
        return sample

    async def _attach_to_message(self, message_id: str, sample: EmotionSample, outcome: PipelineOutcome):
        try:
            await self.repository.set_message_emotion(message_id, sample.id, sample.emotion.value, sample.sentiment_score)
        except Exception as e:
            outcome.failed(f"Could not attach emotion to message {message_id}: {e}")

    async def _share_emotion(self, room: Optional[ChatRoom], sample: EmotionSample):
        if self.broadcaster is None or room is None or not room.settings.emotion_sharing:
            return
        await self.broadcaster.publish(room.id, EMOTION_RECEIVED_EVENT, {
            "messageId": sample.message_id,
            "userId": sample.author_id,
            "emotion": sample.emotion.value,
            "confidence": sample.confidence,
            "sentimentScore": sample.sentiment_score,
            "timestamp": sample.created_at.isoformat(),
        })

    async def _aggregate(self, room: Optional[ChatRoom], sample: EmotionSample, outcome: PipelineOutcome):
        try:
            await self.aggregator.apply_to_profile(sample.author_id, sample)
        except Exception as e:
            outcome.failed(f"Profile aggregation failed for user {sample.author_id}: {e}")
        if room is not None and room.settings.allow_emotion_analysis:
            try:
                await self.aggregator.apply_to_room(room.id, sample)
            except Exception as e:
                outcome.failed(f"Room trend aggregation failed for room {room.id}: {e}")
        outcome.reached(PipelineStage.AGGREGATED)

    async def _dispatch_support(self, decision: Optional[SupportDecision], sample: Optional[EmotionSample], author: Optional[UserRecord], outcome: PipelineOutcome) -> Optional[DispatchResult]:
        if decision is None or not decision.trigger or sample is None:
            return None
        event = decision.notification
        if sample.support_triggered:
            logger.info(f"Support alert already sent for sample {sample.id}. Skipping.")
            return None
        if author is not None and not (author.push_enabled and author.emotion_alerts):
            logger.info(f"User {sample.author_id} has disabled emotion alerts. Skipping support notification.")
            return None

        tokens = await self.registry.active_tokens(sample.author_id)
        if not tokens:
            logger.info(f"Support alert for user {sample.author_id} not sent: no active device tokens.")
            return None
        if not await self.guard.claim(sample.author_id, event.idempotency_key):
            return None

        # The stored flag is the claim that survives a redis outage: only one delivery flips it.
        flagged = False
        if outcome.stored:
            try:
                flagged = await self.recorder.mark_support_triggered(sample.id)
            except StorageWriteFailed as e:
                outcome.failed(f"{e}. Sending the support alert without a stored flag.")
            else:
                if not flagged:
                    logger.info(f"Support alert for sample {sample.id} was already claimed by another delivery. Skipping.")
                    return None

        result = await self.dispatcher.send(tokens, event.title, event.body, event.data)
        outcome.support_dispatched = True
        logger.info(f"Support notification attempted for user {sample.author_id} (sentiment {sample.sentiment_score}).")
        if flagged:
            outcome.sample = outcome.sample.model_copy(update={"support_triggered": True})
        await self.dispatcher.apply_feedback(result)
        return result

    async def _dispatch_new_message(self, job: PipelineJob, room: Optional[ChatRoom], sender_name: str, sample: Optional[EmotionSample], outcome: PipelineOutcome) -> Optional[DispatchResult]:
        if room is None or not room.settings.notifications:
            return None
        recipients = [user_id for user_id in room.participant_ids if user_id != job.author_id]
        if not recipients:
            return None

        users = {user.id: user for user in await self.repository.get_users(recipients)}
        eligible = [user_id for user_id in recipients if user_id not in users or users[user_id].push_enabled]
        if not eligible:
            logger.info(f"No participants of room {room.id} accept push notifications.")
            return None

        payload = new_message_payload(room, sender_name, job.message_id, job.author_id, job.text, job.message_type, sample)
        event = NotificationEvent(
            kind=NotificationKind.NEW_MESSAGE,
            recipient_ids=eligible,
            title=payload["title"],
            body=payload["body"],
            data=payload["data"],
            idempotency_key=f"new_message:{job.message_id}",
        )
        return await self.dispatcher.fanout(event)


def build_pipeline(repository, classifier, push_client, redis_client, broadcaster=None) -> MessagePipeline:
    """Wires a pipeline from its storage, classifier, push, redis and broadcast collaborators."""
    registry = DeviceRegistry(repository)
    return MessagePipeline(
        repository=repository,
        classifier=classifier,
        recorder=EmotionRecorder(repository),
        aggregator=TrendAggregator(repository),
        policy=TriggerPolicy(),
        registry=registry,
        dispatcher=NotificationDispatcher(push_client, registry),
        guard=SupportAlertGuard(redis_client),
        broadcaster=broadcaster,
    )
