from datetime import timedelta
from errors.errors import InvalidInput
from security.security import get_identity
from clients.classifier import emotion_statistics
from configuration.config import logger, SUPPORT_SENTIMENT_THRESHOLD
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from processing.pipeline import PipelineOutcome, PipelineStage
from processing.aggregator import PROFILE_DOMINANT_CONFIDENCE, PROFILE_MIN_CONFIDENCE
from api.api import current_user, get_pipeline, get_repository, load_message_for, load_room_for
from models.models import AnalyzePayload, BatchAnalyzePayload, Identity, UserEmotionProfile, utcnow

router = APIRouter(tags=["Emotions"])


def analysis_body(outcome: PipelineOutcome) -> dict:
    sample = outcome.sample
    return {
        "emotion": sample.emotion.value,
        "confidence": sample.confidence,
        "sentiment": {"score": sample.sentiment_score, "magnitude": sample.magnitude},
        "classifierSource": sample.classifier_source.value,
    }


async def run_analysis(request: Request, identity: Identity, payload: AnalyzePayload, notify_support: bool) -> PipelineOutcome:
    repository = get_repository(request)
    pipeline = get_pipeline(request)
    await current_user(identity, repository)
    message = None
    if payload.message_id:
        message = await load_message_for(repository, payload.message_id, identity.user_id, sent_by_caller=True)
    try:
        return await pipeline.analyze(identity.user_id, payload.text, message=message, notify_support=notify_support)
    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/v1/emotions/analyze")
async def analyze_text(payload: AnalyzePayload, request: Request, identity: Identity = Depends(get_identity)):
    """
    Classifies a text. When `messageId` names one of the caller's messages, the
    result is recorded for that message and rolled into the profile and room trends.
    """
    outcome = await run_analysis(request, identity, payload, notify_support=False)
    return {
        "analysis": analysis_body(outcome),
        "messageId": outcome.message_id,
        "stored": outcome.stored,
    }


@router.post("/v1/emotions/analyze/batch")
async def analyze_batch(payload: BatchAnalyzePayload, request: Request, identity: Identity = Depends(get_identity)):
    pipeline = get_pipeline(request)
    try:
        results = await pipeline.classifier.classify_many(payload.texts)
    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.info(f"Batch of {len(results)} texts analyzed for user {identity.user_id}")
    return {
        "items": [result.model_dump(by_alias=True, mode="json") for result in results],
        "statistics": emotion_statistics(results).model_dump(by_alias=True, mode="json"),
    }


@router.post("/v1/emotions/analyze-with-support")
async def analyze_with_support(payload: AnalyzePayload, request: Request, identity: Identity = Depends(get_identity)):
    """
    Classifies and records a text, then sends the caller a support alert when the
    sentiment is at or below the threshold, subject to the usual preferences,
    device tokens, cooldown and one-alert-per-sample guards.
    """
    outcome = await run_analysis(request, identity, payload, notify_support=True)
    sample = outcome.sample
    aggregated = PipelineStage.AGGREGATED in outcome.stages
    return {
        "emotionId": sample.id if outcome.stored else None,
        "analysis": analysis_body(outcome),
        "supportNotification": {
            "triggered": bool(outcome.decision and outcome.decision.trigger),
            "sent": outcome.support_dispatched,
            "threshold": SUPPORT_SENTIMENT_THRESHOLD,
        },
        "profileUpdated": aggregated and sample.confidence > PROFILE_MIN_CONFIDENCE,
        "dominantEmotionUpdated": aggregated and sample.confidence > PROFILE_DOMINANT_CONFIDENCE,
    }


@router.get("/v1/emotions/profile")
async def get_emotion_profile(request: Request, identity: Identity = Depends(get_identity)):
    profile = await get_repository(request).get_profile(identity.user_id)
    if profile is None:
        profile = UserEmotionProfile(user_id=identity.user_id)
    return profile.model_dump(by_alias=True, mode="json")


@router.get("/v1/emotions/message/{message_id}")
async def get_message_emotion(message_id: str, request: Request, identity: Identity = Depends(get_identity)):
    repository = get_repository(request)
    message = await load_message_for(repository, message_id, identity.user_id)
    sample = await repository.get_emotion_sample_for_message(message.id)
    return {
        "messageId": message.id,
        "roomId": message.room_id,
        "senderId": message.sender_id,
        "content": message.content,
        "timestamp": message.created_at.isoformat(),
        "emotion": message.emotion.value if message.emotion else None,
        "sentimentScore": message.sentiment_score,
        "analytics": sample.model_dump(by_alias=True, mode="json", exclude={"text"}) if sample else None,
    }


@router.get("/v1/emotions/history")
async def get_emotion_history(
    request: Request,
    identity: Identity = Depends(get_identity),
    days: int = Query(7, ge=1, le=365, description="Number of days to look back"),
    limit: int = Query(50, ge=1, le=100, description="Number of most recent samples")
):
    since = utcnow() - timedelta(days=days)
    samples = await get_repository(request).list_emotion_samples(identity.user_id, limit, since=since)
    statistics = emotion_statistics(samples).model_dump(by_alias=True, mode="json")
    statistics["negativeEmotionsCount"] = sum(1 for sample in samples if sample.sentiment_score <= SUPPORT_SENTIMENT_THRESHOLD)
    statistics["supportNotificationsTriggered"] = sum(1 for sample in samples if sample.support_triggered)
    return {
        "period": f"{days} days",
        "items": [
            sample.model_dump(by_alias=True, mode="json", exclude={"text"})
            for sample in samples
        ],
        "statistics": statistics,
    }


@router.get("/v1/rooms/{room_id}/emotion-trends")
async def get_room_emotion_trends(
    room_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    days: int = Query(7, ge=1, le=30, description="Number of days to include")
):
    repository = get_repository(request)
    room = await load_room_for(repository, room_id, identity.user_id)
    since = utcnow().date() - timedelta(days=days - 1)
    trends = await repository.list_room_trends(room.id, since)
    return {
        "roomId": room.id,
        "analysisEnabled": room.settings.allow_emotion_analysis,
        "items": [trend.model_dump(by_alias=True, mode="json") for trend in trends],
    }
