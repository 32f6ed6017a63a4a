from datetime import date, datetime, timedelta, timezone
from typing import Optional
from configuration.config import logger, PROFILE_HISTORY_LIMIT, TREND_RETENTION_DAYS
from models.models import Emotion, EmotionSample, HistoryEntry, RoomEmotionTrend, UserEmotionProfile, utcnow

# Samples at or below this confidence are ignored by the profile.
PROFILE_MIN_CONFIDENCE = 0.3
# Dominant emotion and average sentiment only move above this confidence.
PROFILE_DOMINANT_CONFIDENCE = 0.7


def bucket_day(moment: datetime) -> date:
    """Trend buckets are keyed by UTC calendar day; naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(timezone.utc).date()


def blend(old: float, new: float) -> float:
    return (old + new) / 2


def update_profile(profile: Optional[UserEmotionProfile], user_id: str, sample: EmotionSample) -> Optional[UserEmotionProfile]:
    """
    Returns the profile after applying one sample, or None when the sample is too
    uncertain to count. The input profile is not modified.
    """
    if sample.confidence <= PROFILE_MIN_CONFIDENCE:
        return None

    profile = profile.model_copy(deep=True) if profile else UserEmotionProfile(user_id=user_id)
    profile.recent_history.append(
        HistoryEntry(emotion=sample.emotion, confidence=sample.confidence, timestamp=sample.created_at)
    )
    if len(profile.recent_history) > PROFILE_HISTORY_LIMIT:
        profile.recent_history = profile.recent_history[-PROFILE_HISTORY_LIMIT:]

    if sample.confidence > PROFILE_DOMINANT_CONFIDENCE:
        profile.dominant_emotion = sample.emotion
        profile.average_sentiment = blend(profile.average_sentiment, sample.sentiment_score)
    profile.updated_at = utcnow()
    return profile


def update_room_trend(trend: Optional[RoomEmotionTrend], room_id: str, sample: EmotionSample) -> RoomEmotionTrend:
    """Returns the day bucket after counting one sample. A new bucket starts from zero sentiment."""
    day = bucket_day(sample.created_at)
    if trend is None or trend.day != day:
        trend = RoomEmotionTrend(room_id=room_id, day=day)
    else:
        trend = trend.model_copy(deep=True)
    for emotion in Emotion:
        trend.counts.setdefault(emotion, 0)
    trend.counts[sample.emotion] += 1
    trend.average_sentiment = blend(trend.average_sentiment, sample.sentiment_score)
    return trend


class TrendAggregator:
    """
    Read-modify-write aggregation of samples into user profiles and daily room
    buckets. Updates are best effort; a replayed sample is counted twice.
    """

    def __init__(self, repository, retention_days: int = TREND_RETENTION_DAYS):
        self.repository = repository
        self.retention_days = retention_days

    async def apply_to_profile(self, user_id: str, sample: EmotionSample) -> Optional[UserEmotionProfile]:
        current = await self.repository.get_profile(user_id)
        updated = update_profile(current, user_id, sample)
        if updated is None:
            logger.info(f"Skipping profile update for user {user_id}: confidence {sample.confidence} too low.")
            return current
        await self.repository.save_profile(updated)
        return updated

    async def apply_to_room(self, room_id: str, sample: EmotionSample) -> RoomEmotionTrend:
        day = bucket_day(sample.created_at)
        current = await self.repository.get_room_trend(room_id, day)
        updated = update_room_trend(current, room_id, sample)
        await self.repository.save_room_trend(updated)

        cutoff = day - timedelta(days=self.retention_days)
        pruned = await self.repository.delete_room_trends_before(room_id, cutoff)
        if pruned:
            logger.info(f"Pruned {pruned} emotion trend buckets older than {cutoff} for room {room_id}")
        return updated
