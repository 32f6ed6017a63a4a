import pytest

from datetime import date, datetime, timedelta, timezone
from models.models import ClassifierSource, Emotion, EmotionSample, RoomEmotionTrend, UserEmotionProfile
from processing.aggregator import TrendAggregator, bucket_day, update_profile, update_room_trend


def sample_at(score=-0.5, confidence=0.8, emotion=Emotion.SADNESS, created_at=None):
    return EmotionSample(
        id="s",
        author_id="alice",
        room_id="room-1",
        text="t",
        emotion=emotion,
        sentiment_score=score,
        magnitude=0.9,
        confidence=confidence,
        classifier_source=ClassifierSource.PRIMARY,
        created_at=created_at or datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
    )


def test_low_confidence_samples_do_not_touch_the_profile():
    assert update_profile(None, "alice", sample_at(confidence=0.3)) is None


def test_medium_confidence_only_extends_history():
    profile = UserEmotionProfile(user_id="alice", dominant_emotion=Emotion.JOY, average_sentiment=0.4)

    updated = update_profile(profile, "alice", sample_at(confidence=0.5))

    assert len(updated.recent_history) == 1
    assert updated.dominant_emotion == Emotion.JOY
    assert updated.average_sentiment == 0.4
    assert profile.recent_history == []


def test_high_confidence_moves_dominant_emotion_and_blends_sentiment():
    profile = UserEmotionProfile(user_id="alice", dominant_emotion=Emotion.JOY, average_sentiment=0.4)

    updated = update_profile(profile, "alice", sample_at(score=-0.8, confidence=0.71))

    assert updated.dominant_emotion == Emotion.SADNESS
    assert updated.average_sentiment == pytest.approx(-0.2)


def test_history_is_capped_at_one_hundred_oldest_first_out():
    profile = None
    for i in range(105):
        moment = datetime(2024, 5, 1, tzinfo=timezone.utc) + timedelta(minutes=i)
        profile = update_profile(profile, "alice", sample_at(confidence=0.5, created_at=moment))

    assert len(profile.recent_history) == 100
    assert profile.recent_history[0].timestamp == datetime(2024, 5, 1, tzinfo=timezone.utc) + timedelta(minutes=5)


def test_first_sample_of_the_day_is_halved_then_blended():
    trend = update_room_trend(None, "room-1", sample_at(score=-0.8))
    assert trend.average_sentiment == pytest.approx(-0.4)
    assert trend.counts[Emotion.SADNESS] == 1
    assert sum(trend.counts.values()) == 1

    trend = update_room_trend(trend, "room-1", sample_at(score=0.4, emotion=Emotion.JOY))
    assert trend.average_sentiment == pytest.approx(0.0)
    assert trend.counts[Emotion.JOY] == 1


def test_bucket_day_uses_utc():
    late_evening_in_sao_paulo = datetime(2024, 5, 1, 22, 30, tzinfo=timezone(timedelta(hours=-3)))

    assert bucket_day(late_evening_in_sao_paulo) == date(2024, 5, 2)


def test_new_day_starts_a_new_bucket():
    yesterday = update_room_trend(None, "room-1", sample_at(created_at=datetime(2024, 5, 1, 23, 0, tzinfo=timezone.utc)))

    today = update_room_trend(yesterday, "room-1", sample_at(created_at=datetime(2024, 5, 2, 0, 5, tzinfo=timezone.utc)))

    assert today.day == date(2024, 5, 2)
    assert today.counts[Emotion.SADNESS] == 1


@pytest.mark.asyncio
async def test_room_aggregation_persists_and_prunes_old_buckets(repository):
    # AAA: Arrange
    aggregator = TrendAggregator(repository, retention_days=30)
    old = RoomEmotionTrend(room_id="room-1", day=date(2024, 3, 1))
    recent = RoomEmotionTrend(room_id="room-1", day=date(2024, 4, 20))
    other_room = RoomEmotionTrend(room_id="room-2", day=date(2024, 3, 1))
    for trend in (old, recent, other_room):
        await repository.save_room_trend(trend)

    # AAA: Act
    await aggregator.apply_to_room("room-1", sample_at())
    await aggregator.apply_to_room("room-1", sample_at(score=0.2, emotion=Emotion.NEUTRAL))

    # AAA: Assert
    stored = await repository.get_room_trend("room-1", date(2024, 5, 1))
    assert stored.counts[Emotion.SADNESS] == 1
    assert stored.counts[Emotion.NEUTRAL] == 1
    assert stored.average_sentiment == pytest.approx(-0.025)
    assert await repository.get_room_trend("room-1", date(2024, 3, 1)) is None
    assert await repository.get_room_trend("room-1", date(2024, 4, 20)) is not None
    assert await repository.get_room_trend("room-2", date(2024, 3, 1)) is not None


@pytest.mark.asyncio
async def test_profile_aggregation_round_trips_through_storage(repository):
    aggregator = TrendAggregator(repository)

    await aggregator.apply_to_profile("alice", sample_at(score=-0.9, confidence=0.9))
    await aggregator.apply_to_profile("alice", sample_at(score=-0.9, confidence=0.2))

    profile = await repository.get_profile("alice")
    assert profile.dominant_emotion == Emotion.SADNESS
    assert profile.average_sentiment == pytest.approx(-0.45)
    assert len(profile.recent_history) == 1
