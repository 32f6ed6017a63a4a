import pytest

from errors.errors import StorageWriteFailed
from cache.cache import SupportAlertGuard
from processing.recorder import EmotionRecorder, build_sample
from notifications.payloads import new_message_payload, truncate
from models.models import ClassificationResult, ClassifierSource, Emotion, MessageType, RoomType


def classified(score=-0.7):
    return ClassificationResult(
        emotion=Emotion.SADNESS, sentiment_score=score, magnitude=0.9,
        confidence=0.63, source=ClassifierSource.FALLBACK
    )


@pytest.mark.asyncio
async def test_record_assigns_an_id_and_starts_unlinked(repository):
    recorder = EmotionRecorder(repository)

    sample = await recorder.record(build_sample("alice", "room-1", "so sad", classified()))

    assert sample.id
    assert sample.message_id is None
    assert sample.support_triggered is False
    assert sample.classifier_source == ClassifierSource.FALLBACK
    assert repository.samples[sample.id] == sample


@pytest.mark.asyncio
async def test_link_is_set_once(repository):
    recorder = EmotionRecorder(repository)
    sample = await recorder.record(build_sample("alice", "room-1", "so sad", classified()))

    assert await recorder.link(sample.id, "message-1") is True
    assert await recorder.link(sample.id, "message-2") is False
    assert repository.samples[sample.id].message_id == "message-1"


@pytest.mark.asyncio
async def test_support_flag_only_moves_forward(repository):
    recorder = EmotionRecorder(repository)
    sample = await recorder.record(build_sample("alice", "room-1", "so sad", classified()))

    assert await recorder.mark_support_triggered(sample.id) is True
    assert await recorder.mark_support_triggered(sample.id) is False
    assert repository.samples[sample.id].support_triggered is True


@pytest.mark.asyncio
async def test_storage_errors_are_wrapped(repository):
    repository.fail_on.add("insert_emotion_sample")
    recorder = EmotionRecorder(repository)

    with pytest.raises(StorageWriteFailed):
        await recorder.record(build_sample("alice", "room-1", "so sad", classified()))


def test_samples_are_immutable():
    sample = build_sample("alice", "room-1", "so sad", classified())

    with pytest.raises(Exception):
        sample.sentiment_score = 0.5


@pytest.mark.asyncio
async def test_guard_claims_each_key_once_and_honours_cooldown(fake_redis):
    guard = SupportAlertGuard(fake_redis, cooldown_seconds=60)

    assert await guard.claim("alice", "support:alice:m1") is True
    assert await guard.claim("alice", "support:alice:m1") is False
    assert await guard.claim("alice", "support:alice:m2") is False
    assert await guard.claim("bob", "support:bob:m3") is True


@pytest.mark.asyncio
async def test_guard_without_cooldown(fake_redis):
    guard = SupportAlertGuard(fake_redis, cooldown_seconds=0)

    assert await guard.claim("alice", "support:alice:m1") is True
    assert await guard.claim("alice", "support:alice:m2") is True


def test_long_bodies_keep_one_hundred_characters_and_an_ellipsis():
    body = truncate("a" * 250)

    assert body == "a" * 100 + "..."
    assert truncate("b" * 100) == "b" * 100
    assert truncate("short") == "short"


def test_new_message_body_is_the_cut_content(chat_room):
    # AAA: Arrange
    content = "".join(str(i % 10) for i in range(150))
    sample = build_sample("alice", "room-1", content, classified())

    # AAA: Act
    payload = new_message_payload(chat_room, "Alice", "m1", "alice", content, MessageType.TEXT, sample)

    # AAA: Assert
    assert payload["title"] == "Alice in Friends"
    assert payload["body"] == content[:100] + "..."
    assert len(payload["body"]) == 103
    assert payload["data"]["emotion"] == "sadness"
    assert payload["data"]["sentiment"] == "-0.7"


def test_private_room_title_is_the_sender_name(chat_room):
    private = chat_room.model_copy(update={"type": RoomType.PRIVATE})

    payload = new_message_payload(private, "Alice", "m1", "alice", "hi", MessageType.TEXT)

    assert payload["title"] == "Alice"
    assert payload["data"]["messageType"] == "text"
    assert "sentiment" not in payload["data"]


@pytest.mark.asyncio
async def test_a_message_keeps_only_the_first_linked_sample(repository):
    recorder = EmotionRecorder(repository)
    first = await recorder.record(build_sample("alice", "room-1", "so sad", classified()))
    second = await recorder.record(build_sample("alice", "room-1", "so sad", classified()))

    assert await recorder.link(first.id, "message-1") is True
    assert await recorder.link(second.id, "message-1") is False
    assert (await recorder.find_for_message("message-1")).id == first.id
    assert await recorder.find_for_message("message-2") is None
