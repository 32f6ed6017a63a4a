import pytest

from datetime import datetime, timedelta, timezone
from models.models import ClassificationResult, ClassifierSource, ChatRoom, Emotion, RoomSettings, RoomType, TokenOutcome, UserRecord


class InMemoryRepository:
    """Dictionary-backed stand-in for ChatRepository."""

    def __init__(self):
        self.users = {}
        self.rooms = {}
        self.messages = {}
        self.samples = {}
        self.profiles = {}
        self.trends = {}
        self.tokens = {}
        self.fail_on = set()

    def _check(self, operation):
        if operation in self.fail_on:
            raise ConnectionError(f"{operation} is unavailable")

    async def ensure_user(self, user_id, display_name, email=None):
        self._check("ensure_user")
        existing = self.users.get(user_id)
        user = UserRecord(
            id=user_id, display_name=display_name, email=email or (existing.email if existing else None),
            push_enabled=existing.push_enabled if existing else True,
            emotion_alerts=existing.emotion_alerts if existing else True,
        )
        self.users[user_id] = user
        return user

    async def get_user(self, user_id):
        self._check("get_user")
        return self.users.get(user_id)

    async def get_users(self, user_ids):
        return [self.users[user_id] for user_id in user_ids if user_id in self.users]

    async def update_user_preferences(self, user_id, push_enabled, emotion_alerts):
        if user_id not in self.users:
            return False
        self.users[user_id] = self.users[user_id].model_copy(update={"push_enabled": push_enabled, "emotion_alerts": emotion_alerts})
        return True

    async def create_room(self, room):
        self.rooms[room.id] = room
        return room

    async def get_room(self, room_id):
        self._check("get_room")
        return self.rooms.get(room_id)

    async def insert_message(self, message):
        self._check("insert_message")
        self.messages[message.id] = message
        return message

    async def set_message_emotion(self, message_id, sample_id, emotion, sentiment_score):
        if message_id not in self.messages:
            return False
        self.messages[message_id] = self.messages[message_id].model_copy(update={"emotion": Emotion(emotion), "sentiment_score": sentiment_score})
        return True

    async def insert_emotion_sample(self, sample):
        self._check("insert_emotion_sample")
        self.samples[sample.id] = sample
        return sample

    async def get_message(self, message_id):
        self._check("get_message")
        return self.messages.get(message_id)

    async def get_emotion_sample_for_message(self, message_id):
        self._check("get_emotion_sample_for_message")
        return next((sample for sample in self.samples.values() if sample.message_id == message_id), None)

    async def list_emotion_samples(self, author_id, limit=50, since=None):
        owned = [
            sample for sample in self.samples.values()
            if sample.author_id == author_id and (since is None or sample.created_at >= since)
        ]
        return sorted(owned, key=lambda sample: sample.created_at, reverse=True)[:limit]

    async def link_emotion_sample(self, sample_id, message_id):
        sample = self.samples.get(sample_id)
        if sample is None or sample.message_id is not None:
            return False
        if any(other.message_id == message_id for other in self.samples.values()):
            return False
        self.samples[sample_id] = sample.model_copy(update={"message_id": message_id})
        return True

    async def mark_sample_support_triggered(self, sample_id):
        sample = self.samples.get(sample_id)
        if sample is None or sample.support_triggered:
            return False
        self.samples[sample_id] = sample.model_copy(update={"support_triggered": True})
        return True

    async def get_profile(self, user_id):
        return self.profiles.get(user_id)

    async def save_profile(self, profile):
        self._check("save_profile")
        self.profiles[profile.user_id] = profile

    async def get_room_trend(self, room_id, day):
        return self.trends.get((room_id, day))

    async def list_room_trends(self, room_id, since):
        return sorted(
            (trend for (trend_room, day), trend in self.trends.items() if trend_room == room_id and day >= since),
            key=lambda trend: trend.day,
        )

    async def save_room_trend(self, trend):
        self.trends[(trend.room_id, trend.day)] = trend

    async def delete_room_trends_before(self, room_id, day):
        stale = [key for key in self.trends if key[0] == room_id and key[1] < day]
        for key in stale:
            del self.trends[key]
        return len(stale)

    async def upsert_device_token(self, device_token):
        existing = self.tokens.get(device_token.token)
        if existing is not None:
            device_token = existing.model_copy(update={
                "owner_id": device_token.owner_id,
                "device_type": device_token.device_type,
                "is_active": True,
                "last_used_at": device_token.last_used_at,
                "registered_at": device_token.registered_at,
            })
        self.tokens[device_token.token] = device_token

    async def list_device_tokens(self, owner_ids, active_only=False):
        owner_ids = set(owner_ids)
        return [
            entry for entry in self.tokens.values()
            if entry.owner_id in owner_ids and (entry.is_active or not active_only)
        ]

    async def set_token_state(self, token, is_active, last_used_at=None):
        entry = self.tokens.get(token)
        if entry is None:
            return False
        update = {"is_active": is_active}
        if last_used_at is not None:
            update["last_used_at"] = last_used_at
        self.tokens[token] = entry.model_copy(update=update)
        return True

    async def delete_device_tokens(self, tokens):
        removed = 0
        for token in tokens:
            if self.tokens.pop(token, None) is not None:
                removed += 1
        return removed

    async def delete_device_token(self, owner_id, token):
        entry = self.tokens.get(token)
        if entry is None or entry.owner_id != owner_id:
            return False
        del self.tokens[token]
        return True


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.available = True

    async def set(self, key, value, nx=False, ex=None):
        if not self.available:
            raise ConnectionError("redis is down")
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True


class FakeBroadcaster:
    def __init__(self):
        self.events = []

    async def publish(self, room_id, event, payload):
        self.events.append((room_id, event, payload))
        return True


class StubPushClient:
    """Push provider returning a preset outcome per token (success by default)."""

    def __init__(self, outcomes=None, error=None):
        self.outcomes = outcomes or {}
        self.error = error
        self.calls = []

    async def send_to_token(self, token, notification, data=None):
        self.calls.append(("single", [token], notification, data))
        if self.error:
            raise self.error
        return self.outcomes.get(token, TokenOutcome.SUCCESS)

    async def send_to_tokens(self, tokens, notification, data=None):
        tokens = list(tokens)
        self.calls.append(("multi", tokens, notification, data))
        if self.error:
            raise self.error
        return {token: self.outcomes.get(token, TokenOutcome.SUCCESS) for token in tokens}


class StubClassifier:
    def __init__(self, score=0.1, magnitude=0.5, emotion=Emotion.NEUTRAL, source=ClassifierSource.PRIMARY, confidence=None):
        self.result = ClassificationResult(
            emotion=emotion,
            sentiment_score=score,
            magnitude=magnitude,
            confidence=confidence if confidence is not None else round(min(magnitude * abs(score), 1.0), 3),
            source=source,
        )
        self.calls = []

    async def classify(self, text):
        self.calls.append(text)
        return self.result

    async def classify_many(self, texts):
        return [await self.classify(text) for text in texts]


class SteppingClock:
    """Returns strictly increasing timestamps, one second apart."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.current = self.current + timedelta(seconds=1)
        return self.current


@pytest.fixture
def make_token():
    def factory(label: str) -> str:
        return f"{label}:" + "A" * 140
    return factory


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def broadcaster():
    return FakeBroadcaster()


@pytest.fixture
def clock():
    return SteppingClock()


@pytest.fixture
def push_client():
    return StubPushClient()


@pytest.fixture
def classifier_returning():
    return StubClassifier


@pytest.fixture
def chat_room(repository):
    room = ChatRoom(
        id="room-1",
        name="Friends",
        type=RoomType.GROUP,
        participant_ids=["alice", "bob", "carol"],
        settings=RoomSettings(),
        created_by="alice",
    )
    repository.rooms[room.id] = room
    for user_id, name in (("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol")):
        repository.users[user_id] = UserRecord(id=user_id, display_name=name)
    return room
