import json
import asyncpg

from datetime import date, datetime
from typing import Iterable, List, Optional
from models.models import (
    ChatMessage,
    ChatRoom,
    DeviceToken,
    EmotionSample,
    HistoryEntry,
    RoomEmotionTrend,
    RoomSettings,
    UserEmotionProfile,
    UserRecord,
)


def _updated(result: str) -> bool:
    return result.strip() != "UPDATE 0"


def _row_to_user(row) -> UserRecord:
    return UserRecord(
        id=row["id"], display_name=row["display_name"], email=row["email"],
        push_enabled=row["push_enabled"], emotion_alerts=row["emotion_alerts"]
    )


def _row_to_room(row) -> ChatRoom:
    return ChatRoom(
        id=row["id"], name=row["name"], type=row["type"], participant_ids=list(row["participant_ids"]),
        settings=RoomSettings(
            emotion_sharing=row["emotion_sharing"],
            allow_emotion_analysis=row["allow_emotion_analysis"],
            notifications=row["notifications"],
        ),
        created_by=row["created_by"], created_at=row["created_at"]
    )


def _row_to_sample(row) -> EmotionSample:
    return EmotionSample(
        id=row["id"], author_id=row["author_id"], room_id=row["room_id"], message_id=row["message_id"],
        text=row["text"], emotion=row["emotion"], sentiment_score=row["sentiment_score"],
        magnitude=row["magnitude"], confidence=row["confidence"], classifier_source=row["classifier_source"],
        support_triggered=row["support_triggered"], created_at=row["created_at"]
    )


def _row_to_token(row) -> DeviceToken:
    return DeviceToken(
        token=row["token"], owner_id=row["owner_id"], device_type=row["device_type"],
        is_active=row["is_active"], last_used_at=row["last_used_at"], registered_at=row["registered_at"],
        created_at=row["created_at"]
    )


async def ensure_user(db_conn, user_id: str, display_name: str, email: Optional[str] = None) -> UserRecord:
    """Creates the user row on first sight; later calls only refresh the display name."""
    query = """
    INSERT INTO users (id, display_name, email)
    VALUES ($1, $2, $3)
    ON CONFLICT (id)
    DO UPDATE SET display_name = EXCLUDED.display_name, email = COALESCE(EXCLUDED.email, users.email), updated_at = NOW()
    RETURNING id, display_name, email, push_enabled, emotion_alerts;
    """
    return _row_to_user(await db_conn.fetchrow(query, user_id, display_name, email))


async def fetch_user(db_conn, user_id: str) -> Optional[UserRecord]:
    row = await db_conn.fetchrow(
        "SELECT id, display_name, email, push_enabled, emotion_alerts FROM users WHERE id = $1;", user_id
    )
    return _row_to_user(row) if row else None


async def fetch_users(db_conn, user_ids: List[str]) -> List[UserRecord]:
    rows = await db_conn.fetch(
        "SELECT id, display_name, email, push_enabled, emotion_alerts FROM users WHERE id = ANY($1::text[]);",
        list(user_ids)
    )
    return [_row_to_user(row) for row in rows]


async def update_user_preferences(db_conn, user_id: str, push_enabled: bool, emotion_alerts: bool) -> bool:
    result = await db_conn.execute(
        "UPDATE users SET push_enabled = $2, emotion_alerts = $3, updated_at = NOW() WHERE id = $1;",
        user_id, push_enabled, emotion_alerts
    )
    return _updated(result)


async def insert_room(db_conn, room: ChatRoom) -> ChatRoom:
    query = """
    INSERT INTO chat_rooms (id, name, type, participant_ids, emotion_sharing, allow_emotion_analysis, notifications, created_by, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9);
    """
    await db_conn.execute(
        query, room.id, room.name, room.type.value, room.participant_ids,
        room.settings.emotion_sharing, room.settings.allow_emotion_analysis, room.settings.notifications,
        room.created_by, room.created_at
    )
    return room


async def fetch_room(db_conn, room_id: str) -> Optional[ChatRoom]:
    row = await db_conn.fetchrow("SELECT * FROM chat_rooms WHERE id = $1;", room_id)
    return _row_to_room(row) if row else None


async def insert_message(db_conn, message: ChatMessage) -> ChatMessage:
    query = """
    INSERT INTO chat_messages (id, room_id, sender_id, content, message_type, created_at)
    VALUES ($1, $2, $3, $4, $5, $6);
    """
    await db_conn.execute(
        query, message.id, message.room_id, message.sender_id, message.content,
        message.message_type.value, message.created_at
    )
    return message


async def fetch_message(db_conn, message_id: str) -> Optional[ChatMessage]:
    row = await db_conn.fetchrow("SELECT * FROM chat_messages WHERE id = $1;", message_id)
    if not row:
        return None
    return ChatMessage(
        id=row["id"], room_id=row["room_id"], sender_id=row["sender_id"], content=row["content"],
        message_type=row["message_type"], emotion=row["emotion"], sentiment_score=row["sentiment_score"],
        created_at=row["created_at"]
    )


async def set_message_emotion(db_conn, message_id: str, sample_id: Optional[str], emotion: str, sentiment_score: float) -> bool:
    query = """
    UPDATE chat_messages
    SET emotion = $2, sentiment_score = $3, emotion_sample_id = $4, updated_at = NOW()
    WHERE id = $1;
    """
    return _updated(await db_conn.execute(query, message_id, emotion, sentiment_score, sample_id))


async def insert_emotion_sample(db_conn, sample: EmotionSample) -> EmotionSample:
    query = """
    INSERT INTO emotion_samples (id, author_id, room_id, message_id, text, emotion, sentiment_score,
                                 magnitude, confidence, classifier_source, support_triggered, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12);
    """
    await db_conn.execute(
        query, sample.id, sample.author_id, sample.room_id, sample.message_id, sample.text,
        sample.emotion.value, sample.sentiment_score, sample.magnitude, sample.confidence,
        sample.classifier_source.value, sample.support_triggered, sample.created_at
    )
    return sample


async def fetch_emotion_samples(db_conn, author_id: str, limit: int, since: Optional[datetime] = None) -> List[EmotionSample]:
    if since is None:
        rows = await db_conn.fetch(
            "SELECT * FROM emotion_samples WHERE author_id = $1 ORDER BY created_at DESC LIMIT $2;", author_id, limit
        )
    else:
        rows = await db_conn.fetch(
            "SELECT * FROM emotion_samples WHERE author_id = $1 AND created_at >= $3 ORDER BY created_at DESC LIMIT $2;",
            author_id, limit, since
        )
    return [_row_to_sample(row) for row in rows]


async def fetch_emotion_sample_for_message(db_conn, message_id: str) -> Optional[EmotionSample]:
    row = await db_conn.fetchrow("SELECT * FROM emotion_samples WHERE message_id = $1;", message_id)
    return _row_to_sample(row) if row else None


async def link_emotion_sample(db_conn, sample_id: str, message_id: str) -> bool:
    """
    Sets the message id of a sample. Already-linked samples are left untouched, and so is
    a sample whose message already owns another one.
    """
    try:
        result = await db_conn.execute(
            "UPDATE emotion_samples SET message_id = $2 WHERE id = $1 AND message_id IS NULL;", sample_id, message_id
        )
    except asyncpg.UniqueViolationError:
        return False
    return _updated(result)


async def mark_sample_support_triggered(db_conn, sample_id: str) -> bool:
    result = await db_conn.execute(
        "UPDATE emotion_samples SET support_triggered = TRUE WHERE id = $1 AND support_triggered = FALSE;", sample_id
    )
    return _updated(result)


async def fetch_profile(db_conn, user_id: str) -> Optional[UserEmotionProfile]:
    row = await db_conn.fetchrow("SELECT * FROM user_emotion_profiles WHERE user_id = $1;", user_id)
    if not row:
        return None
    return UserEmotionProfile(
        user_id=row["user_id"], dominant_emotion=row["dominant_emotion"], average_sentiment=row["average_sentiment"],
        recent_history=[HistoryEntry.model_validate(entry) for entry in json.loads(row["recent_history"])],
        updated_at=row["updated_at"]
    )


async def save_profile(db_conn, profile: UserEmotionProfile):
    query = """
    INSERT INTO user_emotion_profiles (user_id, dominant_emotion, average_sentiment, recent_history, updated_at)
    VALUES ($1, $2, $3, $4::jsonb, NOW())
    ON CONFLICT (user_id)
    DO UPDATE SET
        dominant_emotion = EXCLUDED.dominant_emotion,
        average_sentiment = EXCLUDED.average_sentiment,
        recent_history = EXCLUDED.recent_history,
        updated_at = NOW();
    """
    history = json.dumps([entry.model_dump(by_alias=True, mode="json") for entry in profile.recent_history])
    await db_conn.execute(query, profile.user_id, profile.dominant_emotion.value, profile.average_sentiment, history)


def _row_to_trend(row) -> RoomEmotionTrend:
    return RoomEmotionTrend(
        room_id=row["room_id"], day=row["day"], counts=json.loads(row["counts"]),
        average_sentiment=row["average_sentiment"]
    )


async def fetch_room_trend(db_conn, room_id: str, day: date) -> Optional[RoomEmotionTrend]:
    row = await db_conn.fetchrow("SELECT * FROM room_emotion_trends WHERE room_id = $1 AND day = $2;", room_id, day)
    return _row_to_trend(row) if row else None


async def fetch_room_trends(db_conn, room_id: str, since: date) -> List[RoomEmotionTrend]:
    rows = await db_conn.fetch(
        "SELECT * FROM room_emotion_trends WHERE room_id = $1 AND day >= $2 ORDER BY day ASC;", room_id, since
    )
    return [_row_to_trend(row) for row in rows]


async def save_room_trend(db_conn, trend: RoomEmotionTrend):
    query = """
    INSERT INTO room_emotion_trends (room_id, day, counts, average_sentiment, updated_at)
    VALUES ($1, $2, $3::jsonb, $4, NOW())
    ON CONFLICT (room_id, day)
    DO UPDATE SET counts = EXCLUDED.counts, average_sentiment = EXCLUDED.average_sentiment, updated_at = NOW();
    """
    counts = json.dumps({emotion.value: count for emotion, count in trend.counts.items()})
    await db_conn.execute(query, trend.room_id, trend.day, counts, trend.average_sentiment)


async def delete_room_trends_before(db_conn, room_id: str, day: date) -> int:
    result = await db_conn.execute("DELETE FROM room_emotion_trends WHERE room_id = $1 AND day < $2;", room_id, day)
    return int(result.split()[-1])


async def upsert_device_token(db_conn, device_token: DeviceToken):
    """Inserts a token or moves an existing one to the given owner, reactivating it and refreshing its registration time."""
    query = """
    INSERT INTO device_tokens (token, owner_id, device_type, is_active, last_used_at, registered_at, created_at)
    VALUES ($1, $2, $3, TRUE, $4, $5, $6)
    ON CONFLICT (token)
    DO UPDATE SET owner_id = EXCLUDED.owner_id, device_type = EXCLUDED.device_type, is_active = TRUE,
                  last_used_at = EXCLUDED.last_used_at, registered_at = EXCLUDED.registered_at;
    """
    await db_conn.execute(
        query, device_token.token, device_token.owner_id, device_token.device_type.value,
        device_token.last_used_at, device_token.registered_at, device_token.created_at
    )


async def fetch_device_tokens(db_conn, owner_ids: Iterable[str], active_only: bool = False) -> List[DeviceToken]:
    query = "SELECT * FROM device_tokens WHERE owner_id = ANY($1::text[])"
    if active_only:
        query += " AND is_active = TRUE"
    rows = await db_conn.fetch(query + " ORDER BY registered_at ASC;", list(owner_ids))
    return [_row_to_token(row) for row in rows]


async def set_token_state(db_conn, token: str, is_active: bool, last_used_at: Optional[datetime] = None) -> bool:
    if last_used_at is None:
        result = await db_conn.execute("UPDATE device_tokens SET is_active = $2 WHERE token = $1;", token, is_active)
    else:
        result = await db_conn.execute(
            "UPDATE device_tokens SET is_active = $2, last_used_at = $3 WHERE token = $1;", token, is_active, last_used_at
        )
    return _updated(result)


async def delete_device_tokens(db_conn, tokens: List[str]) -> int:
    result = await db_conn.execute("DELETE FROM device_tokens WHERE token = ANY($1::text[]);", list(tokens))
    return int(result.split()[-1])


async def delete_device_token(db_conn, owner_id: str, token: str) -> bool:
    result = await db_conn.execute("DELETE FROM device_tokens WHERE owner_id = $1 AND token = $2;", owner_id, token)
    return result.strip() != "DELETE 0"


class ChatRepository:
    """
    Storage collaborator backed by an asyncpg pool. Every call acquires its own
    connection; no transaction spans more than one call.
    """

    def __init__(self, db_pool):
        self.db_pool = db_pool

    async def ensure_user(self, user_id: str, display_name: str, email: Optional[str] = None) -> UserRecord:
        async with self.db_pool.acquire() as conn:
            return await ensure_user(conn, user_id, display_name, email)

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        async with self.db_pool.acquire() as conn:
            return await fetch_user(conn, user_id)

    async def get_users(self, user_ids: List[str]) -> List[UserRecord]:
        async with self.db_pool.acquire() as conn:
            return await fetch_users(conn, user_ids)

    async def update_user_preferences(self, user_id: str, push_enabled: bool, emotion_alerts: bool) -> bool:
        async with self.db_pool.acquire() as conn:
            return await update_user_preferences(conn, user_id, push_enabled, emotion_alerts)

    async def create_room(self, room: ChatRoom) -> ChatRoom:
        async with self.db_pool.acquire() as conn:
            return await insert_room(conn, room)

    async def get_room(self, room_id: str) -> Optional[ChatRoom]:
        async with self.db_pool.acquire() as conn:
            return await fetch_room(conn, room_id)

    async def insert_message(self, message: ChatMessage) -> ChatMessage:
        async with self.db_pool.acquire() as conn:
            return await insert_message(conn, message)

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        async with self.db_pool.acquire() as conn:
            return await fetch_message(conn, message_id)

    async def set_message_emotion(self, message_id: str, sample_id: Optional[str], emotion: str, sentiment_score: float) -> bool:
        async with self.db_pool.acquire() as conn:
            return await set_message_emotion(conn, message_id, sample_id, emotion, sentiment_score)

    async def insert_emotion_sample(self, sample: EmotionSample) -> EmotionSample:
        async with self.db_pool.acquire() as conn:
            return await insert_emotion_sample(conn, sample)

    async def list_emotion_samples(self, author_id: str, limit: int = 50, since: Optional[datetime] = None) -> List[EmotionSample]:
        async with self.db_pool.acquire() as conn:
            return await fetch_emotion_samples(conn, author_id, limit, since)

    async def get_emotion_sample_for_message(self, message_id: str) -> Optional[EmotionSample]:
        async with self.db_pool.acquire() as conn:
            return await fetch_emotion_sample_for_message(conn, message_id)

    async def link_emotion_sample(self, sample_id: str, message_id: str) -> bool:
        async with self.db_pool.acquire() as conn:
            return await link_emotion_sample(conn, sample_id, message_id)

    async def mark_sample_support_triggered(self, sample_id: str) -> bool:
        async with self.db_pool.acquire() as conn:
            return await mark_sample_support_triggered(conn, sample_id)

    async def get_profile(self, user_id: str) -> Optional[UserEmotionProfile]:
        async with self.db_pool.acquire() as conn:
            return await fetch_profile(conn, user_id)

    async def save_profile(self, profile: UserEmotionProfile):
        async with self.db_pool.acquire() as conn:
            await save_profile(conn, profile)

    async def get_room_trend(self, room_id: str, day: date) -> Optional[RoomEmotionTrend]:
        async with self.db_pool.acquire() as conn:
            return await fetch_room_trend(conn, room_id, day)

    async def list_room_trends(self, room_id: str, since: date) -> List[RoomEmotionTrend]:
        async with self.db_pool.acquire() as conn:
            return await fetch_room_trends(conn, room_id, since)

    async def save_room_trend(self, trend: RoomEmotionTrend):
        async with self.db_pool.acquire() as conn:
            await save_room_trend(conn, trend)

    async def delete_room_trends_before(self, room_id: str, day: date) -> int:
        async with self.db_pool.acquire() as conn:
            return await delete_room_trends_before(conn, room_id, day)

    async def upsert_device_token(self, device_token: DeviceToken):
        async with self.db_pool.acquire() as conn:
            await upsert_device_token(conn, device_token)

    async def list_device_tokens(self, owner_ids: Iterable[str], active_only: bool = False) -> List[DeviceToken]:
        async with self.db_pool.acquire() as conn:
            return await fetch_device_tokens(conn, owner_ids, active_only)

    async def set_token_state(self, token: str, is_active: bool, last_used_at: Optional[datetime] = None) -> bool:
        async with self.db_pool.acquire() as conn:
            return await set_token_state(conn, token, is_active, last_used_at)

    async def delete_device_tokens(self, tokens: List[str]) -> int:
        async with self.db_pool.acquire() as conn:
            return await delete_device_tokens(conn, tokens)

    async def delete_device_token(self, owner_id: str, token: str) -> bool:
        async with self.db_pool.acquire() as conn:
            return await delete_device_token(conn, owner_id, token)
