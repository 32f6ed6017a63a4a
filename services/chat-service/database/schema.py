SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        display_name TEXT NOT NULL,
        email TEXT,
        push_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        emotion_alerts BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_rooms (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'private',
        participant_ids TEXT[] NOT NULL DEFAULT '{}',
        emotion_sharing BOOLEAN NOT NULL DEFAULT TRUE,
        allow_emotion_analysis BOOLEAN NOT NULL DEFAULT TRUE,
        notifications BOOLEAN NOT NULL DEFAULT TRUE,
        created_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        room_id TEXT NOT NULL REFERENCES chat_rooms(id),
        sender_id TEXT NOT NULL,
        content TEXT NOT NULL,
        message_type TEXT NOT NULL DEFAULT 'text',
        emotion TEXT,
        sentiment_score DOUBLE PRECISION,
        emotion_sample_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_room ON chat_messages (room_id, created_at DESC);",
    """
    CREATE TABLE IF NOT EXISTS emotion_samples (
        id TEXT PRIMARY KEY,
        author_id TEXT NOT NULL,
        room_id TEXT,
        message_id TEXT,
        text TEXT NOT NULL,
        emotion TEXT NOT NULL,
        sentiment_score DOUBLE PRECISION NOT NULL CHECK (sentiment_score BETWEEN -1 AND 1),
        magnitude DOUBLE PRECISION NOT NULL CHECK (magnitude >= 0),
        confidence DOUBLE PRECISION NOT NULL CHECK (confidence BETWEEN 0 AND 1),
        classifier_source TEXT NOT NULL,
        support_triggered BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    "ALTER TABLE emotion_samples ALTER COLUMN room_id DROP NOT NULL;",
    "CREATE INDEX IF NOT EXISTS idx_emotion_samples_author ON emotion_samples (author_id, created_at DESC);",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_emotion_samples_message ON emotion_samples (message_id);",
    """
    CREATE TABLE IF NOT EXISTS user_emotion_profiles (
        user_id TEXT PRIMARY KEY,
        dominant_emotion TEXT NOT NULL DEFAULT 'neutral',
        average_sentiment DOUBLE PRECISION NOT NULL DEFAULT 0,
        recent_history JSONB NOT NULL DEFAULT '[]',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS room_emotion_trends (
        room_id TEXT NOT NULL,
        day DATE NOT NULL,
        counts JSONB NOT NULL,
        average_sentiment DOUBLE PRECISION NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (room_id, day)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS device_tokens (
        token TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        device_type TEXT NOT NULL DEFAULT 'web',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_used_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        registered_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    "ALTER TABLE device_tokens ADD COLUMN IF NOT EXISTS registered_at TIMESTAMPTZ NOT NULL DEFAULT NOW();",
    "CREATE INDEX IF NOT EXISTS idx_device_tokens_owner ON device_tokens (owner_id, is_active);",
]


async def ensure_schema(db_conn):
    """Creates the chat tables if they do not exist yet."""
    for statement in SCHEMA_STATEMENTS:
        await db_conn.execute(statement)
