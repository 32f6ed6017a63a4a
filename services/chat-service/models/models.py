from enum import Enum
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_display_name(user_id: str) -> str:
    return f"user_{user_id[:8]}"


class Emotion(str, Enum):
    """The closed set of emotion labels every classification maps onto."""
    JOY = "joy"
    SADNESS = "sadness"
    ANGER = "anger"
    FEAR = "fear"
    SURPRISE = "surprise"
    DISGUST = "disgust"
    NEUTRAL = "neutral"


class ClassifierSource(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class DeviceType(str, Enum):
    WEB = "web"
    ANDROID = "android"
    IOS = "ios"


class TokenOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_TOKEN = "invalid_token"
    TRANSIENT_FAILURE = "transient_failure"


class NotificationKind(str, Enum):
    NEW_MESSAGE = "new_message"
    SUPPORT = "support"


class RoomType(str, Enum):
    PRIVATE = "private"
    GROUP = "group"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    EMOJI = "emoji"
    VOICE = "voice"


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClassificationResult(CamelModel):
    """
    Output of the classifier adapter for one piece of text.

    Attributes:
        emotion (Emotion): Label chosen by the mapping policy or the keyword heuristic.
        sentiment_score (float): Polarity in [-1, 1].
        magnitude (float): Non-negative emotional strength.
        confidence (float): Certainty of the label in [0, 1].
        source (ClassifierSource): Whether the external provider or the local heuristic answered.
    """
    emotion: Emotion
    sentiment_score: float = Field(..., ge=-1.0, le=1.0)
    magnitude: float = Field(..., ge=0.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: ClassifierSource


class EmotionSample(CamelModel):
    """
    One immutable emotion observation recorded for an analyzed message.

    Only `message_id` (once) and `support_triggered` (false to true) change after
    creation, and only through the recorder's guarded updates.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: Optional[str] = None
    author_id: str
    room_id: Optional[str] = None
    message_id: Optional[str] = None
    text: str
    emotion: Emotion
    sentiment_score: float = Field(..., ge=-1.0, le=1.0)
    magnitude: float = Field(..., ge=0.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    classifier_source: ClassifierSource
    support_triggered: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class HistoryEntry(CamelModel):
    emotion: Emotion
    confidence: float
    timestamp: datetime


class UserEmotionProfile(CamelModel):
    """Rolling per-user emotion statistics."""
    user_id: str
    dominant_emotion: Emotion = Emotion.NEUTRAL
    average_sentiment: float = 0.0
    recent_history: List[HistoryEntry] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class RoomEmotionTrend(CamelModel):
    """Per-room statistics for a single UTC calendar day."""
    room_id: str
    day: date
    counts: Dict[Emotion, int] = Field(default_factory=lambda: {emotion: 0 for emotion in Emotion})
    average_sentiment: float = 0.0


class DeviceToken(CamelModel):
    token: str
    owner_id: str
    device_type: DeviceType = DeviceType.WEB
    is_active: bool = True
    last_used_at: datetime = Field(default_factory=utcnow)
    registered_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class NotificationEvent(CamelModel):
    """A notification to be fanned out to every active device of its recipients."""
    kind: NotificationKind
    recipient_ids: List[str]
    title: str
    body: str
    data: Dict[str, str] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None


class DispatchResult(CamelModel):
    success_count: int = 0
    failure_count: int = 0
    outcomes: Dict[str, TokenOutcome] = Field(default_factory=dict)

    def tokens_with(self, outcome: TokenOutcome) -> List[str]:
        return [token for token, result in self.outcomes.items() if result == outcome]


class SupportDecision(CamelModel):
    trigger: bool
    notification: Optional[NotificationEvent] = None


class RoomSettings(CamelModel):
    emotion_sharing: bool = True
    allow_emotion_analysis: bool = True
    notifications: bool = True


class ChatRoom(CamelModel):
    id: str
    name: str
    type: RoomType = RoomType.PRIVATE
    participant_ids: List[str] = Field(default_factory=list)
    settings: RoomSettings = Field(default_factory=RoomSettings)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ChatMessage(CamelModel):
    id: str
    room_id: str
    sender_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    emotion: Optional[Emotion] = None
    sentiment_score: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)


class UserRecord(CamelModel):
    id: str
    display_name: str
    email: Optional[str] = None
    push_enabled: bool = True
    emotion_alerts: bool = True


class Identity(BaseModel):
    """The authenticated caller, as resolved from the bearer token."""
    user_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    claims: Dict[str, Any] = Field(default_factory=dict)


class PipelineJob(CamelModel):
    """Payload published to JetStream for every stored chat message."""
    message_id: str
    room_id: str
    author_id: str
    text: str
    message_type: MessageType = MessageType.TEXT
    created_at: datetime = Field(default_factory=utcnow)
    trace_id: Optional[str] = None


class SendMessagePayload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    content: str = Field(..., min_length=1, max_length=1000)
    message_type: MessageType = MessageType.TEXT


class CreateRoomPayload(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: RoomType = RoomType.PRIVATE
    participant_ids: List[str] = Field(default_factory=list)
    settings: RoomSettings = Field(default_factory=RoomSettings)


class RegisterTokenPayload(CamelModel):
    token: str
    device_type: DeviceType = DeviceType.WEB


class RemoveTokenPayload(CamelModel):
    token: str


class PreferencesPayload(CamelModel):
    push_enabled: Optional[bool] = None
    emotion_alerts: Optional[bool] = None


class EmotionStatistics(CamelModel):
    dominant: Emotion
    distribution: Dict[Emotion, float]
    average_sentiment: float
    total_analyzed: int


class AnalyzePayload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    text: str = Field(..., min_length=1, max_length=5000)
    message_id: Optional[str] = None


class BatchAnalyzePayload(CamelModel):
    texts: List[str] = Field(..., min_length=1, max_length=25)


class CheckNotificationPayload(CamelModel):
    title: str = Field("Test notification", min_length=1, max_length=200)
    body: str = Field("This is a test notification from your chat service.", min_length=1, max_length=1000)


class SendNotificationPayload(CamelModel):
    user_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=1000)
    data: Dict[str, Any] = Field(default_factory=dict)
