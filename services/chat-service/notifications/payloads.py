from typing import Dict, Optional
from models.models import ChatRoom, EmotionSample, MessageType, RoomType, utcnow

SUPPORT_TITLE = "We're here for you"
BODY_LIMIT = 100
ELLIPSIS = "..."


def stringify(data: Dict[str, object]) -> Dict[str, str]:
    """Push data payloads only carry strings; None values are dropped."""
    return {key: str(value) for key, value in data.items() if value is not None}


def truncate(text: str, limit: int = BODY_LIMIT) -> str:
    """Keeps the first `limit` characters and marks the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


def support_payload(sample: EmotionSample, display_name: str) -> Dict[str, object]:
    body = (
        f"Hi {display_name}, it sounds like things are hard right now. "
        "You're not alone. Take a moment for yourself, and reach out to someone you trust."
    )
    return {
        "title": SUPPORT_TITLE,
        "body": body,
        "data": stringify({
            "type": "emotional_support",
            "sentimentScore": sample.sentiment_score,
            "emotion": sample.emotion.value,
            "roomId": sample.room_id,
            "timestamp": utcnow().isoformat(),
        }),
    }


def new_message_payload(
    room: ChatRoom,
    sender_name: str,
    message_id: str,
    sender_id: str,
    content: str,
    message_type: MessageType,
    sample: Optional[EmotionSample] = None,
) -> Dict[str, object]:
    title = f"{sender_name} in {room.name}" if room.type == RoomType.GROUP else sender_name
    return {
        "title": title,
        "body": truncate(content),
        "data": stringify({
            "type": "new_message",
            "messageId": message_id,
            "chatRoomId": room.id,
            "senderId": sender_id,
            "messageType": message_type.value,
            "timestamp": utcnow().isoformat(),
            "emotion": sample.emotion.value if sample else None,
            "sentiment": sample.sentiment_score if sample else None,
        }),
    }
