from typing import Optional
from notifications.payloads import support_payload
from configuration.config import SUPPORT_SENTIMENT_THRESHOLD
from models.models import EmotionSample, NotificationEvent, NotificationKind, SupportDecision


def support_idempotency_key(author_id: str, message_id: Optional[str], sample_id: Optional[str] = None) -> str:
    """One analyzed message yields one sample, so a redelivered message maps to the same key."""
    return f"support:{author_id}:{message_id or sample_id}"


class TriggerPolicy:
    """
    Stateless support-alert decision: trigger when the sentiment score is at or
    below the threshold. De-duplication is left to the caller.
    """

    def __init__(self, threshold: float = SUPPORT_SENTIMENT_THRESHOLD):
        self.threshold = threshold

    def should_trigger(self, sentiment_score: float) -> bool:
        return sentiment_score <= self.threshold

    def evaluate(self, sample: EmotionSample, display_name: str) -> SupportDecision:
        if not self.should_trigger(sample.sentiment_score):
            return SupportDecision(trigger=False)

        payload = support_payload(sample, display_name)
        notification = NotificationEvent(
            kind=NotificationKind.SUPPORT,
            recipient_ids=[sample.author_id],
            title=payload["title"],
            body=payload["body"],
            data=payload["data"],
            idempotency_key=support_idempotency_key(sample.author_id, sample.message_id, sample.id),
        )
        return SupportDecision(trigger=True, notification=notification)
