import math
import asyncio
import httpx

from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple
from pybreaker import CircuitBreaker, CircuitBreakerError
from errors.errors import ClassifierUnavailable, InvalidInput
from models.models import ClassificationResult, ClassifierSource, Emotion, EmotionStatistics
from configuration.config import (
    logger,
    GOOGLE_NLP_API_KEY,
    GOOGLE_NLP_URL,
    CLASSIFIER_TIMEOUT_SECONDS,
    CLASSIFIER_BREAKER_FAIL_MAX,
    CLASSIFIER_BREAKER_RESET_TIMEOUT,
)

# Score bands and magnitude cut-offs of the label mapping.
LOW_SIGNAL_MAGNITUDE = 0.3
STRONG_POSITIVE_SCORE = 0.6
POSITIVE_SCORE = 0.2
NEGATIVE_SCORE = -0.2
STRONG_NEGATIVE_SCORE = -0.6
SADNESS_MAGNITUDE = 0.7
HIGH_MAGNITUDE = 0.8

FALLBACK_KEYWORDS: Dict[Emotion, List[str]] = {
    Emotion.JOY: ["happy", "excited", "great", "awesome", "love", "amazing", "😊", "😃", "🎉", "❤️"],
    Emotion.SADNESS: [
        "sad", "disappointed", "down", "depressed", "crying", "hopeless", "worthless",
        "nothing matters", "😢", "😭", "💔",
    ],
    Emotion.ANGER: ["angry", "mad", "furious", "annoyed", "hate", "frustrated", "😠", "😡", "🤬"],
    Emotion.FEAR: ["scared", "afraid", "worried", "anxious", "nervous", "terrified", "😨", "😰"],
    Emotion.SURPRISE: ["wow", "amazing", "unbelievable", "shocking", "incredible", "😲", "🤯", "😱"],
    Emotion.DISGUST: ["disgusting", "gross", "awful", "terrible", "horrible", "🤢", "🤮"],
    Emotion.NEUTRAL: ["okay", "fine", "normal", "regular", "standard"],
}

# Sign of the fallback score per label.
FALLBACK_POLARITY: Dict[Emotion, int] = {
    Emotion.JOY: 1,
    Emotion.SURPRISE: 1,
    Emotion.NEUTRAL: 0,
    Emotion.SADNESS: -1,
    Emotion.ANGER: -1,
    Emotion.FEAR: -1,
    Emotion.DISGUST: -1,
}


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def map_score_to_emotion(score: float, magnitude: float) -> Emotion:
    """
    Maps a provider (score, magnitude) pair onto one of the seven emotion labels.

    Low-signal text is neutral whatever its polarity; otherwise the score band picks
    the family and magnitude breaks the tie between adjacent labels.
    """
    if magnitude < LOW_SIGNAL_MAGNITUDE:
        return Emotion.NEUTRAL
    if score > STRONG_POSITIVE_SCORE:
        return Emotion.JOY if magnitude > HIGH_MAGNITUDE else Emotion.SURPRISE
    if score > POSITIVE_SCORE:
        return Emotion.JOY
    if score > NEGATIVE_SCORE:
        return Emotion.NEUTRAL
    if score > STRONG_NEGATIVE_SCORE:
        return Emotion.SADNESS if magnitude > SADNESS_MAGNITUDE else Emotion.FEAR
    return Emotion.ANGER if magnitude > HIGH_MAGNITUDE else Emotion.SADNESS


def confidence_for(score: float, magnitude: float) -> float:
    return round(min(magnitude * abs(score), 1.0), 3)


def classify_with_keywords(text: str) -> ClassificationResult:
    """
    Local keyword and emoji heuristic used whenever the provider is unavailable.
    The first label with the highest number of hits wins.
    """
    lowered = text.lower()
    best_emotion = Emotion.NEUTRAL
    best_hits = 0
    for emotion, keywords in FALLBACK_KEYWORDS.items():
        hits = sum(1 for keyword in keywords if keyword in lowered)
        if hits > best_hits:
            best_emotion, best_hits = emotion, hits

    if best_hits == 0:
        return ClassificationResult(
            emotion=Emotion.NEUTRAL,
            sentiment_score=0.0,
            magnitude=0.1,
            confidence=0.1,
            source=ClassifierSource.FALLBACK,
        )

    score = FALLBACK_POLARITY[best_emotion] * (0.3 + best_hits * 0.2)
    return ClassificationResult(
        emotion=best_emotion,
        sentiment_score=round(clamp(score, -1.0, 1.0), 3),
        magnitude=round(min(best_hits * 0.4, 1.0), 3),
        confidence=round(min(best_hits * 0.3, 0.8), 3),
        source=ClassifierSource.FALLBACK,
    )


def emotion_statistics(results: Iterable) -> EmotionStatistics:
    """Summarizes classifications or recorded samples into distribution percentages."""
    results = list(results)
    if not results:
        return EmotionStatistics(
            dominant=Emotion.NEUTRAL,
            distribution={emotion: 0.0 for emotion in Emotion},
            average_sentiment=0.0,
            total_analyzed=0,
        )
    counts = Counter(result.emotion for result in results)
    total = len(results)
    dominant = max(Emotion, key=lambda emotion: counts.get(emotion, 0))
    return EmotionStatistics(
        dominant=dominant,
        distribution={emotion: round(counts.get(emotion, 0) / total * 100, 2) for emotion in Emotion},
        average_sentiment=round(sum(result.sentiment_score for result in results) / total, 3),
        total_analyzed=total,
    )


class SentimentClassifier:
    """
    Classifier adapter over the Google Cloud Natural Language sentiment API.

    Provider calls run in a worker thread through a circuit breaker; any provider
    failure (missing key, transport error, timeout, bad status, malformed body or
    an open breaker) degrades to the keyword heuristic. `classify` only raises
    for empty input.
    """

    def __init__(
        self,
        api_key: str = GOOGLE_NLP_API_KEY,
        url: str = GOOGLE_NLP_URL,
        timeout: float = CLASSIFIER_TIMEOUT_SECONDS,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.url = url
        self.breaker = breaker or CircuitBreaker(
            fail_max=CLASSIFIER_BREAKER_FAIL_MAX,
            reset_timeout=CLASSIFIER_BREAKER_RESET_TIMEOUT,
            name="sentiment_provider",
        )
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self):
        self._client.close()

    def _analyze_sync(self, text: str) -> Tuple[float, float]:
        response = self._client.post(
            self.url,
            params={"key": self.api_key},
            json={"document": {"type": "PLAIN_TEXT", "content": text}, "encodingType": "UTF8"},
        )
        response.raise_for_status()
        sentiment = response.json().get("documentSentiment") or {}
        score = float(sentiment["score"])
        magnitude = float(sentiment["magnitude"])
        if not (math.isfinite(score) and math.isfinite(magnitude)):
            raise ClassifierUnavailable(f"Provider returned non-finite values: score={score}, magnitude={magnitude}")
        return score, magnitude

    async def analyze_with_provider(self, text: str) -> Tuple[float, float]:
        """Returns the raw (score, magnitude) pair or raises ClassifierUnavailable."""
        if not self.api_key:
            raise ClassifierUnavailable("No sentiment provider API key configured.")
        try:
            return await asyncio.to_thread(self.breaker.call, self._analyze_sync, text)
        except ClassifierUnavailable:
            raise
        except CircuitBreakerError as e:
            raise ClassifierUnavailable(f"Circuit breaker is open: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ClassifierUnavailable(f"Provider answered with status {e.response.status_code}") from e
        except Exception as e:
            raise ClassifierUnavailable(f"Provider call failed: {e!r}") from e

    async def classify(self, text: str) -> ClassificationResult:
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Text to classify must be a non-empty string.")

        try:
            score, magnitude = await self.analyze_with_provider(text)
        except ClassifierUnavailable as e:
            logger.warning(f"Sentiment provider unavailable, using keyword fallback. Reason: {e}")
            return classify_with_keywords(text)

        score = clamp(score, -1.0, 1.0)
        magnitude = max(0.0, magnitude)
        return ClassificationResult(
            emotion=map_score_to_emotion(score, magnitude),
            sentiment_score=score,
            magnitude=magnitude,
            confidence=confidence_for(score, magnitude),
            source=ClassifierSource.PRIMARY,
        )

    async def classify_many(self, texts: Iterable[str]) -> List[ClassificationResult]:
        return list(await asyncio.gather(*(self.classify(text) for text in texts)))
