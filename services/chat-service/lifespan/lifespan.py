import asyncpg
import httpx
import nats
import redis.asyncio as redis

from fastapi import FastAPI
from contextlib import asynccontextmanager
from clients.push import FcmPushClient
from database.schema import ensure_schema
from database.database import ChatRepository
from messaging.messaging import RoomBroadcaster
from processing.pipeline import build_pipeline
from clients.classifier import SentimentClassifier
from configuration.config import logger, DATABASE_URL, NATS_URL, REDIS_URL, PUSH_TIMEOUT_SECONDS


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager for service connections.
    """
    logger.info("Initializing service connections...")
    try:
        app.state.db_pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=10)
        async with app.state.db_pool.acquire() as conn:
            await ensure_schema(conn)
        app.state.repository = ChatRepository(app.state.db_pool)
        app.state.http_client = httpx.AsyncClient(timeout=PUSH_TIMEOUT_SECONDS)
        app.state.nats_conn = await nats.connect(NATS_URL, name="chat_service")
        app.state.broadcaster = RoomBroadcaster(app.state.nats_conn)
        app.state.redis_client = redis.from_url(REDIS_URL, encoding="utf-8", decode_responses=True)
        try:
            await app.state.redis_client.ping()
        except Exception as e:
            logger.error(f"Redis is unreachable: {e}. Support alerts will not be rate limited.")
        app.state.classifier = SentimentClassifier()
        app.state.pipeline = build_pipeline(
            app.state.repository, app.state.classifier, FcmPushClient(app.state.http_client),
            app.state.redis_client, app.state.broadcaster
        )
        logger.info("All connections were successfully established.")
        yield
    finally:
        logger.info("Closing service connections...")
        if hasattr(app.state, 'db_pool'):
            await app.state.db_pool.close()
        if hasattr(app.state, 'http_client'):
            await app.state.http_client.aclose()
        if hasattr(app.state, 'nats_conn') and app.state.nats_conn.is_connected:
            await app.state.nats_conn.close()
        if hasattr(app.state, 'redis_client'):
            await app.state.redis_client.close()
        if hasattr(app.state, 'classifier'):
            app.state.classifier.close()
        logger.info("All connections have been closed.")
