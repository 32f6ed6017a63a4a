import asyncio
import httpx
import nats
import asyncpg
import redis.asyncio as redis

from clients.push import FcmPushClient
from messaging.messaging import RoomBroadcaster
from processing.pipeline import build_pipeline
from clients.classifier import SentimentClassifier
from processing.processing import process_message
from nats.js.api import ConsumerConfig, RetentionPolicy, StreamConfig
from nats.js.errors import BadRequestError
from database.database import ChatRepository
from database.schema import ensure_schema
from configuration.config import (
    logger,
    DATABASE_URL,
    NATS_URL,
    REDIS_URL,
    NATS_PIPELINE_SUBJECT,
    STREAM_NAME,
    DURABLE_NAME,
    PUSH_TIMEOUT_SECONDS,
)


async def ensure_stream(js):
    """Creates the pipeline work-queue stream, leaving an existing one untouched."""
    try:
        await js.add_stream(StreamConfig(
            name=STREAM_NAME,
            subjects=[NATS_PIPELINE_SUBJECT],
            retention=RetentionPolicy.WORK_QUEUE,
        ))
        logger.info(f"Stream '{STREAM_NAME}' created.")
    except BadRequestError as e:
        logger.info(f"Stream '{STREAM_NAME}' already exists or could not be changed: {e}")


async def main():
    """
    Main entry point for the emotion pipeline worker.

    Connects to PostgreSQL, NATS JetStream and Redis, subscribes to the pipeline
    subject and runs every job as its own task.
    """
    logger.info("Starting Emotion Pipeline Worker...")
    nc = None
    db_pool = None
    redis_client = None
    http_client = None
    classifier = None
    tasks = set()
    try:
        logger.info("Connecting to PostgreSQL...")
        db_pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=10)
        async with db_pool.acquire() as conn:
            await ensure_schema(conn)
        logger.info("PostgreSQL connection established.")

        logger.info(f"Connecting to NATS at {NATS_URL}...")
        nc = await nats.connect(NATS_URL, name="emotion_pipeline_worker")
        js = nc.jetstream()
        logger.info("NATS connection established.")

        redis_client = redis.from_url(REDIS_URL, encoding="utf-8", decode_responses=True)
        try:
            await redis_client.ping()
        except Exception as e:
            logger.error(f"Redis is unreachable: {e}. Support alerts will not be rate limited.")

        http_client = httpx.AsyncClient(timeout=PUSH_TIMEOUT_SECONDS)
        classifier = SentimentClassifier()
        pipeline = build_pipeline(
            ChatRepository(db_pool), classifier, FcmPushClient(http_client), redis_client, RoomBroadcaster(nc)
        )

        logger.info(f"Ensuring stream '{STREAM_NAME}' exists...")
        await ensure_stream(js)

        async def message_handler(msg):
            task = asyncio.create_task(process_message(msg, pipeline))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        await js.subscribe(
            subject=NATS_PIPELINE_SUBJECT,
            queue=DURABLE_NAME,
            cb=message_handler,
            config=ConsumerConfig(max_ack_pending=800),
        )
        logger.info(f"Waiting for messages on topic '{NATS_PIPELINE_SUBJECT}'...")
        await asyncio.Future()
    except Exception as e:
        logger.critical(f"A critical error occurred, shutting down worker: {e}")
    finally:
        if tasks:
            logger.info(f"Waiting for {len(tasks)} in-flight pipeline jobs...")
            await asyncio.gather(*tasks, return_exceptions=True)
        if nc and nc.is_connected:
            logger.info("Closing NATS connection...")
            await nc.close()
        if db_pool:
            logger.info("Closing PostgreSQL connection...")
            await db_pool.close()
        if redis_client:
            await redis_client.close()
        if http_client:
            await http_client.aclose()
        if classifier:
            classifier.close()


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Service manually terminated.")
