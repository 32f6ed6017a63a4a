import json
import nats

from models.models import PipelineJob
from configuration.config import logger, NATS_PIPELINE_SUBJECT, NATS_ROOM_SUBJECT_PREFIX


async def publish_pipeline_job(nc: nats.aio.client.Client, job: PipelineJob, subject: str = NATS_PIPELINE_SUBJECT) -> bool:
    """
    Queues a stored message for emotion processing on JetStream.

    The message id doubles as the JetStream de-duplication id, so a repeated
    publish of the same message inside the stream's duplicate window is dropped.
    """
    try:
        js = nc.jetstream()
        payload = json.dumps(job.model_dump(by_alias=True, mode="json")).encode()
        await js.publish(subject, payload, headers={"Nats-Msg-Id": job.message_id})
        logger.info(f"Background task: pipeline job for message {job.message_id} published to '{subject}', traceId: {job.trace_id}")
        return True
    except Exception as e:
        logger.error(f"Background task error: Failed to publish pipeline job for message {job.message_id}. Error: {e}")
        return False


def room_subject(room_id: str, event: str) -> str:
    return f"{NATS_ROOM_SUBJECT_PREFIX}.{room_id}.{event}"


class RoomBroadcaster:
    """
    Realtime fanout to the subscribers of a room over core NATS. Delivery is
    at-most-once; a failed publish is logged and dropped.
    """

    def __init__(self, nc: nats.aio.client.Client):
        self.nc = nc

    async def publish(self, room_id: str, event: str, payload: dict) -> bool:
        subject = room_subject(room_id, event)
        try:
            await self.nc.publish(subject, json.dumps(payload, default=str).encode())
            logger.info(f"Broadcast '{event}' to room {room_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to broadcast '{event}' to room {room_id}: {e}")
            return False
