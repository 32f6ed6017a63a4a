import json

from pydantic import ValidationError
from models.models import PipelineJob
from configuration.config import logger
from nats.errors import MsgAlreadyAckdError


async def process_message(msg, pipeline):
    """
    Processes a single pipeline job from NATS JetStream.

    Jobs are acknowledged whatever happens inside the pipeline: each stage logs its
    own failures, and a redelivery would only repeat side effects.
    """
    data = None
    try:
        data = json.loads(msg.data.decode())
        job = PipelineJob.model_validate(data)
        await pipeline.run(job)
        await msg.ack()

    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Validation or JSON decoding error: {e}. Message: {msg.data.decode(errors='replace')}")
        await msg.ack()

    except MsgAlreadyAckdError:
        trace_id = data.get('traceId', 'N/A') if isinstance(data, dict) else 'N/A'
        logger.warning(f"Pipeline job with traceId {trace_id} has already been acknowledged, probably by another replica.")

    except Exception as e:
        logger.error(f"Unexpected error processing pipeline job: {e!r}")
        await msg.ack()
