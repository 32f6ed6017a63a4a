import uuid

from typing import Optional
from security.security import get_identity
from configuration.config import logger
from messaging.messaging import publish_pipeline_job
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from models.models import (
    ChatMessage,
    ChatRoom,
    CreateRoomPayload,
    Identity,
    PipelineJob,
    PreferencesPayload,
    RoomType,
    SendMessagePayload,
    default_display_name,
)

RECEIVE_MESSAGE_EVENT = "receive-message"

router = APIRouter()


def get_repository(request: Request):
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        logger.error("Service unavailable. Storage is not connected.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable. Could not connect to storage."
        )
    return repository


def get_pipeline(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        logger.error("Service unavailable. Emotion analysis is not configured.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable. Emotion analysis is not ready."
        )
    return pipeline


async def current_user(identity: Identity, repository):
    """Registers the caller on first sight and returns the stored user."""
    try:
        return await repository.ensure_user(
            identity.user_id, identity.display_name or default_display_name(identity.user_id), identity.email
        )
    except Exception as e:
        logger.error(f"Could not register user {identity.user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage is unavailable.")


async def load_room_for(repository, room_id: str, user_id: str) -> ChatRoom:
    try:
        room = await repository.get_room(room_id)
    except Exception as e:
        logger.error(f"Could not load room {room_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage is unavailable.")
    if room is None or user_id not in room.participant_ids:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat room not found.")
    return room


async def load_message_for(repository, message_id: str, user_id: str, sent_by_caller: bool = False) -> ChatMessage:
    """Returns a message visible to the caller: one of their own, or any message of a room they belong to."""
    try:
        message = await repository.get_message(message_id)
    except Exception as e:
        logger.error(f"Could not load message {message_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage is unavailable.")
    if message is None or (sent_by_caller and message.sender_id != user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found.")
    if message.sender_id != user_id:
        await load_room_for(repository, message.room_id, user_id)
    return message


@router.get("/healthz", status_code=status.HTTP_200_OK, tags=["Monitoring"])
async def health_check():
    """
    Health check endpoint to monitor the service status.
    """
    return {"status": "ok"}


@router.patch("/v1/users/me/preferences", tags=["Users"])
async def update_preferences(payload: PreferencesPayload, request: Request, identity: Identity = Depends(get_identity)):
    repository = get_repository(request)
    user = await current_user(identity, repository)
    push_enabled = user.push_enabled if payload.push_enabled is None else payload.push_enabled
    emotion_alerts = user.emotion_alerts if payload.emotion_alerts is None else payload.emotion_alerts
    await repository.update_user_preferences(user.id, push_enabled, emotion_alerts)
    return {"pushEnabled": push_enabled, "emotionAlerts": emotion_alerts}


@router.post("/v1/rooms", status_code=status.HTTP_201_CREATED, tags=["Rooms"])
async def create_room(payload: CreateRoomPayload, request: Request, identity: Identity = Depends(get_identity)):
    repository = get_repository(request)
    await current_user(identity, repository)

    participants = list(dict.fromkeys([identity.user_id, *payload.participant_ids]))
    if payload.type == RoomType.PRIVATE and len(participants) != 2:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Private rooms have exactly two participants.")

    room = ChatRoom(
        id=str(uuid.uuid4()),
        name=payload.name,
        type=payload.type,
        participant_ids=participants,
        settings=payload.settings,
        created_by=identity.user_id,
    )
    await repository.create_room(room)
    logger.info(f"Room {room.id} ({room.type.value}) created by user {identity.user_id} with {len(participants)} participants")
    return room.model_dump(by_alias=True, mode="json")


@router.get("/v1/rooms/{room_id}", tags=["Rooms"])
async def get_room(room_id: str, request: Request, identity: Identity = Depends(get_identity)):
    room = await load_room_for(get_repository(request), room_id, identity.user_id)
    return room.model_dump(by_alias=True, mode="json")


@router.post("/v1/rooms/{room_id}/messages", status_code=status.HTTP_201_CREATED, tags=["Messages"])
async def send_message(
    room_id: str,
    payload: SendMessagePayload,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_identity),
    x_request_id: Optional[str] = Header(None, alias="X-Request-ID")
):
    """
    Stores a chat message and answers as soon as it is durable.

    The room broadcast and the emotion pipeline job run as background tasks; their
    failures never reach the sender.
    """
    trace_id = x_request_id or str(uuid.uuid4())
    repository = get_repository(request)
    sender = await current_user(identity, repository)
    room = await load_room_for(repository, room_id, identity.user_id)

    message = ChatMessage(
        id=str(uuid.uuid4()),
        room_id=room.id,
        sender_id=sender.id,
        content=payload.content,
        message_type=payload.message_type,
    )
    try:
        await repository.insert_message(message)
    except Exception as e:
        logger.exception(f"Failed to store message in room {room_id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Message could not be stored. Please try again."
        )
    logger.info(f"Message {message.id} stored in room {room_id} by user {sender.id}, trace_id={trace_id}")

    message_body = message.model_dump(by_alias=True, mode="json")
    broadcaster = getattr(request.app.state, "broadcaster", None)
    if broadcaster is not None:
        background_tasks.add_task(
            broadcaster.publish, room.id, RECEIVE_MESSAGE_EVENT,
            {**message_body, "sender": {"id": sender.id, "displayName": sender.display_name}}
        )

    nc = getattr(request.app.state, "nats_conn", None)
    if nc is not None:
        job = PipelineJob(
            message_id=message.id,
            room_id=room.id,
            author_id=sender.id,
            text=message.content,
            message_type=message.message_type,
            created_at=message.created_at,
            trace_id=trace_id,
        )
        background_tasks.add_task(publish_pipeline_job, nc, job)
    else:
        logger.error(f"Messaging is not connected. Message {message.id} will not be analyzed.")

    return {"message": message_body, "traceId": trace_id}
