from errors.errors import TokenInvalid
from security.security import get_identity
from configuration.config import logger
from notifications.payloads import stringify
from notifications.registry import DeviceRegistry
from api.api import get_pipeline, get_repository, current_user
from fastapi import APIRouter, Depends, HTTPException, Request, status
from models.models import (
    CheckNotificationPayload,
    DispatchResult,
    Identity,
    RegisterTokenPayload,
    RemoveTokenPayload,
    SendNotificationPayload,
    TokenOutcome,
)

ADMIN_ROLE = "admin"

router = APIRouter(prefix="/v1/notifications", tags=["Notifications"])


def delivery_report(total_tokens: int, result: DispatchResult) -> dict:
    return {
        "totalTokens": total_tokens,
        "successCount": result.success_count,
        "failureCount": result.failure_count,
        "deactivatedTokens": len(result.tokens_with(TokenOutcome.INVALID_TOKEN)),
    }


@router.post("/token", status_code=status.HTTP_201_CREATED)
async def register_token(payload: RegisterTokenPayload, request: Request, identity: Identity = Depends(get_identity)):
    repository = get_repository(request)
    await current_user(identity, repository)
    try:
        device_token = await DeviceRegistry(repository).add_token(identity.user_id, payload.token, payload.device_type)
    except TokenInvalid as e:
        logger.warning(f"Rejected malformed device token from user {identity.user_id}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"status": "registered", "deviceType": device_token.device_type.value}


@router.delete("/token")
async def remove_token(payload: RemoveTokenPayload, request: Request, identity: Identity = Depends(get_identity)):
    removed = await DeviceRegistry(get_repository(request)).remove_token(identity.user_id, payload.token)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device token not found.")
    return {"status": "removed"}


@router.get("/tokens")
async def list_tokens(request: Request, identity: Identity = Depends(get_identity)):
    tokens = await DeviceRegistry(get_repository(request)).list_tokens(identity.user_id)
    return {
        "total": len(tokens),
        "active": sum(1 for entry in tokens if entry.is_active),
        "items": [
            {
                "tokenPreview": f"{entry.token[:12]}...",
                "deviceType": entry.device_type.value,
                "isActive": entry.is_active,
                "registeredAt": entry.registered_at.isoformat(),
                "lastUsedAt": entry.last_used_at.isoformat(),
            }
            for entry in tokens
        ],
    }


@router.post("/test")
async def send_test_notification(payload: CheckNotificationPayload, request: Request, identity: Identity = Depends(get_identity)):
    """Sends a notification to the caller's own active devices."""
    pipeline = get_pipeline(request)
    tokens = await pipeline.registry.active_tokens(identity.user_id)
    if not tokens:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No active device tokens found.")

    result = await pipeline.dispatcher.send(tokens, payload.title, payload.body, {"type": "test", "userId": identity.user_id})
    await pipeline.dispatcher.apply_feedback(result)
    logger.info(f"Test notification sent to user {identity.user_id}: {result.success_count}/{len(tokens)} delivered")
    return delivery_report(len(tokens), result)


@router.post("/send")
async def send_notification(payload: SendNotificationPayload, request: Request, identity: Identity = Depends(get_identity)):
    """
    Sends a custom notification to another user's devices. Restricted to callers
    whose token carries the admin role.
    """
    if identity.claims.get("role") != ADMIN_ROLE:
        logger.warning(f"User {identity.user_id} tried to send a notification without the admin role")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required.")

    repository = get_repository(request)
    pipeline = get_pipeline(request)
    target = await repository.get_user(payload.user_id)
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Target user not found.")
    if not target.push_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Target user has disabled push notifications.")

    tokens = await pipeline.registry.active_tokens(target.id)
    if not tokens:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Target user has no active device tokens.")

    data = stringify({**payload.data, "senderId": identity.user_id, "targetUserId": target.id})
    result = await pipeline.dispatcher.send(tokens, payload.title, payload.body, data)
    await pipeline.dispatcher.apply_feedback(result)
    logger.info(f"Notification from {identity.user_id} sent to user {target.id}: {result.success_count}/{len(tokens)} delivered")
    return delivery_report(len(tokens), result)
