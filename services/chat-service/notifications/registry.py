import re

from typing import Callable, Iterable, List, Set
from errors.errors import TokenInvalid
from configuration.config import logger, MAX_TOKENS_PER_USER
from models.models import DeviceToken, DeviceType, utcnow

TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_:\-]+$")
MIN_TOKEN_LENGTH = 100


def validate_token_format(token: str) -> bool:
    """FCM registration tokens are long strings of URL-safe characters plus ':'."""
    return isinstance(token, str) and len(token) > MIN_TOKEN_LENGTH and bool(TOKEN_PATTERN.match(token))


class DeviceRegistry:
    """
    Maps users to their push tokens.

    Tokens are unique by value and capped per owner. Past capacity the tokens
    registered longest ago are evicted; re-adding a token counts as a new registration,
    while deliveries (`touch`) do not change its place. Tokens the push provider
    rejects are deactivated rather than deleted.
    """

    def __init__(self, repository, capacity: int = MAX_TOKENS_PER_USER, clock: Callable = utcnow):
        self.repository = repository
        self.capacity = capacity
        self.clock = clock

    async def add_token(self, owner_id: str, token: str, device_type: DeviceType = DeviceType.WEB) -> DeviceToken:
        if not validate_token_format(token):
            raise TokenInvalid("Device token is not a valid push registration token.")
        now = self.clock()
        device_token = DeviceToken(
            token=token, owner_id=owner_id, device_type=device_type,
            is_active=True, last_used_at=now, registered_at=now, created_at=now
        )
        await self.repository.upsert_device_token(device_token)

        owned = await self.repository.list_device_tokens([owner_id])
        others = [entry for entry in owned if entry.token != token]
        if len(others) >= self.capacity:
            ranked = sorted(
                enumerate(others),
                key=lambda pair: (pair[1].registered_at, pair[0]),
                reverse=True,
            )
            evicted = [entry.token for _, entry in ranked[self.capacity - 1:]]
            await self.repository.delete_device_tokens(evicted)
            logger.info(f"Evicted {len(evicted)} device tokens for user {owner_id} past capacity {self.capacity}")
        logger.info(f"Device token registered for user {owner_id} ({device_type.value})")
        return device_token

    async def active_tokens(self, owner_id: str) -> Set[str]:
        return await self.active_tokens_for([owner_id])

    async def active_tokens_for(self, owner_ids: Iterable[str]) -> Set[str]:
        owner_ids = list(owner_ids)
        if not owner_ids:
            return set()
        tokens = await self.repository.list_device_tokens(owner_ids, active_only=True)
        return {entry.token for entry in tokens}

    async def list_tokens(self, owner_id: str) -> List[DeviceToken]:
        return await self.repository.list_device_tokens([owner_id])

    async def mark_invalid(self, token: str) -> bool:
        updated = await self.repository.set_token_state(token, is_active=False)
        if updated:
            logger.info(f"Device token {token[:12]}... deactivated after an invalid-token response.")
        return updated

    async def touch(self, token: str) -> bool:
        return await self.repository.set_token_state(token, is_active=True, last_used_at=self.clock())

    async def remove_token(self, owner_id: str, token: str) -> bool:
        removed = await self.repository.delete_device_token(owner_id, token)
        if removed:
            logger.info(f"Device token removed for user {owner_id}")
        return removed
