from configuration.config import logger, SUPPORT_COOLDOWN_SECONDS, NOTIFICATION_IDEMPOTENCY_TTL_SECONDS


class SupportAlertGuard:
    """
    Redis-backed de-duplication for support alerts.

    `claim` sets the alert's idempotency key and then the author's cooldown key,
    both with SET NX EX. A redis outage is logged and lets the alert through; the
    stored sample of a message is then the only guard, through its one-way support flag.
    """

    def __init__(self, redis_client, cooldown_seconds: int = SUPPORT_COOLDOWN_SECONDS, idempotency_ttl: int = NOTIFICATION_IDEMPOTENCY_TTL_SECONDS):
        self.redis_client = redis_client
        self.cooldown_seconds = cooldown_seconds
        self.idempotency_ttl = idempotency_ttl

    @staticmethod
    def cooldown_key(user_id: str) -> str:
        return f"support_cooldown:{user_id}"

    async def claim(self, user_id: str, idempotency_key: str) -> bool:
        if self.redis_client is None:
            return True
        try:
            if not await self.redis_client.set(idempotency_key, "1", nx=True, ex=self.idempotency_ttl):
                logger.info(f"Support alert '{idempotency_key}' was already attempted. Skipping.")
                return False
            if self.cooldown_seconds > 0 and not await self.redis_client.set(
                self.cooldown_key(user_id), idempotency_key, nx=True, ex=self.cooldown_seconds
            ):
                logger.info(f"User {user_id} is in support alert cooldown. Skipping.")
                return False
            return True
        except Exception as e:
            logger.error(f"Redis error while claiming support alert for user {user_id}: {e}. Allowing dispatch.")
            return True
