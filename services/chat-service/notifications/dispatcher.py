from typing import Dict, Iterable, Optional
from errors.errors import DispatchFailed, InvalidInput
from configuration.config import logger
from models.models import DispatchResult, NotificationEvent, TokenOutcome


class NotificationDispatcher:
    """
    Sends notifications to sets of device tokens through the push provider and
    reports one outcome per token. Partial failure is still a completed send.
    Nothing is retried.
    """

    def __init__(self, push_client, registry):
        self.push_client = push_client
        self.registry = registry

    async def send(self, tokens: Iterable[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> DispatchResult:
        tokens = sorted(set(tokens))
        if not tokens:
            raise InvalidInput("Cannot dispatch a notification to an empty token set.")

        notification = {"title": title, "body": body}
        try:
            if len(tokens) == 1:
                outcomes = {tokens[0]: await self.push_client.send_to_token(tokens[0], notification, data)}
            else:
                outcomes = await self.push_client.send_to_tokens(tokens, notification, data)
        except Exception as e:
            error = DispatchFailed(f"Push provider failed for {len(tokens)} tokens: {e}")
            logger.error(str(error))
            outcomes = {token: TokenOutcome.TRANSIENT_FAILURE for token in tokens}

        success_count = sum(1 for outcome in outcomes.values() if outcome == TokenOutcome.SUCCESS)
        result = DispatchResult(
            success_count=success_count,
            failure_count=len(outcomes) - success_count,
            outcomes=outcomes,
        )
        logger.info(f"Dispatched '{title}' to {len(tokens)} tokens: {result.success_count} ok, {result.failure_count} failed")
        return result

    async def apply_feedback(self, result: DispatchResult):
        """Deactivates tokens the provider rejected and refreshes the ones that worked."""
        for token in result.tokens_with(TokenOutcome.INVALID_TOKEN):
            try:
                await self.registry.mark_invalid(token)
            except Exception as e:
                logger.error(f"Failed to deactivate invalid token {token[:12]}...: {e}")
        for token in result.tokens_with(TokenOutcome.SUCCESS):
            try:
                await self.registry.touch(token)
            except Exception as e:
                logger.error(f"Failed to refresh token {token[:12]}...: {e}")

    async def fanout(self, event: NotificationEvent) -> Optional[DispatchResult]:
        """
        Sends one event to every active device of its recipients.
        Returns None without calling the provider when nobody has an active device.
        """
        tokens = await self.registry.active_tokens_for(event.recipient_ids)
        if not tokens:
            logger.info(f"No active device tokens for {event.kind.value} notification to {len(event.recipient_ids)} recipients.")
            return None
        result = await self.send(tokens, event.title, event.body, event.data)
        await self.apply_feedback(result)
        return result
