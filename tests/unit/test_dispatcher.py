import pytest

from errors.errors import InvalidInput
from notifications.registry import DeviceRegistry
from notifications.dispatcher import NotificationDispatcher
from models.models import NotificationEvent, NotificationKind, TokenOutcome


@pytest.fixture
def registry(repository, clock):
    return DeviceRegistry(repository, clock=clock)


@pytest.mark.asyncio
async def test_partial_failure_counts_and_classifies_each_token(registry, push_client):
    # AAA: Arrange
    push_client.outcomes = {"B": TokenOutcome.INVALID_TOKEN}
    dispatcher = NotificationDispatcher(push_client, registry)

    # AAA: Act
    result = await dispatcher.send({"A", "B"}, "Title", "Body", {"type": "new_message"})

    # AAA: Assert
    assert result.success_count == 1
    assert result.failure_count == 1
    assert result.outcomes == {"A": TokenOutcome.SUCCESS, "B": TokenOutcome.INVALID_TOKEN}
    assert push_client.calls[0][0] == "multi"


@pytest.mark.asyncio
async def test_single_token_uses_single_send(registry, push_client):
    dispatcher = NotificationDispatcher(push_client, registry)

    result = await dispatcher.send(["A"], "Title", "Body")

    assert push_client.calls[0][0] == "single"
    assert result.outcomes == {"A": TokenOutcome.SUCCESS}


@pytest.mark.asyncio
async def test_empty_token_set_is_rejected(registry, push_client):
    dispatcher = NotificationDispatcher(push_client, registry)

    with pytest.raises(InvalidInput):
        await dispatcher.send(set(), "Title", "Body")
    assert push_client.calls == []


@pytest.mark.asyncio
async def test_provider_exception_marks_every_token_transient(registry, push_client):
    push_client.error = RuntimeError("provider down")
    dispatcher = NotificationDispatcher(push_client, registry)

    result = await dispatcher.send(["A", "B"], "Title", "Body")

    assert result.success_count == 0
    assert result.failure_count == 2
    assert set(result.outcomes.values()) == {TokenOutcome.TRANSIENT_FAILURE}


@pytest.mark.asyncio
async def test_fanout_prunes_invalid_tokens_and_keeps_transient_ones(registry, push_client, make_token):
    # AAA: Arrange
    ok, dead, flaky = make_token("ok"), make_token("dead"), make_token("flaky")
    await registry.add_token("bob", ok)
    await registry.add_token("bob", dead)
    await registry.add_token("carol", flaky)
    push_client.outcomes = {dead: TokenOutcome.INVALID_TOKEN, flaky: TokenOutcome.TRANSIENT_FAILURE}
    dispatcher = NotificationDispatcher(push_client, registry)
    event = NotificationEvent(kind=NotificationKind.NEW_MESSAGE, recipient_ids=["bob", "carol"], title="Alice", body="hi")

    # AAA: Act
    result = await dispatcher.fanout(event)

    # AAA: Assert
    assert result.success_count == 1
    assert result.failure_count == 2
    assert await registry.active_tokens_for(["bob", "carol"]) == {ok, flaky}


@pytest.mark.asyncio
async def test_fanout_without_tokens_never_calls_provider(registry, push_client):
    dispatcher = NotificationDispatcher(push_client, registry)
    event = NotificationEvent(kind=NotificationKind.SUPPORT, recipient_ids=["alice"], title="t", body="b")

    result = await dispatcher.fanout(event)

    assert result is None
    assert push_client.calls == []
