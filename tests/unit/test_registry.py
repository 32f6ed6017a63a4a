import pytest

from errors.errors import TokenInvalid
from models.models import DeviceType
from notifications.registry import DeviceRegistry, validate_token_format


@pytest.mark.asyncio
async def test_capacity_keeps_the_five_most_recent_tokens(repository, clock, make_token):
    # AAA: Arrange
    registry = DeviceRegistry(repository, clock=clock)
    tokens = [make_token(f"device{i}") for i in range(8)]

    # AAA: Act
    for token in tokens:
        await registry.add_token("alice", token, DeviceType.ANDROID)

    # AAA: Assert
    remaining = {entry.token for entry in await registry.list_tokens("alice")}
    assert remaining == set(tokens[-5:])


@pytest.mark.asyncio
async def test_re_adding_a_token_does_not_duplicate_it(repository, clock, make_token):
    registry = DeviceRegistry(repository, clock=clock)
    token = make_token("phone")
    await registry.add_token("alice", token)
    first_seen = (await registry.list_tokens("alice"))[0].last_used_at
    await registry.mark_invalid(token)

    await registry.add_token("alice", token)

    entries = await registry.list_tokens("alice")
    assert len(entries) == 1
    assert entries[0].is_active is True
    assert entries[0].last_used_at > first_seen


@pytest.mark.asyncio
async def test_delivery_does_not_save_the_oldest_registration_from_eviction(repository, clock, make_token):
    # AAA: Arrange
    registry = DeviceRegistry(repository, clock=clock)
    tokens = [make_token(f"device{i}") for i in range(5)]
    for token in tokens:
        await registry.add_token("alice", token)
    await registry.touch(tokens[0])

    # AAA: Act
    await registry.add_token("alice", make_token("new"))

    # AAA: Assert
    remaining = {entry.token for entry in await registry.list_tokens("alice")}
    assert remaining == set(tokens[1:]) | {make_token("new")}


@pytest.mark.asyncio
async def test_re_adding_a_token_counts_as_a_new_registration(repository, clock, make_token):
    # AAA: Arrange
    registry = DeviceRegistry(repository, clock=clock)
    tokens = [make_token(f"device{i}") for i in range(5)]
    for token in tokens:
        await registry.add_token("alice", token)
    await registry.add_token("alice", tokens[0])

    # AAA: Act
    await registry.add_token("alice", make_token("new"))

    # AAA: Assert
    remaining = {entry.token for entry in await registry.list_tokens("alice")}
    assert tokens[0] in remaining
    assert tokens[1] not in remaining
    assert len(remaining) == 5


@pytest.mark.asyncio
async def test_token_moves_to_its_new_owner(repository, clock, make_token):
    registry = DeviceRegistry(repository, clock=clock)
    token = make_token("shared")
    await registry.add_token("alice", token)

    await registry.add_token("bob", token)

    assert await registry.active_tokens("alice") == set()
    assert await registry.active_tokens("bob") == {token}


@pytest.mark.asyncio
async def test_mark_invalid_deactivates_without_deleting(repository, clock, make_token):
    registry = DeviceRegistry(repository, clock=clock)
    good, bad = make_token("good"), make_token("bad")
    await registry.add_token("alice", good)
    await registry.add_token("alice", bad)

    await registry.mark_invalid(bad)

    assert await registry.active_tokens("alice") == {good}
    assert {entry.token for entry in await registry.list_tokens("alice")} == {good, bad}


@pytest.mark.asyncio
async def test_touch_reactivates_a_token(repository, clock, make_token):
    registry = DeviceRegistry(repository, clock=clock)
    token = make_token("tablet")
    await registry.add_token("alice", token)
    await registry.mark_invalid(token)

    await registry.touch(token)

    assert await registry.active_tokens("alice") == {token}


@pytest.mark.asyncio
async def test_active_tokens_for_many_owners(repository, clock, make_token):
    registry = DeviceRegistry(repository, clock=clock)
    await registry.add_token("bob", make_token("bob"))
    await registry.add_token("carol", make_token("carol"))
    await registry.add_token("dave", make_token("dave"))

    tokens = await registry.active_tokens_for(["bob", "carol"])

    assert tokens == {make_token("bob"), make_token("carol")}
    assert await registry.active_tokens_for([]) == set()


@pytest.mark.asyncio
async def test_remove_token_only_for_its_owner(repository, clock, make_token):
    registry = DeviceRegistry(repository, clock=clock)
    token = make_token("laptop")
    await registry.add_token("alice", token)

    assert await registry.remove_token("bob", token) is False
    assert await registry.remove_token("alice", token) is True
    assert await registry.list_tokens("alice") == []


@pytest.mark.parametrize("token, valid", [
    ("a" * 101, True),
    ("fcm-Token_123:" + "b" * 100, True),
    ("a" * 100, False),
    ("has spaces " + "c" * 100, False),
    ("", False),
])
def test_token_format(token, valid):
    assert validate_token_format(token) is valid


@pytest.mark.asyncio
async def test_malformed_tokens_are_refused(repository, clock):
    registry = DeviceRegistry(repository, clock=clock)

    with pytest.raises(TokenInvalid):
        await registry.add_token("alice", "not-a-token")
    assert await registry.list_tokens("alice") == []
