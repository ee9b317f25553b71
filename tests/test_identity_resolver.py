import asyncio

import pytest

from favilla_api.models.account import AccountStatus, IdentityScheme
from favilla_api.services.identity import IdentityResolver, normalize_identity
from favilla_api.services.loyalty.errors import ConflictError, InvalidRequest, NotFound
from favilla_api.services.loyalty.ledger_store import LedgerStore


@pytest.mark.asyncio
async def test_resolve_creates_account_once(session_factory) -> None:
    async with session_factory() as session:
        resolver = IdentityResolver(session)
        first = await resolver.resolve("legacy", "1042")
        second = await resolver.resolve(IdentityScheme.LEGACY, " 1042 ")
        await session.commit()

        assert first == second
        cached = await LedgerStore(session).get_cached_balance(first)
        assert cached is not None
        assert cached.balance == 0


@pytest.mark.asyncio
async def test_lookup_does_not_create(session_factory) -> None:
    async with session_factory() as session:
        resolver = IdentityResolver(session)
        assert await resolver.lookup("authprovider", "auth0|ghost") is None


@pytest.mark.asyncio
async def test_concurrent_first_resolution_yields_one_account(session_factory) -> None:
    async def resolve_once() -> object:
        async with session_factory() as session:
            account_id = await IdentityResolver(session).resolve("authprovider", "auth0|race")
            await session.commit()
            return account_id

    results = await asyncio.gather(*(resolve_once() for _ in range(4)))
    assert len(set(results)) == 1


@pytest.mark.asyncio
async def test_link_attaches_second_identity(session_factory) -> None:
    async with session_factory() as session:
        resolver = IdentityResolver(session)
        account_id = await resolver.resolve("legacy", "77")
        await resolver.link(account_id, "authprovider", "auth0|maria")
        # linking the same pair again is a no-op
        await resolver.link(account_id, "authprovider", "auth0|maria")
        await session.commit()

        assert await resolver.resolve("authprovider", "auth0|maria") == account_id
        external_ids = await resolver.list_external_ids(account_id)
        assert {(item.scheme, item.external_id) for item in external_ids} == {
            (IdentityScheme.LEGACY, "77"),
            (IdentityScheme.AUTHPROVIDER, "auth0|maria"),
        }


@pytest.mark.asyncio
async def test_link_refuses_to_move_identity(session_factory) -> None:
    async with session_factory() as session:
        resolver = IdentityResolver(session)
        owner = await resolver.resolve("legacy", "501")
        other = await resolver.resolve("legacy", "502")
        await session.commit()

        with pytest.raises(ConflictError):
            await resolver.link(other, "legacy", "501")
        await session.rollback()

        assert await resolver.lookup("legacy", "501") == owner


@pytest.mark.asyncio
async def test_link_unknown_account(session_factory) -> None:
    from uuid import uuid4

    async with session_factory() as session:
        with pytest.raises(NotFound):
            await IdentityResolver(session).link(uuid4(), "legacy", "9")


@pytest.mark.asyncio
async def test_deactivated_account_still_resolves(session_factory) -> None:
    async with session_factory() as session:
        resolver = IdentityResolver(session)
        account_id = await resolver.resolve("legacy", "300")
        account = await resolver.deactivate(account_id, actor="ops")
        await session.commit()

        assert account.status == AccountStatus.INACTIVE
        assert account.deactivated_at is not None
        assert await resolver.resolve("legacy", "300") == account_id


@pytest.mark.parametrize(
    ("scheme", "external_id"),
    [
        ("email", "a@b.c"),
        ("legacy", "abc"),
        ("legacy", ""),
        ("legacy", "0"),
        ("legacy", "000"),
        ("legacy", "-29"),
        ("legacy", "\u00b2"),
        ("authprovider", "   "),
    ],
)
def test_normalize_identity_rejects_bad_input(scheme: str, external_id: str) -> None:
    with pytest.raises(InvalidRequest):
        normalize_identity(scheme, external_id)


def test_normalize_identity_trims_values() -> None:
    assert normalize_identity("legacy", 42) == (IdentityScheme.LEGACY, "42")
    assert normalize_identity("authprovider", " auth0|x ") == (IdentityScheme.AUTHPROVIDER, "auth0|x")
    assert normalize_identity("legacy", "0029") == (IdentityScheme.LEGACY, "29")


@pytest.mark.asyncio
async def test_zero_padded_legacy_id_resolves_to_same_account(session_factory) -> None:
    async with session_factory() as session:
        resolver = IdentityResolver(session)
        plain = await resolver.resolve("legacy", "29")
        padded = await resolver.resolve("legacy", "029")
        await session.commit()

        assert padded == plain
        assert [row.external_id for row in await resolver.list_external_ids(plain)] == ["29"]
