import asyncio

import pytest

from authserver.errors import (
    InvalidClient,
    InvalidGrant,
    InvalidRedirectUri,
    InvalidScope,
    InvalidToken,
    TokenValueCollision,
    Unauthorized,
    UnauthorizedClient,
    UnsupportedResponseType,
)
from authserver.models import AuthorizationCode
from authserver.oauth import GrantIssuer, InMemoryTokenStore
from authserver.oauth.clients import build_client
from tests.conftest import (
    CLIENT_ID,
    CLIENT_SECRET,
    CONSENT_CLIENT_ID,
    CONSENT_CLIENT_SECRET,
    REDIRECT_URI,
)


async def _issue_pair(issuer, user, scope="read"):
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", scope, user)
    return await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_end_to_end_code_exchange_expiry_and_refresh(issuer, user, clock):
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    access, refresh = await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI)

    assert access.scope == ["read"]
    assert refresh is not None and refresh.value != access.value

    info = await issuer.check_token(access.value, True)
    assert info.scope == ["read"]
    assert info.client_id == CLIENT_ID
    assert info.principal_id == user.id
    assert info.username == user.username

    # valid iff now < issued_at + ttl: one tick past the window it is gone
    clock.advance(issuer.access_token_ttl)
    with pytest.raises(InvalidToken):
        await issuer.check_token(access.value, True)

    access2, _ = await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)
    assert access2.value != access.value
    assert access2.scope == ["read"]
    assert (await issuer.check_token(access2.value, True)).scope == ["read"]


@pytest.mark.asyncio
async def test_token_valid_until_just_before_expiry(issuer, user, clock):
    access, _ = await _issue_pair(issuer, user)
    clock.advance(issuer.access_token_ttl - 1)
    assert (await issuer.check_token(access.value, True)).client_id == CLIENT_ID


@pytest.mark.asyncio
async def test_scope_is_preserved_through_exchange(issuer, user):
    access, refresh = await _issue_pair(issuer, user, scope="write read")
    assert access.scope == ["read", "write"]
    assert refresh.scope == ["read", "write"]


@pytest.mark.asyncio
async def test_omitted_scope_defaults_to_client_allowance(issuer, user):
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", None, user)
    assert code.scope == ["read", "write"]


@pytest.mark.asyncio
async def test_values_are_never_stored(issuer, user, tokens):
    access, refresh = await _issue_pair(issuer, user)
    stored = await tokens.get_access_token(access.token_id)
    assert stored.value is None
    assert access.token_id != access.value
    assert len(access.value) >= 43


# ---------------------------------------------------------------------------
# Authorization request validation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_client_is_not_redirectable(issuer, user):
    with pytest.raises(InvalidClient) as exc:
        await issuer.authorize("nope", REDIRECT_URI, "code", "read", user)
    assert exc.value.redirect_uri is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "redirect_uri",
    [None, "http://evil.example", "http://example.com/callback", "http://example.com.evil.test", "https://example.com"],
)
async def test_redirect_uri_must_match_exactly(issuer, user, redirect_uri):
    with pytest.raises(InvalidRedirectUri) as exc:
        await issuer.authorize(CLIENT_ID, redirect_uri, "code", "read", user)
    assert exc.value.redirect_uri is None


@pytest.mark.asyncio
async def test_only_code_response_type(issuer, user):
    with pytest.raises(UnsupportedResponseType) as exc:
        await issuer.authorize(CLIENT_ID, REDIRECT_URI, "token", "read", user)
    assert exc.value.error == "unsupported_response_type"
    assert exc.value.redirect_uri == REDIRECT_URI


@pytest.mark.asyncio
async def test_scope_outside_allowance(issuer, user):
    with pytest.raises(InvalidScope) as exc:
        await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read admin", user)
    assert exc.value.redirect_uri == REDIRECT_URI


@pytest.mark.asyncio
async def test_client_without_code_grant(issuer, user, clients):
    clients.add(
        build_client(
            "refresh-only",
            "secret",
            redirect_uris=[REDIRECT_URI],
            scopes="read",
            grant_types=["refresh_token"],
        )
    )
    with pytest.raises(UnauthorizedClient):
        await issuer.authorize("refresh-only", REDIRECT_URI, "code", "read", user)


# ---------------------------------------------------------------------------
# Code exchange
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_second_exchange_fails_and_revokes_issued_tokens(issuer, user):
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    access, refresh = await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI)

    with pytest.raises(InvalidGrant):
        await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI)

    with pytest.raises(InvalidToken):
        await issuer.check_token(access.value, True)
    with pytest.raises(InvalidGrant):
        await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)


class _SlowWriteTokenStore(InMemoryTokenStore):
    """Yields on every token write, like a networked backend."""

    async def put(self, record):
        if not isinstance(record, AuthorizationCode):
            await asyncio.sleep(0.05)
        await super().put(record)


@pytest.mark.asyncio
@pytest.mark.parametrize("store_cls", [InMemoryTokenStore, _SlowWriteTokenStore])
async def test_concurrent_exchanges_leave_no_live_tokens(store_cls, clients, principals, user, clock):
    store = store_cls(clock=clock)
    issuer = GrantIssuer(clients, store, principals, clock=clock)
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)

    results = await asyncio.gather(
        *(issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI) for _ in range(2)),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, tuple)]
    failures = [r for r in results if isinstance(r, InvalidGrant)]
    assert len(successes) == 1
    assert len(failures) == 1

    # However the writes interleave, the reuse takes the winner's tokens down
    (access, refresh), = successes
    with pytest.raises(InvalidToken):
        await issuer.check_token(access.value, True)
    with pytest.raises(InvalidGrant):
        await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)
    issued = await store.find_by_principal_and_client(user.id, CLIENT_ID)
    assert len(issued) == 2
    assert all(record.revoked for record in issued)
    assert (await store.get_code(code.code_id)).reuse_detected is True


@pytest.mark.asyncio
async def test_exchange_after_reuse_flag_revokes_its_own_tokens(issuer, tokens, user):
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    # Reuse recorded between this exchange's consume and its final re-read
    await tokens.flag_code_reuse(code.code_id)

    access, _ = await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI)

    with pytest.raises(InvalidToken):
        await issuer.check_token(access.value, True)

    issued = await tokens.find_by_principal_and_client(user.id, CLIENT_ID)
    assert issued and all(record.revoked for record in issued)


@pytest.mark.asyncio
async def test_exchange_with_other_redirect_uri_fails(issuer, user, clients):
    client = await clients.find_client(CLIENT_ID)
    client.redirect_uris.append("http://example.com/other")
    clients.remove(CLIENT_ID)
    clients.add(client)

    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    with pytest.raises(InvalidGrant):
        await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, "http://example.com/other")
    with pytest.raises(InvalidGrant):
        await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, None)

    # Mismatch does not burn the code for its legitimate holder
    access, _ = await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI)
    assert access.scope == ["read"]


@pytest.mark.asyncio
async def test_expired_code(issuer, user, clock):
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    clock.advance(issuer.code_ttl)
    with pytest.raises(InvalidGrant):
        await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI)


@pytest.mark.asyncio
async def test_code_bound_to_issuing_client(issuer, user, clients):
    clients.add(build_client("c3", "s3", redirect_uris=[REDIRECT_URI], scopes="read"))
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    with pytest.raises(InvalidGrant):
        await issuer.exchange_code("c3", "s3", code.value, REDIRECT_URI)


@pytest.mark.asyncio
@pytest.mark.parametrize("client_id, secret", [(CLIENT_ID, "wrong"), ("ghost", CLIENT_SECRET), (None, None)])
async def test_bad_client_credentials_are_generic(issuer, user, client_id, secret):
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    with pytest.raises(InvalidClient) as exc:
        await issuer.exchange_code(client_id, secret, code.value, REDIRECT_URI)
    assert exc.value.description == InvalidClient.description


@pytest.mark.asyncio
async def test_unknown_code(issuer):
    with pytest.raises(InvalidGrant):
        await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, "not-a-code", REDIRECT_URI)


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_with_revoked_token(issuer, user, tokens):
    access, refresh = await _issue_pair(issuer, user)
    assert await tokens.revoke_refresh_token(refresh.token_id)

    with pytest.raises(InvalidGrant):
        await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)
    # access tokens minted from it went with it
    with pytest.raises(InvalidToken):
        await issuer.check_token(access.value, True)


@pytest.mark.asyncio
async def test_refresh_with_expired_token(clients, tokens, principals, user, clock):
    issuer = GrantIssuer(clients, tokens, principals, refresh_token_ttl=120, clock=clock)
    _, refresh = await _issue_pair(issuer, user)

    clock.advance(120)
    with pytest.raises(InvalidGrant):
        await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)


@pytest.mark.asyncio
async def test_refresh_token_without_expiry(clients, tokens, principals, user, clock):
    issuer = GrantIssuer(clients, tokens, principals, refresh_token_ttl=0, clock=clock)
    _, refresh = await _issue_pair(issuer, user)
    assert refresh.expires_at is None

    clock.advance(10 * 365 * 24 * 3600)
    access, _ = await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)
    assert access.scope == ["read"]


@pytest.mark.asyncio
async def test_refresh_by_another_client(issuer, user):
    _, refresh = await _issue_pair(issuer, user)
    with pytest.raises(InvalidGrant):
        await issuer.refresh(CONSENT_CLIENT_ID, CONSENT_CLIENT_SECRET, refresh.value)


@pytest.mark.asyncio
async def test_refresh_can_narrow_but_not_widen_scope(issuer, user):
    _, refresh = await _issue_pair(issuer, user, scope="read write")

    narrowed, _ = await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value, scope="read")
    assert narrowed.scope == ["read"]

    _, read_only = await _issue_pair(issuer, user, scope="read")
    with pytest.raises(InvalidScope):
        await issuer.refresh(CLIENT_ID, CLIENT_SECRET, read_only.value, scope="read write")


@pytest.mark.asyncio
async def test_refresh_reuses_token_when_rotation_is_off(issuer, user):
    assert issuer.rotate_refresh_tokens is False
    access, refresh = await _issue_pair(issuer, user)

    access2, refresh2 = await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)
    assert refresh2.value == refresh.value
    assert access2.refresh_token_id == refresh.token_id
    # the earlier access token is untouched
    assert (await issuer.check_token(access.value, True)).client_id == CLIENT_ID


@pytest.mark.asyncio
async def test_refresh_rotation(clients, tokens, principals, user, clock):
    issuer = GrantIssuer(clients, tokens, principals, rotate_refresh_tokens=True, clock=clock)
    _, refresh = await _issue_pair(issuer, user)

    access2, refresh2 = await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)
    assert refresh2.value != refresh.value
    assert access2.refresh_token_id == refresh2.token_id

    with pytest.raises(InvalidGrant):
        await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)
    await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh2.value)


@pytest.mark.asyncio
async def test_code_reuse_revokes_rotated_lineage(clients, tokens, principals, user, clock):
    issuer = GrantIssuer(clients, tokens, principals, rotate_refresh_tokens=True, clock=clock)
    code = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    _, refresh = await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI)
    access2, refresh2 = await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)

    with pytest.raises(InvalidGrant):
        await issuer.exchange_code(CLIENT_ID, CLIENT_SECRET, code.value, REDIRECT_URI)

    with pytest.raises(InvalidToken):
        await issuer.check_token(access2.value, True)
    with pytest.raises(InvalidGrant):
        await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh2.value)


# ---------------------------------------------------------------------------
# check_token
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_check_token_requires_authenticated_caller(issuer, user):
    access, _ = await _issue_pair(issuer, user)
    with pytest.raises(Unauthorized):
        await issuer.check_token(access.value, False)
    with pytest.raises(Unauthorized):
        await issuer.check_token("garbage", False)


@pytest.mark.asyncio
async def test_check_token_unknown_value(issuer):
    with pytest.raises(InvalidToken):
        await issuer.check_token("garbage", True)


@pytest.mark.asyncio
async def test_token_dies_with_its_client(issuer, user, clients):
    access, _ = await _issue_pair(issuer, user)
    clients.remove(CLIENT_ID)
    with pytest.raises(InvalidToken):
        await issuer.check_token(access.value, True)


@pytest.mark.asyncio
async def test_token_invalid_when_client_loses_scope(issuer, user, clients):
    access, _ = await _issue_pair(issuer, user, scope="read write")
    clients.remove(CLIENT_ID)
    clients.add(build_client(CLIENT_ID, CLIENT_SECRET, redirect_uris=[REDIRECT_URI], scopes="read"))
    with pytest.raises(InvalidToken):
        await issuer.check_token(access.value, True)


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_revoke_refresh_token_cascades(issuer, user):
    access, refresh = await _issue_pair(issuer, user)
    await issuer.revoke(CLIENT_ID, CLIENT_SECRET, refresh.value, "refresh_token")

    with pytest.raises(InvalidToken):
        await issuer.check_token(access.value, True)
    with pytest.raises(InvalidGrant):
        await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)


@pytest.mark.asyncio
async def test_revoke_access_token_only(issuer, user):
    access, refresh = await _issue_pair(issuer, user)
    await issuer.revoke(CLIENT_ID, CLIENT_SECRET, access.value)

    with pytest.raises(InvalidToken):
        await issuer.check_token(access.value, True)
    new_access, _ = await issuer.refresh(CLIENT_ID, CLIENT_SECRET, refresh.value)
    assert new_access.scope == ["read"]


@pytest.mark.asyncio
async def test_revoke_ignores_other_clients_tokens(issuer, user):
    access, _ = await _issue_pair(issuer, user)
    await issuer.revoke(CONSENT_CLIENT_ID, CONSENT_CLIENT_SECRET, access.value)
    assert (await issuer.check_token(access.value, True)).client_id == CLIENT_ID


@pytest.mark.asyncio
async def test_revoke_grants_sweeps_principal_and_client(issuer, user, tokens):
    first, _ = await _issue_pair(issuer, user)
    second, _ = await _issue_pair(issuer, user, scope="write")

    assert await issuer.revoke_grants(user.id, CLIENT_ID) == 4
    for access in (first, second):
        with pytest.raises(InvalidToken):
            await issuer.check_token(access.value, True)
    records = await tokens.find_by_principal_and_client(user.id, CLIENT_ID)
    assert records and all(r.revoked for r in records)


# ---------------------------------------------------------------------------
# Value generation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_collision_is_retried_with_fresh_value(clients, tokens, principals, user, clock):
    values = iter(["same", "same", "other"])
    issuer = GrantIssuer(clients, tokens, principals, clock=clock, token_factory=lambda: next(values))

    first = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    second = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)

    assert first.value == "same"
    assert second.value == "other"
    assert (await tokens.get_code(first.code_id)).principal_id == user.id


@pytest.mark.asyncio
async def test_collision_gives_up_after_max_attempts(clients, tokens, principals, user, clock):
    issuer = GrantIssuer(clients, tokens, principals, clock=clock, token_factory=lambda: "same")
    first = await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)

    with pytest.raises(TokenValueCollision):
        await issuer.authorize(CLIENT_ID, REDIRECT_URI, "code", "read", user)
    # the original record was not overwritten
    assert (await tokens.get_code(first.code_id)).consumed is False
