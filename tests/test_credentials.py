import logging
import textwrap

import pytest

from authserver.errors import InvalidCredentials, PrincipalConflict
from authserver.models import Principal
from authserver.oauth import CredentialVerifier, InMemoryPrincipalStore
from authserver.oauth.principals import load_principals_file
from authserver.utils.security_utils import verify_secret
from tests.conftest import PASSWORD, USERNAME


@pytest.fixture()
def verifier(principals) -> CredentialVerifier:
    return CredentialVerifier(principals)


def _audit_entries(caplog):
    return [r.extra for r in caplog.records if r.name == "authserver.audit"]


@pytest.mark.asyncio
async def test_authenticate_success(verifier, user, caplog):
    caplog.set_level(logging.INFO, logger="authserver")
    principal = await verifier.authenticate(USERNAME, PASSWORD)

    assert principal.id == user.id
    assert _audit_entries(caplog)[-1]["action"] == "login.success"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "username, password",
    [
        (USERNAME, "wrong"),
        ("nobody", PASSWORD),
        (USERNAME.upper(), PASSWORD),
        (USERNAME, ""),
        (None, None),
    ],
)
async def test_authenticate_failures_are_uniform(verifier, username, password, caplog):
    caplog.set_level(logging.INFO, logger="authserver")
    with pytest.raises(InvalidCredentials) as exc:
        await verifier.authenticate(username, password)

    assert exc.value.description == "Bad credentials"
    entry = _audit_entries(caplog)[-1]
    assert entry["action"] == "login.failure"
    assert entry["status"] == "failure"


@pytest.mark.asyncio
async def test_unknown_user_still_runs_a_comparison(verifier, monkeypatch):
    from authserver.utils import security_utils  # noqa: WPS433

    calls = []
    real = security_utils.verify_secret

    def _counting(raw, hashed):
        calls.append(hashed)
        return real(raw, hashed)

    monkeypatch.setattr(security_utils, "verify_secret", _counting)

    with pytest.raises(InvalidCredentials):
        await verifier.authenticate("nobody", PASSWORD)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_delegated_only_account_cannot_use_password(principals):
    principals.add(Principal(id="p-fb", username="U@facebook.com", password_hash=None, provider="facebook"))
    verifier = CredentialVerifier(principals)
    with pytest.raises(InvalidCredentials):
        await verifier.authenticate("U@facebook.com", "")


@pytest.mark.asyncio
async def test_register_principal_hashes_password(verifier, principals):
    created = await verifier.register_principal("alice", "s3cret", display_name="Alice", email="a@example.com")

    assert created.password_hash != "s3cret"
    assert verify_secret("s3cret", created.password_hash)
    assert (await principals.find_by_username("alice")).id == created.id
    assert (await verifier.authenticate("alice", "s3cret")).id == created.id


@pytest.mark.asyncio
async def test_register_principal_conflict(verifier):
    with pytest.raises(PrincipalConflict):
        await verifier.register_principal(USERNAME, "another")


def test_in_memory_store_rejects_taken_username(user):
    store = InMemoryPrincipalStore([user])
    with pytest.raises(PrincipalConflict):
        store.add(user.model_copy(update={"id": "other-id"}))


def test_load_principals_file(tmp_path):
    path = tmp_path / "seed.yaml"
    path.write_text(
        textwrap.dedent(
            """
            users:
              - username: alice
                password: wonderland
                display_name: Alice
              - id: fixed-id
                username: bob
                authorities: [ROLE_USER, ROLE_ADMIN]
            """
        )
    )

    alice, bob = load_principals_file(str(path))

    assert alice.id
    assert verify_secret("wonderland", alice.password_hash)
    assert alice.display_name == "Alice"
    assert bob.id == "fixed-id"
    assert bob.password_hash is None
    assert bob.authorities == ["ROLE_USER", "ROLE_ADMIN"]
