"""Resource-owner lookup and creation.

Principals are owned by the account store; the authorization server only ever
looks them up by id or username and creates them on first delegated login
(or through ``scripts/create_user.py``).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

import yaml

from authserver.errors import PrincipalConflict
from authserver.models import Principal
from authserver.utils.database import SupabaseRepository, insert_data, query_one
from authserver.utils.security_utils import hash_secret
from authserver.utils.utils import generate_uuid, utc_now

USERS_TABLE = "users"


class PrincipalStore(ABC):
    @abstractmethod
    async def find_by_id(self, principal_id: str) -> Principal | None: ...

    @abstractmethod
    async def find_by_username(self, username: str) -> Principal | None:
        """Exact, case-sensitive match."""

    @abstractmethod
    async def create(self, principal: Principal) -> Principal:
        """Persist a new principal; raises :class:`PrincipalConflict` on a taken username."""


class InMemoryPrincipalStore(PrincipalStore):
    def __init__(self, principals: Iterable[Principal] = ()):
        self._by_id: dict[str, Principal] = {}
        self._by_username: dict[str, str] = {}
        for principal in principals:
            self.add(principal)

    def add(self, principal: Principal) -> Principal:
        # No await between the check and the insert, so this is atomic on the loop
        if principal.username in self._by_username or principal.id in self._by_id:
            raise PrincipalConflict(principal.username)
        self._by_id[principal.id] = principal
        self._by_username[principal.username] = principal.id
        return principal.model_copy()

    async def find_by_id(self, principal_id: str) -> Principal | None:
        principal = self._by_id.get(principal_id)
        return principal.model_copy() if principal else None

    async def find_by_username(self, username: str) -> Principal | None:
        principal_id = self._by_username.get(username)
        return await self.find_by_id(principal_id) if principal_id else None

    async def create(self, principal: Principal) -> Principal:
        return self.add(principal)


class SupabasePrincipalStore(SupabaseRepository, PrincipalStore):
    """`users` table with a unique index on ``username``."""

    async def find_by_id(self, principal_id: str) -> Principal | None:
        row = await self._run("users.find_by_id", query_one, USERS_TABLE, match={"id": principal_id})
        return Principal(**row) if row else None

    async def find_by_username(self, username: str) -> Principal | None:
        row = await self._run("users.find_by_username", query_one, USERS_TABLE, match={"username": username})
        return Principal(**row) if row else None

    async def create(self, principal: Principal) -> Principal:
        result = await self._run("users.create", insert_data, USERS_TABLE, principal.model_dump(mode="json"))
        if result == "duplicate":
            raise PrincipalConflict(principal.username)
        return principal


def load_principals_file(path: str) -> list[Principal]:
    """Build principals from the ``users:`` section of a YAML seed file.

    Entries carry a plaintext ``password`` which is hashed here.
    """
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    principals = []
    for entry in data.get("users") or []:
        password = entry.pop("password", None)
        principals.append(
            Principal(
                id=entry.pop("id", None) or generate_uuid(),
                password_hash=hash_secret(password) if password else None,
                created_at=utc_now(),
                **entry,
            )
        )
    return principals
