"""Registered client applications."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

import yaml

from authserver.errors import InvalidClient
from authserver.models import Client, GrantType, parse_scope
from authserver.settings import UPSTREAM_TIMEOUT_SECONDS
from authserver.utils.database import SupabaseRepository, insert_data, query_one
from authserver.utils.logger import logger
from authserver.utils.security_utils import hash_secret, verify_secret_async
from authserver.utils.utils import utc_now

CLIENTS_TABLE = "clients"


class ClientRegistry(ABC):
    # Bound on the bcrypt secret comparison
    _timeout: float = UPSTREAM_TIMEOUT_SECONDS

    @abstractmethod
    async def find_client(self, client_id: str) -> Client | None: ...

    @abstractmethod
    async def save(self, client: Client) -> Client:
        """Register a new client; raises ``ValueError`` when the id is taken."""

    async def validate_client(self, client_id: str | None, client_secret: str | None) -> Client:
        """Authenticate a client by id and secret.

        Every failure (unknown id, wrong secret, missing values) raises the same
        generic :class:`InvalidClient`.
        """
        client = await self.find_client(client_id) if client_id else None
        stored_hash = client.client_secret_hash if client else None

        matched = await verify_secret_async(client_secret or "", stored_hash, timeout=self._timeout)
        if client is None or not matched:
            logger.info("client.auth_failed", extra={"client_id": client_id})
            raise InvalidClient()
        return client

    @staticmethod
    def validate_redirect_uri(client: Client, uri: str | None) -> bool:
        # Exact string match only: no prefix, host or path-segment matching
        return bool(uri) and uri in client.redirect_uris

    @staticmethod
    def validate_scope(client: Client, requested: Iterable[str]) -> bool:
        return set(requested).issubset(client.scopes)

    @staticmethod
    def permits_grant(client: Client, grant_type: GrantType) -> bool:
        return grant_type.value in client.grant_types


class InMemoryClientRegistry(ClientRegistry):
    def __init__(self, clients: Iterable[Client] = (), *, timeout: float = UPSTREAM_TIMEOUT_SECONDS):
        self._timeout = timeout
        self._clients: dict[str, Client] = {}
        for client in clients:
            self.add(client)

    def add(self, client: Client) -> Client:
        if client.client_id in self._clients:
            raise ValueError(f"Client {client.client_id} already registered")
        self._clients[client.client_id] = client
        return client

    def remove(self, client_id: str) -> None:
        self._clients.pop(client_id, None)

    async def find_client(self, client_id: str) -> Client | None:
        client = self._clients.get(client_id)
        return client.model_copy() if client else None

    async def save(self, client: Client) -> Client:
        return self.add(client)


class SupabaseClientRegistry(SupabaseRepository, ClientRegistry):
    async def find_client(self, client_id: str) -> Client | None:
        row = await self._run("clients.find", query_one, CLIENTS_TABLE, match={"client_id": client_id})
        return Client(**row) if row else None

    async def save(self, client: Client) -> Client:
        result = await self._run("clients.save", insert_data, CLIENTS_TABLE, client.model_dump(mode="json"))
        if result == "duplicate":
            raise ValueError(f"Client {client.client_id} already registered")
        return client


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_client(
    client_id: str,
    client_secret: str,
    *,
    redirect_uris: Iterable[str],
    scopes: Iterable[str] | str,
    grant_types: Iterable[str] | None = None,
    auto_approve: bool = False,
    name: str | None = None,
    rounds: int | None = None,
) -> Client:
    """Return a :class:`Client` with its secret bcrypt-hashed."""
    kwargs = {"grant_types": list(grant_types)} if grant_types else {}
    return Client(
        client_id=client_id,
        client_secret_hash=hash_secret(client_secret, rounds),
        name=name,
        redirect_uris=list(redirect_uris),
        scopes=parse_scope(scopes),
        auto_approve=auto_approve,
        created_at=utc_now(),
        **kwargs,
    )


def load_clients_file(path: str) -> list[Client]:
    """Build clients from the ``clients:`` section of a YAML seed file.

    Example::

        clients:
          - client_id: c1
            client_secret: s1
            redirect_uris: [http://example.com]
            scopes: [read, write]
            auto_approve: true
    """
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    return [
        build_client(
            entry["client_id"],
            entry["client_secret"],
            redirect_uris=entry.get("redirect_uris") or [],
            scopes=entry.get("scopes") or [],
            grant_types=entry.get("grant_types"),
            auto_approve=bool(entry.get("auto_approve", False)),
            name=entry.get("name"),
        )
        for entry in data.get("clients") or []
    ]
