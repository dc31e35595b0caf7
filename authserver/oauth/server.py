"""Explicit composition of the authorization server components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

import httpx

from authserver import STORE_BACKEND
from authserver.errors import InvalidRequest
from authserver.models import Principal
from authserver.oauth.clients import (
    ClientRegistry,
    InMemoryClientRegistry,
    SupabaseClientRegistry,
    load_clients_file,
)
from authserver.oauth.credentials import CredentialVerifier
from authserver.oauth.delegated import (
    PROVIDER_CLASSES,
    DelegatedLoginBridge,
    LoginMethod,
    NativeLogin,
    ProviderLogin,
)
from authserver.oauth.grants import GrantIssuer
from authserver.oauth.principals import (
    InMemoryPrincipalStore,
    PrincipalStore,
    SupabasePrincipalStore,
    load_principals_file,
)
from authserver.oauth.tokens import InMemoryTokenStore, SupabaseTokenStore, TokenStore
from authserver.settings import OAUTH_CLIENTS_FILE, PROVIDER_CREDENTIALS, PUBLIC_BASE_URL, UPSTREAM_TIMEOUT_SECONDS
from authserver.utils.audit import persist_audit_events
from authserver.utils.dependencies import get_supabase_client
from authserver.utils.logger import logger
from authserver.utils.utils import utc_now


@dataclass
class AuthorizationServer:
    principals: PrincipalStore
    clients: ClientRegistry
    tokens: TokenStore
    verifier: CredentialVerifier
    issuer: GrantIssuer
    bridge: DelegatedLoginBridge
    login_methods: dict[str, LoginMethod] = field(default_factory=dict)

    async def complete_login(self, method_name: str, params: Mapping[str, Any]) -> Principal:
        method = self.login_methods.get(method_name)
        if method is None:
            raise InvalidRequest("Unknown login method")
        return await method.complete_login(params)


def compose_server(
    principals: PrincipalStore,
    clients: ClientRegistry,
    tokens: TokenStore,
    *,
    providers: Mapping[str, tuple[str, str]] | None = None,
    public_base_url: str = PUBLIC_BASE_URL,
    timeout: float = UPSTREAM_TIMEOUT_SECONDS,
    clock: Callable[[], datetime] = utc_now,
    transport: httpx.AsyncBaseTransport | None = None,
    **issuer_options,
) -> AuthorizationServer:
    """Wire the components together; every collaborator is passed explicitly."""
    verifier = CredentialVerifier(principals, timeout=timeout)
    issuer = GrantIssuer(clients, tokens, principals, clock=clock, **issuer_options)

    provider_methods: dict[str, ProviderLogin] = {}
    for name, (client_id, client_secret) in (providers or {}).items():
        cls = PROVIDER_CLASSES[name]
        provider_methods[name] = cls(
            cls.default_config(client_id, client_secret),
            principals,
            redirect_uri=f"{public_base_url}/login/{name}",
            timeout=timeout,
            transport=transport,
        )

    login_methods: dict[str, LoginMethod] = {"native": NativeLogin(verifier), **provider_methods}
    return AuthorizationServer(
        principals=principals,
        clients=clients,
        tokens=tokens,
        verifier=verifier,
        issuer=issuer,
        bridge=DelegatedLoginBridge(provider_methods),
        login_methods=login_methods,
    )


def build_authorization_server(backend: str = STORE_BACKEND) -> AuthorizationServer:
    """Build the server for the configured ``STORE_BACKEND``."""
    if backend == "memory":
        clients = load_clients_file(OAUTH_CLIENTS_FILE) if OAUTH_CLIENTS_FILE else []
        principals = load_principals_file(OAUTH_CLIENTS_FILE) if OAUTH_CLIENTS_FILE else []
        logger.info("server.memory_backend", extra={"clients": len(clients), "principals": len(principals)})
        return compose_server(
            InMemoryPrincipalStore(principals),
            InMemoryClientRegistry(clients),
            InMemoryTokenStore(),
            providers=PROVIDER_CREDENTIALS,
        )

    persist_audit_events(get_supabase_client)
    return compose_server(
        SupabasePrincipalStore(),
        SupabaseClientRegistry(),
        SupabaseTokenStore(),
        providers=PROVIDER_CREDENTIALS,
    )
