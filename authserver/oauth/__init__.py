"""OAuth 2.0 protocol core: credential checks, clients, grants and token storage."""

from authserver.oauth.clients import ClientRegistry, InMemoryClientRegistry, SupabaseClientRegistry, build_client
from authserver.oauth.credentials import CredentialVerifier
from authserver.oauth.delegated import (
    DelegatedLoginBridge,
    FacebookLogin,
    GoogleLogin,
    LoginMethod,
    NativeLogin,
    ProviderConfig,
    ProviderLogin,
)
from authserver.oauth.grants import AuthorizationRequest, GrantIssuer
from authserver.oauth.principals import InMemoryPrincipalStore, PrincipalStore, SupabasePrincipalStore
from authserver.oauth.server import AuthorizationServer, build_authorization_server, compose_server
from authserver.oauth.tokens import InMemoryTokenStore, SupabaseTokenStore, TokenStore

__all__ = [
    "AuthorizationRequest",
    "AuthorizationServer",
    "ClientRegistry",
    "CredentialVerifier",
    "DelegatedLoginBridge",
    "FacebookLogin",
    "GoogleLogin",
    "GrantIssuer",
    "InMemoryClientRegistry",
    "InMemoryPrincipalStore",
    "InMemoryTokenStore",
    "LoginMethod",
    "NativeLogin",
    "PrincipalStore",
    "ProviderConfig",
    "ProviderLogin",
    "SupabaseClientRegistry",
    "SupabasePrincipalStore",
    "SupabaseTokenStore",
    "TokenStore",
    "build_authorization_server",
    "compose_server",
]
