from __future__ import annotations

"""Unified models namespace – contains both API (request/response) and DB models.

Call-sites can simply::

    from authserver.models import TokenResponse, AccessToken, AuditAction
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from authserver.models.db import AccessToken, AuthorizationCode, Client, Principal, RefreshToken
from authserver.models.scopes import GrantType, Scope, format_scope, parse_scope

# ---------------------------------------------------------------------------
# Authentication Models
# ---------------------------------------------------------------------------


@dataclass
class AuthContext:
    """Caller context from a validated bearer access token."""

    principal_id: str
    client_id: str
    scopes: list[str]
    username: str | None = None
    authorities: list[str] = field(default_factory=list)

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def has_all_scopes(self, *scopes: str) -> bool:
        return all(self.has_scope(scope) for scope in scopes)


@dataclass(frozen=True)
class TokenIntrospection:
    """Result of a successful ``check_token``."""

    principal_id: str
    client_id: str
    scope: list[str]
    expires_at: datetime
    username: str | None = None
    authorities: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AuditAction(str, Enum):
    """Standardized audit action types."""

    code_issue = "code.issue"
    code_reuse = "code.reuse"
    token_issue = "token.issue"
    token_refresh = "token.refresh"
    token_revoke = "token.revoke"
    token_check = "token.check"
    consent_deny = "consent.deny"
    login_success = "login.success"
    login_failure = "login.failure"
    principal_create = "principal.create"


class AuditStatus(str, Enum):
    success = "success"
    failure = "failure"
    denied = "denied"


# ---------------------------------------------------------------------------
# API Pydantic models
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    error: str = Field(..., examples=["invalid_grant"])
    error_description: str = Field(..., examples=["Invalid grant"])


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Seconds until the access token expires")
    refresh_token: Optional[str] = None
    scope: str


class IntrospectionResponse(BaseModel):
    active: bool = True
    principal_id: str
    user_name: Optional[str] = None
    client_id: str
    scope: str
    exp: int = Field(..., description="Expiry as a unix timestamp")
    authorities: List[str] = Field(default_factory=list)


class MeResponse(BaseModel):
    id: str
    username: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    authorities: List[str] = Field(default_factory=list)


class ServerMetadataResponse(BaseModel):
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    revocation_endpoint: str
    introspection_endpoint: str
    response_types_supported: List[str]
    grant_types_supported: List[str]
    token_endpoint_auth_methods_supported: List[str]


__all__ = [
    "AccessToken",
    "AuthContext",
    "AuditAction",
    "AuditStatus",
    "AuthorizationCode",
    "Client",
    "ErrorResponse",
    "GrantType",
    "IntrospectionResponse",
    "MeResponse",
    "Principal",
    "RefreshToken",
    "Scope",
    "ServerMetadataResponse",
    "TokenIntrospection",
    "TokenResponse",
    "format_scope",
    "parse_scope",
]
