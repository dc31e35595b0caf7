from __future__ import annotations

"""Persistence row models shared by the in-memory and Supabase backends.

Codes and tokens are keyed by the SHA-256 digest of their opaque value; the
plaintext ``value`` is only ever held in memory on the record returned to the
caller at issuance time and is excluded from serialisation.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

__all__ = [
    "Principal",
    "Client",
    "AuthorizationCode",
    "AccessToken",
    "RefreshToken",
]


class Principal(BaseModel):
    """Row in `users` – a resource owner."""

    id: str = Field(..., description="Stable principal identifier (UUID)")
    username: str = Field(..., description="Unique login name, exact match")
    display_name: Optional[str] = None
    email: Optional[str] = None
    password_hash: Optional[str] = Field(None, description="bcrypt hash; None for delegated-only accounts")
    authorities: List[str] = Field(default_factory=lambda: ["ROLE_USER"])
    provider: Optional[str] = Field(None, description="External provider that created the account")
    created_at: Optional[datetime] = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


class Client(BaseModel):
    """Row in `clients` – a registered client application."""

    client_id: str
    client_secret_hash: str = Field(..., description="bcrypt hash of the client secret")
    name: Optional[str] = None
    redirect_uris: List[str] = Field(default_factory=list, description="Exact-match allow-list")
    grant_types: List[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    scopes: List[str] = Field(default_factory=list)
    auto_approve: bool = Field(False, description="Skip the consent prompt")
    created_at: Optional[datetime] = None


class AuthorizationCode(BaseModel):
    """Row in `authorization_codes`."""

    code_id: str = Field(..., description="sha256(code) hex digest")
    principal_id: str
    client_id: str
    scope: List[str]
    redirect_uri: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False
    consumed_at: Optional[datetime] = None
    reuse_detected: bool = False
    value: Optional[str] = Field(None, exclude=True)


class AccessToken(BaseModel):
    """Row in `access_tokens`."""

    token_id: str = Field(..., description="sha256(token) hex digest")
    principal_id: str
    client_id: str
    scope: List[str]
    issued_at: datetime
    expires_at: datetime
    refresh_token_id: Optional[str] = None
    code_id: Optional[str] = Field(None, description="Authorization code the grant chain started from")
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    value: Optional[str] = Field(None, exclude=True)

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


class RefreshToken(BaseModel):
    """Row in `refresh_tokens`."""

    token_id: str = Field(..., description="sha256(token) hex digest")
    principal_id: str
    client_id: str
    scope: List[str]
    issued_at: datetime
    expires_at: Optional[datetime] = Field(None, description="None means the token never expires")
    code_id: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    value: Optional[str] = Field(None, exclude=True)

    def is_active(self, now: datetime) -> bool:
        if self.revoked:
            return False
        return self.expires_at is None or now < self.expires_at
