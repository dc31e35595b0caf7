"""OAuth 2.0 error taxonomy.

Every protocol failure raised by the core is an :class:`OAuthError`.  The
HTTP layer renders them with the RFC 6749 error body::

    {"error": "invalid_grant", "error_description": "..."}

Descriptions are deliberately coarse: nothing here may reveal whether a
username or client id exists, or which part of a secret check failed.
"""

from __future__ import annotations


class OAuthError(Exception):
    """Base class for protocol-level failures."""

    error = "server_error"
    status_code = 500
    description = "Internal server error"
    # Set once the client redirect URI is validated; the error can then be
    # reported to the client by redirect instead of to the browser.
    redirect_uri: str | None = None

    def __init__(self, description: str | None = None):
        self.description = description or type(self).description
        super().__init__(self.description)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}


# ---------------------------------------------------------------------------
# Request / client errors
# ---------------------------------------------------------------------------


class InvalidRequest(OAuthError):
    error = "invalid_request"
    status_code = 400
    description = "Invalid request"


class UnsupportedResponseType(InvalidRequest):
    error = "unsupported_response_type"
    description = "Only the authorization code flow is supported"


class UnsupportedGrantType(InvalidRequest):
    error = "unsupported_grant_type"
    description = "Unsupported grant type"


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = 401
    description = "Client authentication failed"


class UnauthorizedClient(InvalidClient):
    """Authenticated client is not allowed to use the requested grant."""

    error = "unauthorized_client"
    status_code = 400
    description = "Client is not authorized for this grant type"


class InvalidRedirectUri(OAuthError):
    error = "redirect_uri_mismatch"
    status_code = 400
    description = "Invalid redirect URI"


class InvalidScope(OAuthError):
    error = "invalid_scope"
    status_code = 400
    description = "Requested scope is not allowed"


class InvalidGrant(OAuthError):
    error = "invalid_grant"
    status_code = 400
    description = "Invalid grant"


class AccessDenied(OAuthError):
    error = "access_denied"
    status_code = 403
    description = "The resource owner denied the request"


# ---------------------------------------------------------------------------
# Token / caller errors
# ---------------------------------------------------------------------------


class InvalidToken(OAuthError):
    error = "invalid_token"
    status_code = 401
    description = "Token was not recognised"


class InsufficientScope(OAuthError):
    error = "insufficient_scope"
    status_code = 403
    description = "Token scope does not cover this resource"


class Unauthorized(OAuthError):
    error = "unauthorized"
    status_code = 401
    description = "Full authentication is required to access this resource"


# ---------------------------------------------------------------------------
# Authentication errors (rendered as a redirect back to the login page)
# ---------------------------------------------------------------------------


class InvalidCredentials(OAuthError):
    error = "invalid_credentials"
    status_code = 401
    description = "Bad credentials"


class DelegatedAuthFailed(OAuthError):
    error = "delegated_auth_failed"
    status_code = 401
    description = "External login failed"


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class UpstreamUnavailable(OAuthError):
    error = "temporarily_unavailable"
    status_code = 503
    description = "Upstream service unavailable, retry later"


class TokenValueCollision(RuntimeError):
    """A freshly generated code/token value already exists in the store."""


class PrincipalConflict(ValueError):
    """A principal with the same username already exists."""
