"""Protected resource endpoints served by this process."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from authserver.errors import InvalidToken
from authserver.models import AuthContext, MeResponse, Scope
from authserver.oauth.server import AuthorizationServer
from authserver.utils.auth import require_bearer
from authserver.utils.dependencies import get_authorization_server

router = APIRouter(tags=["resources"])


@router.get("/me", response_model=MeResponse)
async def me(
    auth: AuthContext = Depends(require_bearer(Scope.read.value)),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Return the resource owner the bearer token was issued for."""
    principal = await server.principals.find_by_id(auth.principal_id)
    if principal is None:
        raise InvalidToken()
    return MeResponse(
        id=principal.id,
        username=principal.username,
        display_name=principal.display_name,
        email=principal.email,
        authorities=principal.authorities,
    )
