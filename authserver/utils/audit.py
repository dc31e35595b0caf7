"""Audit trail for credential lifecycle and login events.

Every event goes to the ``authserver.audit`` logger.  When the Supabase
backend is active the same record is also inserted into ``audit_logs``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from supabase import AsyncClient

from authserver.errors import UpstreamUnavailable
from authserver.models import AuditAction, AuditStatus
from authserver.settings import UPSTREAM_TIMEOUT_SECONDS
from authserver.utils.database import insert_data
from authserver.utils.logger import logger
from authserver.utils.security_utils import safe_upstream_call

AUDIT_TABLE = "audit_logs"

audit_logger = logger.getChild("audit")

_client_factory: Callable[[], Awaitable[AsyncClient]] | None = None


def persist_audit_events(client_factory: Callable[[], Awaitable[AsyncClient]] | None) -> None:
    """Route audit records to ``audit_logs`` as well (``None`` turns it off)."""
    global _client_factory
    _client_factory = client_factory


async def _insert_audit_row(entry: dict) -> None:
    async def _call():
        supabase = await _client_factory()
        return await insert_data(supabase, AUDIT_TABLE, entry)

    try:
        await safe_upstream_call(_call(), timeout=UPSTREAM_TIMEOUT_SECONDS, detail="audit_logs.insert")
    except UpstreamUnavailable as e:
        # Never let audit persistence break the main operation
        logger.warning(f"Failed to persist audit event: {e.description}", extra={"action": entry["action"]})


async def log_audit_event(
    action: AuditAction,
    status: AuditStatus = AuditStatus.success,
    principal_id: Optional[str] = None,
    client_id: Optional[str] = None,
    token_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """
    Record one structured audit event.

    Args:
        action: Standardized action type (AuditAction enum)
        status: Operation status (success/failure/denied)
        principal_id: Resource owner the event concerns (if known)
        client_id: Client application involved (if any)
        token_id: Digest of the code/token involved; never the raw value
        metadata: Additional structured data about the operation
    """
    audit_entry = {
        "action": action.value,
        "status": status.value,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    # Add optional fields only if provided
    if principal_id:
        audit_entry["principal_id"] = principal_id
    if client_id:
        audit_entry["client_id"] = client_id
    if token_id:
        audit_entry["token_id"] = token_id
    if metadata:
        audit_entry["metadata"] = metadata

    level = "info" if status == AuditStatus.success else "warning"
    getattr(audit_logger, level)(action.value, extra={"extra": audit_entry})

    if _client_factory is not None:
        await _insert_audit_row(audit_entry)
