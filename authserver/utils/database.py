"""Thin helpers around the Supabase (PostgREST) query builder."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from supabase import AsyncClient

from authserver.settings import UPSTREAM_TIMEOUT_SECONDS
from authserver.utils.dependencies import get_supabase_client
from authserver.utils.security_utils import safe_upstream_call

from .logger import logger


def _apply_filters(query, filters: dict | None):
    """Apply ``{column: value}`` / ``{column: (operator, value)}`` filters.

    Supported operators: 'eq', 'in', 'gt', 'lt', 'gte', 'lte', 'neq', 'is'.
    """
    for key, condition in (filters or {}).items():
        if isinstance(condition, tuple):
            operator, value = condition
            if operator == "in":
                query = query.in_(key, value)
            elif operator == "is":
                query = query.is_(key, value)
            elif operator == "gt":
                query = query.gt(key, value)
            elif operator == "lt":
                query = query.lt(key, value)
            elif operator == "gte":
                query = query.gte(key, value)
            elif operator == "lte":
                query = query.lte(key, value)
            elif operator == "neq":
                query = query.neq(key, value)
            elif operator == "eq":
                query = query.eq(key, value)
            else:
                raise ValueError(f"Unsupported filter operator: {operator}")
        else:
            query = query.eq(key, condition)
    return query


async def insert_data(supabase: AsyncClient, table_name: str, data: dict) -> Optional[str]:
    """Insert one row.

    Returns ``"duplicate"`` when a unique constraint rejected the row and
    ``None`` on success; any other error is logged and re-raised.
    """
    try:
        await supabase.table(table_name).insert(data).execute()
        return None
    except Exception as e:
        # supabase errors are badly structured and must cast to string and parsed
        if "duplicate" in str(e).lower():
            return "duplicate"
        logger.error(f"Error during insert to {table_name}: {e}")
        raise


async def query_data(
    supabase: AsyncClient,
    table_name: str,
    filters: dict | None = None,
    order_by: tuple | None = None,
    select_fields: str = "*",
    limit: Optional[int] = None,
):
    """
    Query a Supabase table with dynamic filters, ordering and limit.

    :param table_name: Name of the table to query.
    :param filters: Dictionary where keys are column names and values are filter conditions.
                     Use a tuple (operator, value) for non-equality filters.
    :param order_by: Tuple (column_name, desc) where desc=True means descending order.
    :param select_fields: Fields to select (default is "*").
    :param limit: Optional integer to limit the number of results.
    :return: Query result from Supabase.
    """
    query = _apply_filters(supabase.table(table_name).select(select_fields), filters)

    if order_by:
        column, desc = order_by
        query = query.order(column, desc=desc)

    if limit:
        query = query.limit(limit)

    return await query.execute()


async def update_data(
    supabase: AsyncClient,
    table_name: str,
    update_values: dict,
    filters: dict,
) -> list[dict[str, Any]]:
    """Update rows matching *filters* and return the rows that changed.

    PostgREST applies the filters and the update in one statement, so a filter
    on the current value (e.g. ``consumed = false``) turns this into an atomic
    compare-and-set: the returned list is empty when another writer won.
    """
    if not filters:
        raise ValueError(f"Refusing unfiltered update on {table_name}")
    try:
        query = _apply_filters(supabase.table(table_name).update(update_values), filters)
        resp = await query.execute()
    except Exception as e:
        logger.error(f"Error updating {table_name}: {e}")
        raise
    return getattr(resp, "data", None) or []


async def delete_data(supabase: AsyncClient, table_name: str, filters: dict) -> list[dict[str, Any]]:
    if not filters:
        raise ValueError(f"Refusing unfiltered delete on {table_name}")
    query = _apply_filters(supabase.table(table_name).delete(), filters)
    resp = await query.execute()
    return getattr(resp, "data", None) or []


async def query_one(
    supabase: AsyncClient,
    table_name: str,
    match: dict | None = None,
    order_by: tuple | None = None,
    select_fields: str = "*",
):
    """Return the first (or *None*) row that matches the filters."""
    resp = await query_data(
        supabase,
        table_name,
        filters=match or {},
        order_by=order_by,
        select_fields=select_fields,
        limit=1,
    )
    rows = getattr(resp, "data", None) or []
    return rows[0] if rows else None


async def query_many(
    supabase: AsyncClient,
    table_name: str,
    match: dict | None = None,
    order_by: tuple | None = None,
    select_fields: str = "*",
    limit: int | None = None,
):
    """Return a list of rows that match the filters (empty list if none)."""
    resp = await query_data(
        supabase,
        table_name,
        filters=match or {},
        order_by=order_by,
        select_fields=select_fields,
        limit=limit,
    )
    return getattr(resp, "data", None) or []


class SupabaseRepository:
    """Base for the Supabase-backed stores.

    Every call obtains the (per-loop cached) client and runs under
    :func:`safe_upstream_call`, so a slow or failing PostgREST request
    surfaces as ``UpstreamUnavailable`` instead of hanging the request.
    """

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[AsyncClient]] | None = None,
        *,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
    ):
        self._client_factory = client_factory or get_supabase_client
        self._timeout = timeout

    async def _run(self, detail: str, op: Callable[..., Awaitable[Any]], *args, **kwargs):
        async def _call():
            supabase = await self._client_factory()
            return await op(supabase, *args, **kwargs)

        return await safe_upstream_call(_call(), timeout=self._timeout, detail=detail)
