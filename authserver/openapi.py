from __future__ import annotations

"""OpenAPI exposure helper – mounts /public/openapi.yaml on the public sub-app."""

from datetime import datetime, timezone

import yaml
from fastapi import FastAPI, Response, Request

__all__ = ["install_openapi_route"]


def install_openapi_route(app: FastAPI, *, source: FastAPI | None = None) -> None:  # noqa: D401
    """Attach a YAML OpenAPI exporter at ``/openapi.yaml`` on *app*.

    *source* is the application whose schema is exported (defaults to *app*);
    the main server mounts this on its public sub-app so the final path is
    ``/public/openapi.yaml`` while the document describes the main API.
    """
    schema_app = source or app

    @app.get("/openapi.yaml", include_in_schema=False)
    async def _openapi_yaml(_: Request) -> Response:  # noqa: D401, WPS430
        spec = schema_app.openapi()
        yaml_str = yaml.safe_dump(spec, sort_keys=False)
        date_comment = f"# generated: {datetime.now(timezone.utc).date().isoformat()}\n"
        return Response(
            content=date_comment + yaml_str,
            media_type="application/x-yaml",
            headers={"Cache-Control": "public, max-age=300"},
        )
