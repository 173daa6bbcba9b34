"""Prometheus scrape endpoint.

Plain-text exposition format, e.g.:

  # TYPE lrs_statements_appended_total counter
  lrs_statements_appended_total 1432.0
  lrs_progress_derivations_total{outcome="updated"} 311.0

Restrict access at the ingress in production; request rates and
failure counts reveal more than a public caller should see.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
