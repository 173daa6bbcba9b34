"""xAPI statement and state endpoints used by course players.

  POST   /xapi/statements                 one statement or a list -> ids
  PUT    /xapi/statements?statementId=    store with a client-chosen id
  GET    /xapi/statements                 by id, or filtered page + cursor
  GET    /xapi/statements/by-activity     admin prefix scan
  GET    /xapi/statements/{statement_id}  one statement

  GET|PUT|POST|DELETE /xapi/activities/state

Authentication happens in front of this service; the actor comes from
the request itself.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel

from lrs.api.dependencies import AgentDep, ServiceDep, optional_agent
from lrs.models.actor import Actor

router = APIRouter(prefix="/xapi", tags=["xapi"])


class StatementResultOut(BaseModel):
    statements: list[dict[str, Any]]
    more: str = ""  # opaque cursor for the next page, empty when done


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------


@router.post("/statements", response_model=list[str])
async def post_statements(
    service: ServiceDep,
    body: Annotated[dict[str, Any] | list[dict[str, Any]], Body()],
) -> list[str]:
    if isinstance(body, list):
        return await service.append_statements(body)
    return [await service.append_statement(body)]


@router.put("/statements", status_code=status.HTTP_204_NO_CONTENT)
async def put_statement(
    service: ServiceDep,
    body: Annotated[dict[str, Any], Body()],
    statement_id: Annotated[str, Query(alias="statementId")],
) -> Response:
    await service.append_statement(body, statement_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/statements")
async def get_statements(
    service: ServiceDep,
    actor: Annotated[Actor | None, Depends(optional_agent)],
    statement_id: Annotated[str | None, Query(alias="statementId")] = None,
    activity: str | None = None,
    verb: str | None = None,
    registration: str | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 10,
    offset: Annotated[int, Query(ge=0)] = 0,
    cursor: str | None = None,
) -> Any:
    if statement_id:
        return await _statement_or_404(service, statement_id)

    page = await service.query_statements(
        agent=actor,
        activity=activity,
        verb=verb,
        registration=registration,
        limit=limit,
        offset=offset,
        cursor=cursor,
    )
    return StatementResultOut(statements=page.statements, more=page.cursor or "")


@router.get("/statements/by-activity", response_model=list[dict[str, Any]])
async def get_statements_by_activity(
    service: ServiceDep,
    activity_id: Annotated[str, Query(alias="activityId")],
    registration: str | None = None,
    limit: Annotated[int, Query(ge=1, le=5000)] = 100,
) -> list[dict[str, Any]]:
    return await service.query_statements_by_activity(
        activity_id, limit=limit, registration=registration
    )


@router.get("/statements/{statement_id:path}")
async def get_statement(service: ServiceDep, statement_id: str) -> dict[str, Any]:
    return await _statement_or_404(service, statement_id)


async def _statement_or_404(service: ServiceDep, statement_id: str) -> dict[str, Any]:
    statement = await service.get_statement(statement_id)
    if statement is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Statement not found",
        )
    return statement


# ---------------------------------------------------------------------------
# Activity state
# ---------------------------------------------------------------------------


@router.get("/activities/state")
async def get_state(
    service: ServiceDep,
    actor: AgentDep,
    activity_id: Annotated[str, Query(alias="activityId")],
    state_id: Annotated[str, Query(alias="stateId")],
    registration: str | None = None,
) -> Response:
    payload = await service.get_state(activity_id, actor, state_id, registration)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="State not found",
        )
    if isinstance(payload, bytes):
        return Response(content=payload, media_type="application/octet-stream")
    return Response(content=payload, media_type="text/plain; charset=utf-8")


@router.put("/activities/state", status_code=status.HTTP_204_NO_CONTENT)
@router.post("/activities/state", status_code=status.HTTP_204_NO_CONTENT)
async def put_state(
    request: Request,
    service: ServiceDep,
    actor: AgentDep,
    activity_id: Annotated[str, Query(alias="activityId")],
    state_id: Annotated[str, Query(alias="stateId")],
    registration: str | None = None,
) -> Response:
    # State is opaque: keep text as text, anything else as raw bytes
    raw = await request.body()
    try:
        payload: str | bytes = raw.decode("utf-8")
    except UnicodeDecodeError:
        payload = raw
    await service.save_state(activity_id, actor, state_id, payload, registration)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/activities/state", status_code=status.HTTP_204_NO_CONTENT)
async def delete_state(
    service: ServiceDep,
    actor: AgentDep,
    activity_id: Annotated[str, Query(alias="activityId")],
    state_id: Annotated[str, Query(alias="stateId")],
    registration: str | None = None,
) -> Response:
    await service.delete_state(activity_id, actor, state_id, registration)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
