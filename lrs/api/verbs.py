"""Verb administration.

Custom verbs override built-ins of the same ID and take effect for every
statement appended after the change; stored statements are not rewritten.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from lrs.api.dependencies import ServiceDep

router = APIRouter(prefix="/v1/verbs", tags=["verbs"])

VerbIdQuery = Annotated[str, Query(alias="verbId", min_length=1)]


class VerbIn(BaseModel):
    verb_id: str
    category: str
    action: str
    description: str = ""


class VerbUpdateIn(BaseModel):
    category: str | None = None
    action: str | None = None
    description: str | None = None


@router.get("")
async def list_verbs(service: ServiceDep) -> dict[str, Any]:
    return service.list_verbs()


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_verb(body: VerbIn, service: ServiceDep) -> dict[str, Any]:
    entry = await service.add_custom_verb(
        body.verb_id,
        {"category": body.category, "action": body.action, "description": body.description},
    )
    return {"verbId": body.verb_id, **entry.to_dict()}


@router.get("/classify")
async def classify_verb(verb_id: VerbIdQuery, service: ServiceDep) -> dict[str, Any]:
    return {"verbId": verb_id, **service.classify_verb(verb_id).to_dict()}


@router.get("/custom")
async def get_custom_verb(verb_id: VerbIdQuery, service: ServiceDep) -> dict[str, Any]:
    entry = service.get_custom_verb(verb_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Custom verb not found",
        )
    return {"verbId": verb_id, **entry.to_dict()}


@router.put("/custom")
async def update_verb(
    verb_id: VerbIdQuery, body: VerbUpdateIn, service: ServiceDep
) -> dict[str, Any]:
    entry = await service.update_custom_verb(verb_id, body.model_dump(exclude_none=True))
    return {"verbId": verb_id, **entry.to_dict()}


@router.delete("/custom", status_code=status.HTTP_204_NO_CONTENT)
async def remove_verb(verb_id: VerbIdQuery, service: ServiceDep) -> None:
    await service.remove_custom_verb(verb_id)


@router.get("/stats")
async def verb_stats(service: ServiceDep) -> dict[str, Any]:
    return service.verb_stats.summary()
