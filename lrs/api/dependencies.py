from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Query, status

from lrs.core.errors import ValidationError
from lrs.models.actor import Actor
from lrs.services.lrs_service import LearningRecordService, learning_record_service

logger = logging.getLogger(__name__)


def get_service() -> LearningRecordService:
    """The process-wide service.  Routers depend on this, never on the import."""
    return learning_record_service


ServiceDep = Annotated[LearningRecordService, Depends(get_service)]


def require_agent(
    agent: Annotated[str, Query(description="xAPI agent object as JSON")],
) -> Actor:
    """Parse the ``agent`` query parameter the way xAPI clients send it."""
    try:
        actor = Actor.from_dict(agent)
    except ValidationError as e:
        logger.warning("Rejected agent parameter: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from None
    return actor


AgentDep = Annotated[Actor, Depends(require_agent)]


def optional_agent(
    agent: Annotated[str | None, Query(description="xAPI agent object as JSON")] = None,
) -> Actor | None:
    if agent is None:
        return None
    return require_agent(agent)
