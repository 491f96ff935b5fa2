from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from lms_progress.services.completion_service import CompletionService
from lms_progress.services.sessions import session_registry

logger = logging.getLogger(__name__)


def require_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> str:
    """The acting learner, taken from the X-User-Id header.

    Identity is asserted by whatever sits in front of this service; a
    missing or blank header is a client error.
    """
    if x_user_id is None or not x_user_id.strip():
        logger.warning("Request rejected: missing X-User-Id")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-Id header is required",
        )
    return x_user_id.strip()


async def get_completion_session(
    user_id: Annotated[str, Depends(require_user_id)],
) -> AsyncIterator[CompletionService]:
    """The learner's CompletionService, leased for the request.

    Released after the response; an idle session is then evicted.
    """
    async with session_registry.lease(user_id) as session:
        yield session
