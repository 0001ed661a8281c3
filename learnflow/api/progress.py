"""
Progress API Endpoint

Read access to the durable learner model kept in the Progress Store.

Endpoints:
  - GET /users/{user_id}/progress: Every gap recorded for the learner, across sessions
"""

import logging

from fastapi import APIRouter, Depends

from learnflow.provider_api.base import StoreUnavailable
from learnflow.runtime import Runtime, get_runtime

from .errors import response_for_exception

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/users/{user_id}/progress")
async def get_progress(user_id: str, runtime: Runtime = Depends(get_runtime)):
    """
    Return the learner's gaps from the Progress Store.

    `pendingDeliveries` counts gap updates that have not reached the store yet (they are
    retried in the background), so a client can tell the list may be slightly behind.
    """
    try:
        gaps = await runtime.progress_store.list_gaps(user_id)
    except StoreUnavailable as e:
        logger.warning(f"[get_progress] Progress Store unavailable for {user_id}: {e}")
        return response_for_exception(e)
    return {
        "userId": user_id,
        "gaps": [gap.to_dict() for gap in gaps],
        "openGapCount": sum(1 for gap in gaps if gap.is_open),
        "pendingDeliveries": runtime.forwarder.pending_count,
    }
