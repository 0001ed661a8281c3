"""
Query API Endpoint

This module exposes the single entry point for learner queries. The request is turned
into an immutable `Query` and handed to the router, which processes it inside the
session's serialization scope.

Endpoints:
  - POST /query: Route a learner query and return the shaped response
"""

import logging

from fastapi import APIRouter, Depends

from learnflow.runtime import Runtime, get_runtime
from learnflow.shared.models import Query, QueryRequest
from learnflow.shared.utils import generate_query_id

from .errors import HANDLED_EXCEPTIONS, response_for_exception

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/query")
async def submit_query(request: QueryRequest, runtime: Runtime = Depends(get_runtime)):
    """
    Route a learner query.

    Args:
        request (QueryRequest): session_id, user_id, text, optional code and language.

    Returns:
        dict: The response in its API shape (content, visualAids, detectedGaps, suggestions,
        warnings, mode, ...). Degraded responses still return 200 with a `warning` field.

    HTTP Status Codes:
        200: Response produced (possibly degraded, or a clarification)
        400: Invalid query (empty, too long, unsupported language)
        409: The session ended while the query was in flight
        502: Every required analyzer failed
        503: The session could not be created because the Session Store is unavailable
    """
    query = Query(
        id=generate_query_id(),
        session_id=request.session_id,
        text=request.text,
        code=request.code,
        language=request.language,
    )
    logger.info(f"[submit_query] Received query {query.id} for session {request.session_id}")
    try:
        response = await runtime.router.submit(query, request.user_id)
    except HANDLED_EXCEPTIONS as e:
        logger.warning(f"[submit_query] Query {query.id} failed: {type(e).__name__}: {e}")
        return response_for_exception(e)
    return response.to_api_response()
