"""
Session API Endpoints

Endpoints for the session-scoped state the router works with: the learning mode, the
context window and the gap ledger, plus explicit session teardown.

Endpoints:
  - PUT /sessions/{session_id}/mode: Switch the learning mode (applies to the next query)
  - GET /sessions/{session_id}/mode: Current learning mode
  - GET /sessions/{session_id}/context: Context window snapshot
  - POST /sessions/{session_id}/end: End the session and return its summary
  - GET /sessions/{session_id}/gaps: Gaps detected in this session
  - POST /sessions/{session_id}/gaps/resolve: Mark a gap as resolved
"""

import logging

from fastapi import APIRouter, Depends

from learnflow.core.modes import parse_mode
from learnflow.runtime import Runtime, get_runtime
from learnflow.shared.models import ModeRequest, ResolveGapRequest, Session

from .errors import HANDLED_EXCEPTIONS, not_found, response_for_exception

logger = logging.getLogger(__name__)

router = APIRouter()

SESSION_NOT_FOUND_HINT = "Send a query first to start a session."


@router.put("/sessions/{session_id}/mode")
async def set_mode(session_id: str, request: ModeRequest, runtime: Runtime = Depends(get_runtime)):
    """
    Switch the session's learning mode.

    The switch is synchronous and does not wait for an in-flight query; that query keeps
    the mode it was dispatched with, and the next one uses the new mode.
    """
    try:
        mode = parse_mode(request.mode)
        session = await runtime.sessions.get_or_create(session_id, request.user_id)
    except HANDLED_EXCEPTIONS as e:
        return response_for_exception(e)
    previous = runtime.modes.set_mode(session, mode)
    await runtime.sessions.persist(session)
    logger.info(f"[set_mode] Session {session_id}: {previous.value} -> {mode.value}")
    return {"sessionId": session_id, "mode": mode.value, "previousMode": previous.value}


@router.get("/sessions/{session_id}/mode")
async def get_mode(session_id: str, runtime: Runtime = Depends(get_runtime)):
    session = await runtime.sessions.get(session_id)
    if session is None:
        return not_found("The session", SESSION_NOT_FOUND_HINT)
    return {"sessionId": session_id, "mode": runtime.modes.current(session).value}


@router.get("/sessions/{session_id}/context")
async def get_context(session_id: str, runtime: Runtime = Depends(get_runtime)):
    session = await runtime.sessions.get(session_id)
    if session is None:
        return not_found("The session", SESSION_NOT_FOUND_HINT)
    window = runtime.context.window(session)
    return {
        "sessionId": session_id,
        "capacity": runtime.context.capacity,
        "estimatedTokens": runtime.context.estimated_tokens(session),
        "entries": [entry.to_dict() for entry in window],
    }


@router.post("/sessions/{session_id}/end")
async def end_session(session_id: str, runtime: Runtime = Depends(get_runtime)):
    """End the session: in-flight queries are cancelled and only aggregate metrics are kept."""
    summary = await runtime.sessions.end_session(session_id, reason="ended")
    if summary is None:
        return not_found("The session", SESSION_NOT_FOUND_HINT)
    return summary.to_dict()


@router.get("/sessions/{session_id}/gaps")
async def list_session_gaps(session_id: str, include_resolved: bool = False,
                            runtime: Runtime = Depends(get_runtime)):
    session = await runtime.sessions.get(session_id)
    if session is None:
        return not_found("The session", SESSION_NOT_FOUND_HINT)
    if include_resolved:
        gaps = sorted(session.gap_ledger.values(), key=lambda gap: (-gap.severity.rank, gap.concept))
    else:
        gaps = session.open_gaps()
    return {"sessionId": session_id, "gaps": [gap.to_dict() for gap in gaps]}


@router.post("/sessions/{session_id}/gaps/resolve")
async def resolve_gap(session_id: str, request: ResolveGapRequest, runtime: Runtime = Depends(get_runtime)):
    """Resolve an open gap. Runs under the session lock like any other ledger mutation."""
    session = await runtime.sessions.get(session_id)
    if session is None:
        return not_found("The session", SESSION_NOT_FOUND_HINT)

    async def work(locked_session: Session):
        return runtime.gaps.resolve(locked_session.user_id, locked_session, request.concept)

    try:
        resolved = await runtime.sessions.run(session_id, session.user_id, work)
    except HANDLED_EXCEPTIONS as e:
        return response_for_exception(e)
    if resolved is None:
        return not_found(f"An open gap for '{request.concept}'", "List the session's gaps to see their names.")
    return resolved.to_dict()
