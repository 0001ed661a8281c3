"""
api/errors.py: user-visible error responses.

Every error returned by the HTTP layer uses the same payload shape,
`{"error": code, "message": ..., "suggestion": ...}`, with no stack traces or internal
identifiers. This module maps core exceptions onto that shape and an HTTP status code.
"""

import logging

from fastapi.responses import JSONResponse

from learnflow.core.exceptions import (
    DownstreamUnavailable,
    InvalidQuery,
    SessionEnded,
    SessionStoreUnavailable,
    UnsupportedMode,
)
from learnflow.provider_api.base import StoreUnavailable
from learnflow.shared.models import ErrorPayload

logger = logging.getLogger(__name__)


def error_response(status_code: int, code: str, message: str, suggestion: str) -> JSONResponse:
    payload = ErrorPayload(code=code, message=message, suggestion=suggestion, level="error")
    return JSONResponse(status_code=status_code, content=payload.to_dict())


def not_found(what: str, suggestion: str) -> JSONResponse:
    return error_response(404, "not_found", f"{what} was not found.", suggestion)


def response_for_exception(exc: Exception) -> JSONResponse:
    """
    Translate a core exception into a user-visible error response.

    Unknown exceptions are not handled here; they propagate to the framework.
    """
    if isinstance(exc, UnsupportedMode):
        return error_response(400, "unsupported_mode", str(exc), "Use one of: exam, concept, build.")
    if isinstance(exc, InvalidQuery):
        return error_response(400, "invalid_query", str(exc), "Check the query text, code and language, then resend.")
    if isinstance(exc, SessionEnded):
        return error_response(409, "session_ended", "This session has ended.", "Start a new session to continue.")
    if isinstance(exc, DownstreamUnavailable):
        return error_response(
            502, "service_unavailable", "The assistant could not answer right now.",
            "Try again in a moment, or rephrase the question.",
        )
    if isinstance(exc, (SessionStoreUnavailable, StoreUnavailable)):
        return error_response(
            503, "storage_unavailable", "Your session could not be saved, so the request was not processed.",
            "Try again in a moment.",
        )
    raise exc


HANDLED_EXCEPTIONS = (InvalidQuery, SessionEnded, DownstreamUnavailable, SessionStoreUnavailable, StoreUnavailable)
