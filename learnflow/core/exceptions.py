"""
Exception taxonomy for the orchestration core.

Input errors are raised before any side effect and map to HTTP 400. Processing errors
are normally absorbed by the router and turned into degraded responses; the ones that
escape it (`DownstreamUnavailable`) map to HTTP 502. `SessionStoreUnavailable` at session
creation is the one fatal system condition.

AI Service Layer errors live in `learnflow.llm_cloud.service` next to the client that
raises them.
"""


class LearnflowError(Exception):
    """Base class for errors raised by the orchestration core."""


class InvalidQuery(LearnflowError):
    """
    The query is malformed or uses an unsupported language.

    Raised by the router before classification, so no session state is touched.
    """


class UnsupportedMode(InvalidQuery):
    """A mode name that is not one of exam, concept or build."""


class ClassificationAmbiguous(LearnflowError):
    """
    No query type cleared the confidence threshold.

    Carries the per-type scores so the router can log them and build a clarification.
    """

    def __init__(self, message: str, scores=None):
        super().__init__(message)
        self.scores = dict(scores or {})


class DownstreamUnavailable(LearnflowError):
    """Every required analyzer failed, or the deadline expired before any text was produced."""

    def __init__(self, message: str, failures=None):
        super().__init__(message)
        self.failures = dict(failures or {})


class GapCategorizationError(LearnflowError):
    """A gap signal could not be assigned a topic category after all retries."""


class SessionStoreUnavailable(LearnflowError):
    """The Session Store could not persist a new session, so no session exists to serve the query."""


class SessionEnded(LearnflowError):
    """The session was ended while a query for it was in flight."""
