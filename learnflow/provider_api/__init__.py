"""
provider_api package: collaborator interfaces and their in-memory implementations.

Included modules:
- base: Abstract contracts for the Code Analyzer, Visual Generator, Session Store
  and Progress Store, plus the shared collaborator error types.
- mock_client: Deterministic, in-memory implementations used for local development,
  tests, and demos.
"""

from .base import (
    CodeAnalysis,
    CodeAnalyzerClient,
    CollaboratorError,
    CollaboratorTimeout,
    CollaboratorUnavailable,
    ProgressStore,
    SessionStore,
    StoreUnavailable,
    VisualGeneratorClient,
)
from .mock_client import (
    InMemoryProgressStore,
    InMemorySessionStore,
    MockCodeAnalyzerClient,
    MockVisualGeneratorClient,
)

__all__ = [
    "CodeAnalysis",
    "CodeAnalyzerClient",
    "CollaboratorError",
    "CollaboratorTimeout",
    "CollaboratorUnavailable",
    "ProgressStore",
    "SessionStore",
    "StoreUnavailable",
    "VisualGeneratorClient",
    "InMemoryProgressStore",
    "InMemorySessionStore",
    "MockCodeAnalyzerClient",
    "MockVisualGeneratorClient",
]
