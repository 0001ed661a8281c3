"""
Collaborator interfaces for the orchestration core.

The core depends on four external systems it does not implement: a Code Analyzer
(parsing and line-level explanations), a Visual Generator (diagram rendering), a
Session Store and a Progress Store (durable storage). This module defines the
narrow contracts the rest of the codebase relies on, using Python's Abstract Base
Class (ABC) facilities. Concrete adapters for real systems implement these classes;
`provider_api.mock_client` ships deterministic in-memory implementations so the
service runs end to end without credentials or network access.

All methods are coroutines: calls to collaborators are the only points at which a
query may suspend, and each accepts the caller's deadline where the contract allows
the collaborator to bound its own work.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from learnflow.shared.deadline import Deadline
from learnflow.shared.models import AnalyzerError, ConceptualGap, GapKey, Session, VisualAid


class CollaboratorError(Exception):
    """Base exception for collaborator failures."""


class CollaboratorUnavailable(CollaboratorError):
    """The collaborator could not be reached or refused the request."""


class CollaboratorTimeout(CollaboratorError):
    """The collaborator did not answer within the deadline."""


class StoreUnavailable(CollaboratorUnavailable):
    """A Session Store or Progress Store operation failed."""


@dataclass
class CodeAnalysis:
    """
    Result returned by a Code Analyzer.

    Attributes:
        summary: One-paragraph description of what the code does.
        line_notes: Line-level explanations, in line order.
        findings: Problems spotted in the code; findings that name a concept become gap signals.
    """
    summary: str
    line_notes: List[str] = field(default_factory=list)
    findings: List[AnalyzerError] = field(default_factory=list)


class CodeAnalyzerClient(ABC):
    """Contract for the external Code Analyzer."""

    @abstractmethod
    async def analyze_code(self, code: str, language: Optional[str], deadline: Deadline) -> CodeAnalysis:
        """
        Parse and explain a code submission.

        Args:
            code (str): The learner's code.
            language (Optional[str]): Declared language, or None if unknown.
            deadline (Deadline): Remaining query budget.

        Returns:
            CodeAnalysis: Summary, line notes and findings.

        Raises:
            CollaboratorUnavailable, CollaboratorTimeout
        """
        raise NotImplementedError


class VisualGeneratorClient(ABC):
    """Contract for the external Visual Generator / Diagram Engine."""

    @abstractmethod
    async def render(self, description: str, deadline: Deadline) -> VisualAid:
        """
        Render a diagram for a textual description.

        Raises:
            CollaboratorUnavailable, CollaboratorTimeout
        """
        raise NotImplementedError


class SessionStore(ABC):
    """
    Contract for durable session persistence.

    The store is the source of truth across process restarts; every write carries a TTL.
    """

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        """Return the stored session or None when absent or expired. Raises StoreUnavailable."""
        raise NotImplementedError

    @abstractmethod
    async def put(self, session: Session, ttl_s: int) -> None:
        """Persist a snapshot of the session. Raises StoreUnavailable."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        """Remove the session. Raises StoreUnavailable."""
        raise NotImplementedError


class ProgressStore(ABC):
    """Contract for the durable learner-progress ledger."""

    @abstractmethod
    async def append_gap(self, user_id: str, gap: ConceptualGap) -> None:
        """Append (or supersede) the latest state of a gap. Raises StoreUnavailable."""
        raise NotImplementedError

    @abstractmethod
    async def list_gaps(self, user_id: str) -> List[ConceptualGap]:
        """Return the latest state of every gap recorded for the user."""
        raise NotImplementedError

    @abstractmethod
    async def mark_resolved(self, user_id: str, key: GapKey) -> None:
        """Mark a gap as resolved. Raises StoreUnavailable."""
        raise NotImplementedError
