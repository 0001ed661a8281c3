"""
shared/models.py

Common data models and type definitions used across the router, the analyzers,
the context window and the gap pipeline.

Domain values are plain dataclasses. Anything that is handed to an analyzer or
returned to a caller is frozen so it cannot be mutated after the fact: queries,
interactions, gaps and responses. The `Session` aggregate is the one mutable
structure, and it is only touched under its session lock. Request bodies for the
HTTP layer are Pydantic models at the bottom of this module.
"""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field

from .utils import normalize_concept


def utc_now() -> datetime.datetime:
    """Return the current timezone-aware UTC timestamp."""
    return datetime.datetime.now(datetime.timezone.utc)


class Mode(Enum):
    """
    Session-scoped learning modes that shape every response.

    - EXAM: short, factual, no analogies
    - CONCEPT: expanded explanations with examples and analogies (default)
    - BUILD: code-first answers with a best-practices note
    """
    EXAM = "exam"
    CONCEPT = "concept"
    BUILD = "build"


class QueryType(Enum):
    """
    Query categories used to pick the analyzer plan for a query.

    Exactly one is assigned per query. When several signals are present the
    classifier applies `QUERY_TYPE_PRECEDENCE`.
    """
    CODE_ANALYSIS = "code_analysis"
    VISUAL_REQUEST = "visual_request"
    GAP_ASSESSMENT = "gap_assessment"
    CONCEPT_QUESTION = "concept_question"
    GENERAL_QUESTION = "general_question"


# Fixed tie-break order, highest first
QUERY_TYPE_PRECEDENCE: Tuple[QueryType, ...] = (
    QueryType.CODE_ANALYSIS,
    QueryType.VISUAL_REQUEST,
    QueryType.GAP_ASSESSMENT,
    QueryType.CONCEPT_QUESTION,
    QueryType.GENERAL_QUESTION,
)


class Severity(Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def bumped(self) -> "Severity":
        """Return the next severity level, saturating at CRITICAL."""
        return _SEVERITY_ORDER[min(self.rank + 1, len(_SEVERITY_ORDER) - 1)]

    @staticmethod
    def highest(*levels: "Severity") -> "Severity":
        return max(levels, key=lambda level: level.rank)


_SEVERITY_ORDER = (Severity.MINOR, Severity.MODERATE, Severity.CRITICAL)


class GapSource(Enum):
    EXPLANATION = "explanation"
    CODE = "code"
    QUIZ = "quiz"


class SignalStrength(Enum):
    """
    How strongly a gap signal indicates a misunderstanding.

    HINT comes from soft evidence (an AI review of code, a self-explanation),
    MISS from an explicit miss (a wrong quiz answer, a defect flagged by the code
    analyzer), SEVERE from a miss the analyzer marks as critical.
    """
    HINT = "hint"
    MISS = "miss"
    SEVERE = "severe"

    @property
    def baseline_severity(self) -> Severity:
        return {
            SignalStrength.HINT: Severity.MINOR,
            SignalStrength.MISS: Severity.MODERATE,
            SignalStrength.SEVERE: Severity.CRITICAL,
        }[self]


class EntryKind(Enum):
    INTERACTION = "interaction"
    SUMMARY = "summary"


class MentionKind(Enum):
    """Entity kinds that a back-reference such as "the code above" can point at."""
    CODE = "code"
    CONCEPT = "concept"


@dataclass(frozen=True)
class Query:
    """An immutable learner query as accepted by the router."""
    id: str
    session_id: str
    text: str
    code: Optional[str] = None
    language: Optional[str] = None
    timestamp: datetime.datetime = field(default_factory=utc_now)

    @property
    def has_code(self) -> bool:
        return bool(self.code and self.code.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'text': self.text,
            'code': self.code,
            'language': self.language,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class VisualAid:
    kind: str
    title: str
    source: str

    def to_dict(self) -> Dict[str, str]:
        return {'kind': self.kind, 'title': self.title, 'source': self.source}


@dataclass(frozen=True)
class GapKey:
    """
    Natural identity of a conceptual gap: the learner plus the normalized concept.

    Two detections of "Loop Termination" and "loop termination." for the same user
    produce equal keys, which is what makes repeated detections merge.
    """
    user_id: str
    concept: str

    @classmethod
    def of(cls, user_id: str, concept: str) -> "GapKey":
        return cls(user_id=user_id, concept=normalize_concept(concept))

    def __str__(self) -> str:
        return f"{self.user_id}:{self.concept}"


@dataclass(frozen=True)
class GapSignal:
    """Raw evidence from an analyzer that suggests a misunderstanding."""
    concept: str
    evidence: str
    source: GapSource
    strength: SignalStrength = SignalStrength.MISS
    related_concepts: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class ConceptualGap:
    """
    A categorized, severity-ranked misunderstanding in the learner model.

    Values are immutable; the gap pipeline replaces the ledger entry with an updated
    copy, so a reader never observes a half-merged gap.
    """
    key: GapKey
    category: str
    severity: Severity
    evidence: Tuple[str, ...]
    related_concepts: FrozenSet[str]
    detected_from: GapSource
    first_detected_at: datetime.datetime
    last_seen_at: datetime.datetime
    occurrences: int = 1
    resolved_at: Optional[datetime.datetime] = None

    @property
    def concept(self) -> str:
        return self.key.concept

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'concept': self.key.concept,
            'category': self.category,
            'severity': self.severity.value,
            'evidence': list(self.evidence),
            'relatedConcepts': sorted(self.related_concepts),
            'detectedFrom': self.detected_from.value,
            'occurrences': self.occurrences,
            'firstDetectedAt': self.first_detected_at.isoformat(),
            'lastSeenAt': self.last_seen_at.isoformat(),
            'resolvedAt': self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass(frozen=True)
class LearningRecommendation:
    title: str
    resources: Tuple[str, ...] = ()
    exercises: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {'title': self.title, 'resources': list(self.resources), 'exercises': list(self.exercises)}


@dataclass(frozen=True)
class AnalyzerError:
    """
    A finding reported by an analyzer about the learner's input (not a failure of the analyzer).

    Findings that name a concept are turned into code-sourced gap signals by the router.
    """
    code: str
    message: str
    concept: Optional[str] = None
    line: Optional[int] = None
    critical: bool = False


@dataclass
class ProcessorResult:
    """
    Output of a single analyzer for one query.

    Every analyzer returns this shape regardless of what it does internally, so the
    router can combine results without knowing which analyzer produced them.
    """
    analyzer: str
    content: str = ""
    visual_aids: List[VisualAid] = field(default_factory=list)
    gaps: List[GapSignal] = field(default_factory=list)
    errors: List[AnalyzerError] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ErrorPayload:
    """
    User-visible error or warning: `{error|warning: code, message, suggestion}`.

    Never carries stack traces or internal identifiers.
    """
    code: str
    message: str
    suggestion: str
    level: str = "warning"

    def to_dict(self) -> Dict[str, str]:
        return {self.level: self.code, 'message': self.message, 'suggestion': self.suggestion}


@dataclass(frozen=True)
class Response:
    """A response produced fresh for one query; never mutated after it is returned."""
    query_id: str
    mode: Mode
    content: str
    query_type: Optional[QueryType] = None
    visual_aids: Tuple[VisualAid, ...] = ()
    detected_gaps: Tuple[ConceptualGap, ...] = ()
    recommendations: Tuple[LearningRecommendation, ...] = ()
    suggestions: Tuple[str, ...] = ()
    warnings: Tuple[ErrorPayload, ...] = ()
    degraded: bool = False

    def to_api_response(self) -> Dict[str, Any]:
        """
        Render the response in the JSON shape returned by the HTTP layer.

        Returns:
            Dict[str, Any]: camelCase keys matching the frontend contract. When the response
            was degraded, the first warning is also exposed under a top-level `warning` key.
        """
        payload: Dict[str, Any] = {
            'queryId': self.query_id,
            'queryType': self.query_type.value if self.query_type else None,
            'mode': self.mode.value,
            'content': self.content,
            'visualAids': [aid.to_dict() for aid in self.visual_aids],
            'detectedGaps': [gap.to_dict() for gap in self.detected_gaps],
            'recommendations': [recommendation.to_dict() for recommendation in self.recommendations],
            'suggestions': list(self.suggestions),
            'warnings': [warning.to_dict() for warning in self.warnings],
            'degraded': self.degraded,
        }
        if self.warnings:
            payload['warning'] = self.warnings[0].to_dict()
        return payload


@dataclass(frozen=True)
class Interaction:
    """
    One entry of the context window.

    Regular entries hold the query and its response. A SUMMARY entry is the placeholder
    that replaces compacted older entries; it carries only `summary_text`.
    """
    query: Optional[Query]
    response: Optional[Response]
    timestamp: datetime.datetime = field(default_factory=utc_now)
    concepts: Tuple[str, ...] = ()
    kind: EntryKind = EntryKind.INTERACTION
    summary_text: Optional[str] = None

    @classmethod
    def summary(cls, text: str, concepts: Tuple[str, ...] = ()) -> "Interaction":
        return cls(query=None, response=None, concepts=concepts, kind=EntryKind.SUMMARY, summary_text=text)

    @property
    def text(self) -> str:
        """Plain text of the entry, used for token estimates and transcripts."""
        if self.kind is EntryKind.SUMMARY:
            return self.summary_text or ""
        parts = []
        if self.query is not None:
            parts.append(self.query.text)
            if self.query.code:
                parts.append(self.query.code)
        if self.response is not None:
            parts.append(self.response.content)
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'timestamp': self.timestamp.isoformat(),
            'concepts': list(self.concepts),
            'query': self.query.to_dict() if self.query else None,
            'response': self.response.to_api_response() if self.response else None,
            'summary': self.summary_text,
        }


@dataclass(frozen=True)
class ReferencedEntity:
    """Result of resolving a back-reference against the context window."""
    kind: MentionKind
    value: str
    query_id: Optional[str] = None
    language: Optional[str] = None


@dataclass
class Session:
    """
    Session aggregate: mode, bounded context window and gap ledger.

    Owned by the session manager; the router borrows it for one query under the
    session lock and must not keep a reference afterwards.
    """
    id: str
    user_id: str
    mode: Mode = Mode.CONCEPT
    context_window: List[Interaction] = field(default_factory=list)
    gap_ledger: Dict[GapKey, ConceptualGap] = field(default_factory=dict)
    created_at: datetime.datetime = field(default_factory=utc_now)
    last_activity_at: datetime.datetime = field(default_factory=utc_now)
    query_count: int = 0

    def touch(self) -> None:
        self.last_activity_at = utc_now()

    def open_gaps(self) -> List[ConceptualGap]:
        """Open gaps ordered by severity (highest first), then most recently seen."""
        gaps = [gap for gap in self.gap_ledger.values() if gap.is_open]
        return sorted(gaps, key=lambda gap: (-gap.severity.rank, -gap.last_seen_at.timestamp()))


@dataclass(frozen=True)
class SessionSummary:
    """Aggregate metrics kept after a session is torn down."""
    session_id: str
    user_id: str
    mode: Mode
    query_count: int
    gap_count: int
    created_at: datetime.datetime
    ended_at: datetime.datetime
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'mode': self.mode.value,
            'queryCount': self.query_count,
            'gapCount': self.gap_count,
            'createdAt': self.created_at.isoformat(),
            'endedAt': self.ended_at.isoformat(),
            'reason': self.reason,
        }


class QueryRequest(BaseModel):
    """
    Validate the body of POST /api/query.

    Structural checks only; semantic validation (supported language, size limits, empty
    queries) is done by the router so the same rules apply to every entry point.
    """
    session_id: str = Field(..., min_length=1, description="Session identifier")
    user_id: str = Field(..., min_length=1, description="Learner identifier")
    text: str = Field("", description="Query text")
    code: Optional[str] = Field(None, description="Optional code payload")
    language: Optional[str] = Field(None, description="Programming language of the code payload")


class ModeRequest(BaseModel):
    mode: str = Field(..., description="One of exam, concept, build")
    user_id: str = Field(..., min_length=1)


class ResolveGapRequest(BaseModel):
    concept: str = Field(..., min_length=1)
