"""
core/classifier.py

Query classification for analyzer routing.

This module provides the single source of truth for deciding which QueryType a learner
query belongs to. Classification is deterministic signal matching, not language
understanding: each query type has a small set of surface signals (a code payload,
visual-request phrasing, quiz-answer structure, question phrasing) that produce a
confidence score. Among the types whose score clears the configured threshold, the fixed
precedence order decides. Identical input always yields the identical type.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Optional

from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.shared.models import QUERY_TYPE_PRECEDENCE, Query, QueryType
from learnflow.shared.utils import count_words, has_code_block, has_quiz_structure

from .exceptions import ClassificationAmbiguous

logger = get_logger(__name__)

_VISUAL_RE = re.compile(
    r"\b(draw|diagram|visuali[sz]e|flow\s?chart|illustrate|sketch|picture of|chart of)\b", re.IGNORECASE
)
_SELF_CHECK_RE = re.compile(
    r"\b(check my (understanding|answer)|grade my answer|is my (answer|explanation) (right|correct)|am i right)\b",
    re.IGNORECASE,
)
_CONCEPT_RE = re.compile(
    r"^\s*(what (is|are)|explain|how (does|do)|why (does|do|is|are)|define|describe)\b|"
    r"\b(difference between|what does .+ mean|explain)\b",
    re.IGNORECASE,
)

_TOPIC_PATTERNS = (
    re.compile(r"(?:draw|diagram|visuali[sz]e|illustrate|sketch)\s+(?:me\s+)?(?:an?\s+|the\s+)?"
               r"(?:diagram\s+|flow\s?chart\s+|picture\s+)?(?:of\s+|for\s+|showing\s+)?(?P<topic>.+)", re.IGNORECASE),
    re.compile(r"(?:explain|define|describe)\s+(?:to me\s+)?(?P<topic>.+)", re.IGNORECASE),
    re.compile(r"what (?:is|are)\s+(?P<topic>.+)", re.IGNORECASE),
    re.compile(r"how (?:does|do)\s+(?P<topic>.+?)\s+work", re.IGNORECASE),
    re.compile(r"difference between\s+(?P<topic>.+)", re.IGNORECASE),
)
_LEADING_ARTICLE_RE = re.compile(r"^(a|an|the)\s+", re.IGNORECASE)

SIGNAL_SCORES = {
    'code': 1.0,
    'visual': 0.9,
    'quiz_structure': 0.85,
    'self_check': 0.7,
    'concept': 0.8,
    'question_mark': 0.6,
    'sentence': 0.55,
    'fragment': 0.3,
}


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one query."""
    query_type: QueryType
    confidence: float
    scores: Dict[QueryType, float] = field(default_factory=dict)
    topic: Optional[str] = None


def extract_topic(text: str) -> Optional[str]:
    """
    Pull the subject out of request phrasing.

    Examples:
        extract_topic("Explain recursion") -> "recursion"
        extract_topic("Draw a diagram of the binary search tree") -> "binary search tree"
        extract_topic("hello") -> None
    """
    first_line = (text or "").strip().splitlines()[0] if (text or "").strip() else ""
    for pattern in _TOPIC_PATTERNS:
        match = pattern.search(first_line)
        if match:
            topic = match.group("topic").strip().rstrip("?.!").strip()
            topic = _LEADING_ARTICLE_RE.sub("", topic)
            if topic:
                return topic[:80]
    return None


class QueryClassifier:
    """
    Deterministic query classifier.

    Responsibilities:
    - Score every QueryType from the surface signals present in the query
    - Pick exactly one type using `QUERY_TYPE_PRECEDENCE` among types above the threshold
    - Raise `ClassificationAmbiguous` when no type clears the threshold, so the router can
      ask the learner to clarify instead of guessing
    """

    def __init__(self, threshold: Optional[float] = None):
        self.threshold = float(threshold if threshold is not None else CONFIG["router"]["confidence_threshold"])
        logger.info("[QueryClassifier] Initialized with confidence threshold %.2f", self.threshold)

    def score(self, query: Query) -> Dict[QueryType, float]:
        """
        Compute a confidence per QueryType. Types with no signal are absent.

        Args:
            query (Query): The query to score.

        Returns:
            Dict[QueryType, float]: Scores in [0, 1].
        """
        text = query.text or ""
        scores: Dict[QueryType, float] = {}

        if query.has_code or has_code_block(text):
            scores[QueryType.CODE_ANALYSIS] = SIGNAL_SCORES['code']
        if _VISUAL_RE.search(text):
            scores[QueryType.VISUAL_REQUEST] = SIGNAL_SCORES['visual']
        if has_quiz_structure(text):
            scores[QueryType.GAP_ASSESSMENT] = SIGNAL_SCORES['quiz_structure']
        elif _SELF_CHECK_RE.search(text):
            scores[QueryType.GAP_ASSESSMENT] = SIGNAL_SCORES['self_check']
        if _CONCEPT_RE.search(text):
            scores[QueryType.CONCEPT_QUESTION] = SIGNAL_SCORES['concept']

        stripped = text.strip()
        if stripped.endswith("?"):
            scores[QueryType.GENERAL_QUESTION] = SIGNAL_SCORES['question_mark']
        elif count_words(stripped) >= 3:
            scores[QueryType.GENERAL_QUESTION] = SIGNAL_SCORES['sentence']
        elif stripped:
            scores[QueryType.GENERAL_QUESTION] = SIGNAL_SCORES['fragment']
        return scores

    def classify(self, query: Query) -> Classification:
        """
        Assign exactly one primary QueryType.

        Args:
            query (Query): The query to classify.

        Returns:
            Classification: Selected type, its confidence, all scores and the extracted topic.

        Raises:
            ClassificationAmbiguous: If no type clears the confidence threshold.
        """
        scores = self.score(query)
        for query_type in QUERY_TYPE_PRECEDENCE:
            confidence = scores.get(query_type, 0.0)
            if confidence >= self.threshold:
                result = Classification(
                    query_type=query_type,
                    confidence=confidence,
                    scores=scores,
                    topic=extract_topic(query.text),
                )
                logger.debug(
                    "[QueryClassifier] Classified query as %s (%.2f)", query_type.value, confidence,
                    extra={'query_id': query.id, 'session_id': query.session_id},
                )
                return result

        raise ClassificationAmbiguous(
            f"No query type reached confidence {self.threshold:.2f}",
            scores={query_type.value: value for query_type, value in scores.items()},
        )
