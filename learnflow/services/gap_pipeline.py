"""
services/gap_pipeline.py

Gap Aggregation Pipeline: turns raw gap signals into the learner model.

For every signal the pipeline:
1. Computes the natural key (user, normalized concept). An open gap with that key is
   merged: evidence appended, severity only ever raised, `last_seen_at` refreshed, and
   one extra severity level every `gaps.escalation_threshold` occurrences.
2. Otherwise creates a gap whose baseline severity comes from the signal strength
   (hint -> minor, miss -> moderate, severe -> critical).
3. Guarantees a category before the gap is surfaced: keyword taxonomy first, then the AI
   Service Layer with retries. A signal that still has no category is rejected.
4. Produces at least one learning recommendation for every created or escalated gap.
5. Forwards the finalized gap to the Progress Store without waiting for it.

The ledger is only written by a single synchronous assignment after every await for that
signal has completed, so a cancelled query never leaves a half-applied gap behind.
Severity is lowered only through `resolve`.
"""

import asyncio
import dataclasses
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.core.exceptions import GapCategorizationError
from learnflow.llm_cloud import AIService, AIServiceError
from learnflow.monitoring.metrics import ERROR_COUNT, GAPS_INGESTED
from learnflow.shared.deadline import Deadline
from learnflow.shared.models import (
    ConceptualGap,
    GapKey,
    GapSignal,
    LearningRecommendation,
    Session,
    Severity,
    utc_now,
)
from learnflow.shared.utils import dedupe_preserving_order, normalize_concept, safe_json_loads

from .progress_sync import ProgressForwarder

logger = get_logger(__name__)

CREATED = "created"
MERGED = "merged"
ESCALATED = "escalated"
REJECTED = "rejected"


@dataclass
class GapBatchResult:
    """
    Outcome of processing the gap signals of one query.

    `gaps` holds the finalized state of every gap touched, in first-touched order.
    `failures` lists the signals that were rejected or the internal error that stopped
    processing; an internal error always yields an explicit zero-gap result.
    """
    gaps: List[ConceptualGap] = field(default_factory=list)
    recommendations: List[LearningRecommendation] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class GapAggregationPipeline:
    """Deduplicates, categorizes, ranks and forwards conceptual gaps."""

    def __init__(
        self,
        ai_service: Optional[AIService] = None,
        forwarder: Optional[ProgressForwarder] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.config = config or CONFIG
        gaps_config = self.config["gaps"]
        self.ai = ai_service
        self.forwarder = forwarder
        self.escalation_threshold = max(1, int(gaps_config.get("escalation_threshold", 3)))
        self.categorization_retries = max(0, int(gaps_config.get("categorization_retries", 2)))
        self.max_evidence = int(gaps_config.get("max_evidence", 20))
        self.taxonomy: Dict[str, List[str]] = gaps_config.get("taxonomy", {})
        self.category_prompt = self.config["prompts"]["gap_category"]
        self.recommendation_prompt = self.config["prompts"]["gap_recommendation"]
        self._keyword_patterns = {
            category: [re.compile(rf"\b{re.escape(keyword.lower())}", re.IGNORECASE) for keyword in keywords]
            for category, keywords in self.taxonomy.items()
        }

    # --- Categorization ---

    def categorize_by_keyword(self, concept: str, related: Sequence[str] = ()) -> Optional[str]:
        """Return the first taxonomy category whose keywords occur in the concept (or its related concepts)."""
        for text in [concept, *related]:
            for category, patterns in self._keyword_patterns.items():
                if any(pattern.search(text) for pattern in patterns):
                    return category
        return None

    async def categorize(self, signal: GapSignal, deadline: Optional[Deadline] = None) -> str:
        """
        Assign a topic category to a signal.

        Raises:
            GapCategorizationError: When neither the taxonomy nor the AI Service Layer
                (after `categorization_retries` retries) yields a known category.
        """
        category = self.categorize_by_keyword(signal.concept, sorted(signal.related_concepts))
        if category:
            return category
        if self.ai is None or deadline is None:
            raise GapCategorizationError(f"No category for '{signal.concept}'")

        categories = list(self.taxonomy)
        prompt = self.category_prompt.format(
            categories=", ".join(categories), concept=signal.concept, evidence=signal.evidence,
        )
        last_error = "no valid category returned"
        for attempt in range(1 + self.categorization_retries):
            if deadline.expired:
                last_error = "deadline expired"
                break
            try:
                reply = await self.ai.complete(prompt, mode=None, max_tokens=20, deadline=deadline, model="utility")
            except AIServiceError as e:
                last_error = str(e)
                logger.warning("[GapPipeline] Categorization attempt %d failed: %s", attempt + 1, e)
                continue
            category = self._match_category(reply, categories)
            if category:
                return category
            logger.warning("[GapPipeline] Categorization attempt %d returned unknown category %r", attempt + 1, reply)
        raise GapCategorizationError(f"No category for '{signal.concept}': {last_error}")

    @staticmethod
    def _match_category(reply: str, categories: List[str]) -> Optional[str]:
        answer = normalize_concept(reply).replace(" ", "_")
        for category in categories:
            if answer == category:
                return category
        for category in categories:
            if category in answer:
                return category
        return None

    # --- Ingestion ---

    async def ingest(self, user_id: str, session: Session, signal: GapSignal,
                     deadline: Optional[Deadline] = None) -> ConceptualGap:
        """
        Merge one signal into the session's gap ledger.

        Args:
            user_id (str): The learner.
            session (Session): Session whose ledger is updated (caller holds the session lock).
            signal (GapSignal): The raw evidence.
            deadline (Optional[Deadline]): Budget for AI categorization.

        Returns:
            ConceptualGap: The gap as committed to the ledger.

        Raises:
            GapCategorizationError: If the signal names no concept or cannot be categorized.
        """
        gap, _ = await self._ingest(user_id, session, signal, deadline)
        return gap

    async def _ingest(self, user_id: str, session: Session, signal: GapSignal,
                      deadline: Optional[Deadline]) -> Tuple[ConceptualGap, str]:
        key = GapKey.of(user_id, signal.concept)
        if not key.concept:
            raise GapCategorizationError("Gap signal has no concept")

        related = frozenset(normalize_concept(item) for item in signal.related_concepts if normalize_concept(item))
        existing = session.gap_ledger.get(key)
        now = utc_now()

        if existing is not None and existing.is_open:
            occurrences = existing.occurrences + 1
            severity = Severity.highest(existing.severity, signal.strength.baseline_severity)
            if occurrences % self.escalation_threshold == 0:
                severity = severity.bumped()
            evidence = tuple(dedupe_preserving_order(existing.evidence + (signal.evidence,)))[-self.max_evidence:]
            gap = dataclasses.replace(
                existing,
                severity=severity,
                evidence=evidence,
                related_concepts=existing.related_concepts | (related - {key.concept}),
                last_seen_at=now,
                occurrences=occurrences,
            )
            outcome = ESCALATED if severity.rank > existing.severity.rank else MERGED
        else:
            category = await self.categorize(signal, deadline)
            now = utc_now()
            gap = ConceptualGap(
                key=key,
                category=category,
                severity=signal.strength.baseline_severity,
                evidence=(signal.evidence,),
                related_concepts=related - {key.concept},
                detected_from=signal.source,
                first_detected_at=now,
                last_seen_at=now,
            )
            outcome = CREATED

        session.gap_ledger[key] = gap
        GAPS_INGESTED.labels(outcome=outcome).inc()
        logger.info(
            "[GapPipeline] %s gap '%s' (%s, %s, x%d)", outcome, key.concept, gap.category,
            gap.severity.value, gap.occurrences, extra={'session_id': session.id, 'user_id': user_id},
        )
        return gap, outcome

    # --- Recommendations ---

    async def recommend(self, gap: ConceptualGap, deadline: Optional[Deadline] = None) -> List[LearningRecommendation]:
        """
        Produce learning recommendations for a gap. Never returns an empty list.

        The AI Service Layer is asked first; when it fails or returns nothing usable a
        generic recommendation built from the concept and category is substituted.
        """
        recommendations: List[LearningRecommendation] = []
        if self.ai is not None and deadline is not None and not deadline.expired:
            prompt = self.recommendation_prompt.format(
                severity=gap.severity.value,
                concept=gap.concept,
                category=gap.category,
                evidence="\n".join(f"- {item}" for item in gap.evidence[-5:]),
            )
            try:
                reply = await self.ai.complete(prompt, mode=None, max_tokens=300, deadline=deadline, model="utility")
                recommendations = self._parse_recommendations(reply)
            except AIServiceError as e:
                ERROR_COUNT.labels(type='gap_pipeline', location='recommend').inc()
                logger.warning("[GapPipeline] Recommendation generation failed for '%s': %s", gap.concept, e)
        return recommendations or [self.fallback_recommendation(gap)]

    @staticmethod
    def _parse_recommendations(reply: str) -> List[LearningRecommendation]:
        payload = safe_json_loads(reply, fallback={"recommendations": []})
        result = []
        for entry in payload.get("recommendations") or []:
            if not isinstance(entry, dict) or not str(entry.get("title") or "").strip():
                continue
            resources = entry.get("resources") or []
            exercises = entry.get("exercises") or []
            result.append(LearningRecommendation(
                title=str(entry["title"]).strip(),
                resources=tuple(str(item) for item in resources if str(item).strip()),
                exercises=tuple(str(item) for item in exercises if str(item).strip()),
            ))
        return result

    @staticmethod
    def fallback_recommendation(gap: ConceptualGap) -> LearningRecommendation:
        topic = gap.category.replace("_", " ")
        return LearningRecommendation(
            title=f"Review {gap.concept}",
            resources=(f"An introductory tutorial on {gap.concept} ({topic})",),
            exercises=(
                f"Write a small program that relies on {gap.concept} and explain each line.",
                f"Find the bug in an example where {gap.concept} is used incorrectly.",
            ),
        )

    # --- Batch processing ---

    async def process(self, user_id: str, session: Session, signals: Sequence[GapSignal],
                      deadline: Optional[Deadline] = None, query_id: Optional[str] = None) -> GapBatchResult:
        """
        Ingest a query's signals, recommend for new/escalated gaps, and forward them.

        Never raises (except cancellation). Rejected signals are listed in `failures`;
        an unexpected internal error returns an explicit zero-gap result.
        """
        result = GapBatchResult()
        touched: Dict[GapKey, ConceptualGap] = {}
        log_context = {'session_id': session.id, 'query_id': query_id, 'user_id': user_id}
        try:
            for signal in signals:
                try:
                    gap, outcome = await self._ingest(user_id, session, signal, deadline)
                except GapCategorizationError as e:
                    GAPS_INGESTED.labels(outcome=REJECTED).inc()
                    result.failures.append(str(e))
                    logger.warning("[GapPipeline] Rejected gap signal: %s", e, extra=log_context)
                    continue
                touched[gap.key] = gap
                if outcome in (CREATED, ESCALATED):
                    result.recommendations.extend(await self.recommend(gap, deadline))
                if self.forwarder is not None:
                    self.forwarder.forward(user_id, gap)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            ERROR_COUNT.labels(type='gap_pipeline', location='process').inc()
            logger.error("[GapPipeline] Gap processing failed: %s", e, exc_info=True, extra=log_context)
            return GapBatchResult(failures=[f"internal error: {type(e).__name__}"])

        result.gaps = list(touched.values())
        return result

    # --- Resolution ---

    def resolve(self, user_id: str, session: Session, concept: str) -> Optional[ConceptualGap]:
        """
        Mark an open gap as resolved. The only path that lowers a gap's standing.

        Returns:
            Optional[ConceptualGap]: The resolved gap, or None if no open gap matches.
        """
        key = GapKey.of(user_id, concept)
        existing = session.gap_ledger.get(key)
        if existing is None or not existing.is_open:
            return None
        resolved = dataclasses.replace(existing, resolved_at=utc_now())
        session.gap_ledger[key] = resolved
        if self.forwarder is not None:
            self.forwarder.forward_resolution(user_id, resolved)
        logger.info("[GapPipeline] Resolved gap '%s'", key.concept, extra={'session_id': session.id, 'user_id': user_id})
        return resolved
