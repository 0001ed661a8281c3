"""
core/router.py

Query Router: the top of the orchestration core.

For one query, `route(query, session)`:
1. Validates the query (input errors are raised before any side effect)
2. Snapshots the session mode
3. Resolves back-references ("the code above", "that concept") against the context window
4. Classifies the query into exactly one QueryType
5. Fans the query out to the analyzers of that type's plan, concurrently, under the
   query deadline (10 s for text, 30 s when a visual is needed)
6. Combines analyzer results in priority order
7. Feeds gap signals (including concept-bearing analyzer findings) to the gap pipeline
8. Applies the mode snapshot to the combined content, once, last
9. Appends the interaction to the context window and compacts it if over budget

Ambiguous queries and unresolved references get a clarification response with no
dispatch. Analyzer failures degrade the response with a warning; only the failure of
every required analyzer (or no text at all) raises `DownstreamUnavailable`.
"""

import asyncio
import dataclasses
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from learnflow.analyzers.base import AnalysisContext, BaseAnalyzer
from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.llm_cloud import AIRateLimited, AITimeout
from learnflow.monitoring.metrics import DEGRADED_RESPONSES, ERROR_COUNT, QUERY_COUNT, QUERY_LATENCY
from learnflow.provider_api.base import CollaboratorTimeout
from learnflow.services.context_window import ContextWindowManager, find_mention
from learnflow.services.gap_pipeline import GapAggregationPipeline, GapBatchResult
from learnflow.services.session_manager import SessionManager
from learnflow.shared.deadline import Deadline
from learnflow.shared.models import (
    ErrorPayload,
    GapSignal,
    GapSource,
    Interaction,
    MentionKind,
    Mode,
    ProcessorResult,
    Query,
    QueryType,
    Response,
    Session,
    SignalStrength,
    VisualAid,
)
from learnflow.shared.utils import dedupe_preserving_order, has_code_block, truncate_message_for_logging

from .classifier import QueryClassifier
from .exceptions import ClassificationAmbiguous, DownstreamUnavailable, InvalidQuery
from .modes import ModeAdapter

logger = get_logger(__name__)

TIMEOUT = "timeout"
RATE_LIMITED = "rate_limited"
UNAVAILABLE = "unavailable"

MAX_SUGGESTIONS = 5

AMBIGUOUS_SUGGESTIONS = (
    'Ask about a concept, for example "explain recursion".',
    "Paste the code you want explained.",
    'Ask for a diagram, for example "draw a flowchart of binary search".',
    'Answer a quiz question as "Q: ... A: ...".',
)


@dataclass(frozen=True)
class PlanStep:
    analyzer: str
    required: bool = True


@dataclass
class FanOutResult:
    results: Dict[str, ProcessorResult]
    failures: Dict[str, str]


def failure_kind(error: BaseException) -> str:
    if isinstance(error, (AITimeout, CollaboratorTimeout, asyncio.TimeoutError)):
        return TIMEOUT
    if isinstance(error, AIRateLimited):
        return RATE_LIMITED
    return UNAVAILABLE


def failure_warning(analyzer: str, kind: str) -> ErrorPayload:
    """Genericized user-visible warning for a failed analyzer."""
    if analyzer == "visual":
        return ErrorPayload(
            code="visual_unavailable",
            message="The diagram could not be generated, so this answer is text only.",
            suggestion="Ask for the diagram again in a moment.",
        )
    if kind == TIMEOUT:
        return ErrorPayload(
            code="deadline_exceeded",
            message="Part of the answer took too long and was left out.",
            suggestion="Ask a narrower question for a faster, complete answer.",
        )
    if kind == RATE_LIMITED:
        return ErrorPayload(
            code="busy",
            message="The assistant is busy, so part of the answer was left out.",
            suggestion="Wait a few seconds and ask again.",
        )
    if analyzer == "code":
        return ErrorPayload(
            code="code_analysis_unavailable",
            message="The code could not be analyzed right now.",
            suggestion="Resubmit the code in a moment, or ask about a specific line.",
        )
    return ErrorPayload(
        code="partial_response",
        message="Part of the answer could not be produced.",
        suggestion="Ask again in a moment for a complete answer.",
    )


def load_plans(router_config: Dict[str, Any]) -> Dict[QueryType, Tuple[PlanStep, ...]]:
    plans = {}
    for query_type in QueryType:
        entries = router_config.get("plans", {}).get(query_type.value, [])
        plans[query_type] = tuple(
            PlanStep(analyzer=entry["analyzer"], required=bool(entry.get("required", True))) for entry in entries
        )
    return plans


class QueryRouter:
    """
    Central router that classifies queries and coordinates analyzers, modes, context and gaps.

    Responsibilities:
    - Query validation and classification
    - Concurrent analyzer fan-out under a deadline, with cancellation on expiry
    - Combining results and degrading gracefully on analyzer failures
    - Gap ingestion, mode application and context window maintenance
    """

    def __init__(
        self,
        analyzers: Dict[str, BaseAnalyzer],
        classifier: QueryClassifier,
        mode_adapter: ModeAdapter,
        context_manager: ContextWindowManager,
        gap_pipeline: GapAggregationPipeline,
        session_manager: Optional[SessionManager] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.config = config or CONFIG
        router_config = self.config["router"]
        self.analyzers = analyzers
        self.classifier = classifier
        self.modes = mode_adapter
        self.context = context_manager
        self.gaps = gap_pipeline
        self.sessions = session_manager
        self.plans = load_plans(router_config)
        self.priority = {name: index for index, name in enumerate(router_config.get("analyzer_priority", []))}
        self.text_deadline_s = float(router_config.get("text_deadline_s", 10.0))
        self.visual_deadline_s = float(router_config.get("visual_deadline_s", 30.0))
        self.reserve_s = float(router_config.get("post_processing_reserve_s", 1.0))
        self.max_query_chars = int(router_config.get("max_query_chars", 8000))
        self.max_code_chars = int(router_config.get("max_code_chars", 20000))
        self.supported_languages = {language.lower() for language in router_config.get("supported_languages", [])}
        self.clarification_text = self.config["prompts"]["clarification"]

        for query_type, plan in self.plans.items():
            missing = [step.analyzer for step in plan if step.analyzer not in self.analyzers]
            if not plan or missing:
                raise ValueError(f"Invalid analyzer plan for {query_type.value}: missing {missing or 'all steps'}")
        logger.info("[QueryRouter] Initialized with %d analyzers", len(self.analyzers))

    # --- Entry points ---

    async def submit(self, query: Query, user_id: str) -> Response:
        """
        Route a query inside its session's serialization scope.

        Raises:
            InvalidQuery: Before any session is created or touched.
            SessionStoreUnavailable: If the session has to be created and cannot be persisted.
            SessionEnded: If the session is ended while the query is in flight.
            DownstreamUnavailable: If every required analyzer failed.
        """
        if self.sessions is None:
            raise RuntimeError("QueryRouter.submit requires a session manager")
        self.validate(query)
        return await self.sessions.run(query.session_id, user_id, lambda session: self.route(query, session))

    async def route(self, query: Query, session: Session) -> Response:
        """
        Produce the response for one query. The caller holds the session lock.

        Args:
            query (Query): The immutable learner query.
            session (Session): The borrowed session aggregate.

        Returns:
            Response: A fresh response carrying the mode snapshot it was shaped with.

        Raises:
            InvalidQuery, DownstreamUnavailable
        """
        received_at = time.monotonic()
        self.validate(query)
        mode = session.mode
        log_context = {'session_id': session.id, 'query_id': query.id, 'mode': mode.value}
        logger.info(
            "[QueryRouter] Routing query: '%s'", truncate_message_for_logging(query.text, 50), extra=log_context,
        )

        effective_query, topic_override, unresolved = self._resolve_references(query, session)
        if unresolved is not None:
            return self._respond_with_clarification(session, query, mode, unresolved, log_context)

        try:
            classification = self.classifier.classify(effective_query)
        except ClassificationAmbiguous as e:
            logger.info("[QueryRouter] Ambiguous query, asking for clarification (scores=%s)", e.scores, extra=log_context)
            clarification = Response(
                query_id=query.id, mode=mode, content=self.clarification_text, suggestions=AMBIGUOUS_SUGGESTIONS,
            )
            return self._finish(session, query, clarification, (), received_at, "clarification")

        query_type = classification.query_type
        log_context['query_type'] = query_type.value
        seconds = self.visual_deadline_s if query_type is QueryType.VISUAL_REQUEST else self.text_deadline_s
        deadline = Deadline(expires_at=received_at + seconds)
        topic = topic_override or classification.topic

        context = AnalysisContext(
            session_id=session.id,
            user_id=session.user_id,
            mode=mode,
            query_type=query_type,
            window=self.context.window(session),
            deadline=deadline.shortened(self.reserve_s),
            topic=topic,
        )
        plan = self.plans[query_type]
        fan_out = await self._fan_out(plan, effective_query, context, log_context)

        required = [step.analyzer for step in plan if step.required]
        if all(name in fan_out.failures for name in required):
            ERROR_COUNT.labels(type='router', location='downstream_unavailable').inc()
            logger.error(
                "[QueryRouter] All required analyzers failed: %s", fan_out.failures, extra=log_context,
            )
            raise DownstreamUnavailable("All required analyzers failed", failures=fan_out.failures)

        combined = self.combine(fan_out.results)
        content = combined.content
        if not content.strip():
            if not combined.visual_aids:
                ERROR_COUNT.labels(type='router', location='no_content').inc()
                raise DownstreamUnavailable("No textual content was produced", failures=fan_out.failures)
            content = "\n".join(f"See the diagram: {aid.title}" for aid in combined.visual_aids)

        signals = combined.gaps + self.signals_from_findings(combined)
        gap_result = GapBatchResult()
        if signals:
            gap_result = await self.gaps.process(session.user_id, session, signals, deadline, query.id)

        content = await self.modes.apply(content, mode, effective_query, deadline)

        warnings = [failure_warning(name, kind) for name, kind in fan_out.failures.items()
                    if self._user_visible(plan, name)]
        warnings = list({warning.code: warning for warning in warnings}.values())
        suggestions = dedupe_preserving_order(list(combined.suggestions) + [w.suggestion for w in warnings])

        response = Response(
            query_id=query.id,
            mode=mode,
            content=content,
            query_type=query_type,
            visual_aids=tuple(combined.visual_aids),
            detected_gaps=tuple(gap_result.gaps),
            recommendations=tuple(gap_result.recommendations),
            suggestions=tuple(suggestions[:MAX_SUGGESTIONS]),
            warnings=tuple(warnings),
            degraded=bool(warnings),
        )
        for name, kind in fan_out.failures.items():
            if self._user_visible(plan, name):
                DEGRADED_RESPONSES.labels(reason=f"{name}_{kind}").inc()

        concepts = tuple(dedupe_preserving_order(([topic] if topic else []) + [gap.concept for gap in gap_result.gaps]))
        response = self._finish(session, query, response, concepts, received_at, query_type.value)
        await self.context.compact(session, deadline)
        return response

    # --- Validation and references ---

    def validate(self, query: Query) -> None:
        """
        Reject malformed queries before any side effect.

        Raises:
            InvalidQuery: Empty query, oversized text or code, or unsupported language.
        """
        if not (query.text or "").strip() and not query.has_code:
            raise InvalidQuery("The query is empty")
        if len(query.text or "") > self.max_query_chars:
            raise InvalidQuery(f"The query is longer than {self.max_query_chars} characters")
        if query.code and len(query.code) > self.max_code_chars:
            raise InvalidQuery(f"The code is longer than {self.max_code_chars} characters")
        if query.language and self.supported_languages and query.language.lower() not in self.supported_languages:
            raise InvalidQuery(f"Unsupported language: {query.language}")

    def _resolve_references(self, query: Query, session: Session) -> Tuple[Query, Optional[str], Optional[MentionKind]]:
        """
        Substitute back-references with what they point at.

        Returns:
            (effective query, topic override, unresolved mention kind or None)
        """
        mention = find_mention(query.text)
        if mention is MentionKind.CODE and not query.has_code and not has_code_block(query.text):
            entity = self.context.resolve_reference(session, MentionKind.CODE)
            if entity is None:
                return query, None, MentionKind.CODE
            return dataclasses.replace(query, code=entity.value, language=query.language or entity.language), None, None
        if mention is MentionKind.CONCEPT:
            entity = self.context.resolve_reference(session, MentionKind.CONCEPT)
            if entity is None:
                return query, None, MentionKind.CONCEPT
            return query, entity.value, None
        return query, None, None

    def _respond_with_clarification(self, session: Session, query: Query, mode: Mode,
                                    mention: MentionKind, log_context: Dict[str, Any]) -> Response:
        logger.info("[QueryRouter] Reference to earlier %s not found in context", mention.value, extra=log_context)
        if mention is MentionKind.CODE:
            content = "I could not find any earlier code in our recent conversation."
            suggestions = ("Paste the code again together with your question.",)
        else:
            content = "I am not sure which concept you are referring to."
            suggestions = ('Name the concept, for example "explain closures again".',)
        response = Response(query_id=query.id, mode=mode, content=content, suggestions=suggestions)
        return self._finish(session, query, response, (), time.monotonic(), "clarification")

    # --- Fan-out and combination ---

    async def _fan_out(self, plan: Tuple[PlanStep, ...], query: Query, context: AnalysisContext,
                       log_context: Dict[str, Any]) -> FanOutResult:
        """Run every plan step concurrently; cancel whatever is still running at the deadline."""
        tasks = {
            asyncio.create_task(self.analyzers[step.analyzer].analyze(query, context)): step.analyzer
            for step in plan
        }
        try:
            _, pending = await asyncio.wait(tasks, timeout=context.deadline.remaining())
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[str, ProcessorResult] = {}
        failures: Dict[str, str] = {}
        for task, name in tasks.items():
            if task in pending or task.cancelled():
                failures[name] = TIMEOUT
                logger.warning(
                    "[QueryRouter] Analyzer %s cancelled at the deadline", name,
                    extra={**log_context, 'analyzer': name},
                )
                continue
            error = task.exception()
            if error is not None:
                failures[name] = failure_kind(error)
                logger.warning(
                    "[QueryRouter] Analyzer %s failed (%s): %s: %s", name, failures[name], type(error).__name__, error,
                    extra={**log_context, 'analyzer': name},
                )
                continue
            results[name] = task.result()
        return FanOutResult(results=results, failures=failures)

    def combine(self, results: Dict[str, ProcessorResult]) -> ProcessorResult:
        """
        Merge analyzer results into one.

        Content sections are concatenated in analyzer-priority order; visual aids, gap signals
        and findings are unioned; suggestions are deduplicated by text.
        """
        ordered = sorted(results.values(), key=lambda result: self.priority.get(result.analyzer, len(self.priority)))
        visual_aids: List[VisualAid] = []
        gaps: List[GapSignal] = []
        for result in ordered:
            visual_aids.extend(aid for aid in result.visual_aids if aid not in visual_aids)
            gaps.extend(signal for signal in result.gaps if signal not in gaps)
        return ProcessorResult(
            analyzer="combined",
            content="\n\n".join(result.content.strip() for result in ordered if result.content.strip()),
            visual_aids=visual_aids,
            gaps=gaps,
            errors=[error for result in ordered for error in result.errors],
            suggestions=dedupe_preserving_order(s for result in ordered for s in result.suggestions),
        )

    @staticmethod
    def signals_from_findings(combined: ProcessorResult) -> List[GapSignal]:
        """Analyzer findings that name a concept become code-sourced gap signals."""
        return [
            GapSignal(
                concept=error.concept,
                evidence=error.message,
                source=GapSource.CODE,
                strength=SignalStrength.SEVERE if error.critical else SignalStrength.MISS,
            )
            for error in combined.errors if error.concept
        ]

    @staticmethod
    def _user_visible(plan: Tuple[PlanStep, ...], analyzer: str) -> bool:
        return any(step.analyzer == analyzer and (step.required or analyzer == "visual") for step in plan)

    # --- Completion ---

    def _finish(self, session: Session, query: Query, response: Response, concepts: Tuple[str, ...],
                received_at: float, query_type_label: str) -> Response:
        self.context.append(session, Interaction(query=query, response=response, concepts=concepts))
        session.query_count += 1
        session.touch()
        duration = time.monotonic() - received_at
        QUERY_LATENCY.labels(query_type=query_type_label).observe(duration)
        QUERY_COUNT.labels(query_type=query_type_label, mode=response.mode.value).inc()
        logger.info(
            "[QueryRouter] Responded in %.2fs (degraded=%s, gaps=%d)", duration, response.degraded,
            len(response.detected_gaps),
            extra={'session_id': session.id, 'query_id': query.id, 'query_type': query_type_label},
        )
        return response
