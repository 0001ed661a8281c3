"""
runtime.py: wiring of the orchestration core.

`build_runtime()` assembles the router and everything it depends on from the
configuration and a set of collaborators. Every collaborator can be injected, so tests
and alternative deployments swap in their own implementations; anything not injected
defaults to the in-memory implementations from `provider_api.mock_client` and the
OpenAI-compatible `AIService`.

The HTTP layer obtains the runtime through `get_runtime()`, a FastAPI dependency that
builds the runtime once per process.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

from learnflow.analyzers import BaseAnalyzer, build_registry
from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.core.classifier import QueryClassifier
from learnflow.core.modes import ModeAdapter, ModeStateMachine, parse_mode
from learnflow.core.router import QueryRouter
from learnflow.llm_cloud import AIService
from learnflow.provider_api import (
    CodeAnalyzerClient,
    InMemoryProgressStore,
    InMemorySessionStore,
    MockCodeAnalyzerClient,
    MockVisualGeneratorClient,
    ProgressStore,
    SessionStore,
    VisualGeneratorClient,
)
from learnflow.services.context_window import ContextWindowManager
from learnflow.services.gap_pipeline import GapAggregationPipeline
from learnflow.services.progress_sync import ProgressForwarder
from learnflow.services.session_manager import SessionManager

logger = get_logger(__name__)


@dataclass
class Runtime:
    config: Dict[str, Any]
    ai: AIService
    session_store: SessionStore
    progress_store: ProgressStore
    forwarder: ProgressForwarder
    sessions: SessionManager
    modes: ModeStateMachine
    mode_adapter: ModeAdapter
    context: ContextWindowManager
    gaps: GapAggregationPipeline
    analyzers: Dict[str, BaseAnalyzer]
    router: QueryRouter


def build_runtime(
    config: Optional[Dict[str, Any]] = None,
    ai_service: Optional[AIService] = None,
    code_client: Optional[CodeAnalyzerClient] = None,
    visual_client: Optional[VisualGeneratorClient] = None,
    session_store: Optional[SessionStore] = None,
    progress_store: Optional[ProgressStore] = None,
) -> Runtime:
    """
    Assemble a runtime.

    Args:
        config (dict, optional): Configuration; defaults to the global CONFIG.
        ai_service (AIService, optional): AI Service Layer; defaults to an OpenAI-compatible client.
        code_client, visual_client: Analyzer collaborators; default to the mock clients.
        session_store, progress_store: Storage collaborators; default to in-memory stores.

    Returns:
        Runtime: Fully wired components.
    """
    config = config or CONFIG
    ai = ai_service or AIService(config=config)
    session_store = session_store or InMemorySessionStore()
    progress_store = progress_store or InMemoryProgressStore()

    forwarder = ProgressForwarder(progress_store, config=config)
    sessions = SessionManager(session_store, config=config)
    mode_adapter = ModeAdapter(ai, config=config)
    context = ContextWindowManager(ai, config=config)
    gaps = GapAggregationPipeline(ai, forwarder, config=config)
    analyzers = build_registry(
        ai,
        code_client or MockCodeAnalyzerClient(),
        visual_client or MockVisualGeneratorClient(),
        config=config,
    )
    router = QueryRouter(
        analyzers=analyzers,
        classifier=QueryClassifier(config["router"]["confidence_threshold"]),
        mode_adapter=mode_adapter,
        context_manager=context,
        gap_pipeline=gaps,
        session_manager=sessions,
        config=config,
    )
    logger.info("[Runtime] Built runtime with analyzers: %s", ", ".join(sorted(analyzers)))
    return Runtime(
        config=config,
        ai=ai,
        session_store=session_store,
        progress_store=progress_store,
        forwarder=forwarder,
        sessions=sessions,
        modes=ModeStateMachine(parse_mode(config["modes"]["default"])),
        mode_adapter=mode_adapter,
        context=context,
        gaps=gaps,
        analyzers=analyzers,
        router=router,
    )


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    """FastAPI dependency returning the process-wide runtime."""
    return build_runtime()
