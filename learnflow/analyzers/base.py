"""
Base class for all analyzers dispatched by the query router.

This module defines the BaseAnalyzer abstract base class that every analyzer must
implement. It enforces the single capability interface the router relies on,
`analyze(query, context) -> ProcessorResult`, and provides shared functionality for
setup, logging and metrics instrumentation.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.monitoring.metrics import ANALYZER_PROCESSING_TIME, track_errors, track_latency
from learnflow.shared.deadline import Deadline
from learnflow.shared.models import EntryKind, Interaction, Mode, ProcessorResult, Query, QueryType
from learnflow.shared.utils import truncate_message_for_logging


@dataclass(frozen=True)
class AnalysisContext:
    """
    Read-only snapshot of session state handed to analyzers.

    Analyzers never receive the session itself: the window is a tuple copy and the
    mode is the value snapshotted when the query was dispatched.
    """
    session_id: str
    user_id: str
    mode: Mode
    query_type: QueryType
    window: Tuple[Interaction, ...]
    deadline: Deadline
    topic: Optional[str] = None


def format_history(window: Tuple[Interaction, ...], limit: int = 3, max_chars: int = 400) -> str:
    """
    Render the most recent window entries as a short transcript for prompts.

    Args:
        window: Context window snapshot, oldest first.
        limit: Number of most recent entries to include.
        max_chars: Per-entry character cap.

    Returns:
        str: One line per entry, or "(no earlier conversation)".
    """
    lines = []
    for entry in window[-limit:]:
        if entry.kind is EntryKind.SUMMARY:
            lines.append(f"Summary: {truncate_message_for_logging(entry.text, max_chars)}")
            continue
        if entry.query is not None:
            lines.append(f"Learner: {truncate_message_for_logging(entry.query.text, max_chars)}")
        if entry.response is not None:
            lines.append(f"Assistant: {truncate_message_for_logging(entry.response.content, max_chars)}")
    return "\n".join(lines) if lines else "(no earlier conversation)"


class BaseAnalyzer(ABC):
    """
    Abstract base class for all analyzers.

    This class defines the interface every analyzer implements and provides shared
    functionality for setup, logging, configuration access and metrics. Concrete analyzers
    override `setup`, `get_analyzer_name` and `_analyze_internal`.

    Failures are raised, not swallowed: the router owns the degradation policy, so an
    analyzer that cannot produce its part lets the exception (AI error, collaborator error)
    reach the fan-out, where it is logged and turned into a warning.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize common analyzer state and invoke analyzer-specific setup.

        The constructor configures a namespaced logger and keeps a reference to the global
        configuration so subclasses can read prompts and settings, then calls `self.setup()`.
        """
        self.logger = get_logger(f"{__name__}.{self.__class__.__name__}")
        self.config = config or CONFIG
        self.setup()

    @property
    def name(self) -> str:
        return self.get_analyzer_name()

    @abstractmethod
    def setup(self) -> None:
        """Load prompts and settings the analyzer needs."""
        pass

    @abstractmethod
    def get_analyzer_name(self) -> str:
        """
        Get the name of the analyzer.

        Returns:
            str: Registry key used in analyzer plans, logging and metrics.
        """
        pass

    @track_latency(ANALYZER_PROCESSING_TIME, lambda self: {'analyzer': self.get_analyzer_name()})
    @track_errors('analyzer', lambda self: self.get_analyzer_name())
    async def analyze(self, query: Query, context: AnalysisContext) -> ProcessorResult:
        """
        Analyze a query and return this analyzer's share of the response.

        Args:
            query (Query): The (possibly reference-resolved) query.
            context (AnalysisContext): Read-only session snapshot and the query deadline.

        Returns:
            ProcessorResult: Content, visual aids, gap signals, findings and suggestions.
        """
        log_context = {'session_id': context.session_id, 'query_id': query.id, 'analyzer': self.name}
        self.logger.info(
            "[%s] Starting analysis: '%s'", self.name, truncate_message_for_logging(query.text, 50),
            extra=log_context,
        )
        try:
            result = await self._analyze_internal(query, context)
        except asyncio.CancelledError:
            self.logger.warning("[%s] Analysis cancelled", self.name, extra=log_context)
            raise
        except Exception:
            self.logger.info("[%s] Analysis failed", self.name, extra=log_context)
            raise
        self.logger.info(
            "[%s] Analysis completed (%d gap signal(s), %d finding(s))",
            self.name, len(result.gaps), len(result.errors), extra=log_context,
        )
        return result

    @abstractmethod
    async def _analyze_internal(self, query: Query, context: AnalysisContext) -> ProcessorResult:
        """Analyzer-specific processing."""
        pass

    def _max_tokens(self, model: str = "tutor") -> int:
        return int(self.config["llm"]["models"][model].get("settings", {}).get("max_tokens", 500))