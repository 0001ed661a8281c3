"""
Analyzers dispatched by the query router.

Every analyzer implements `BaseAnalyzer.analyze(query, context) -> ProcessorResult`. The
router looks analyzers up by name in the registry built here and runs the plan configured
for the query type under `router.plans`.
"""

from typing import Dict

from learnflow.llm_cloud import AIService
from learnflow.provider_api.base import CodeAnalyzerClient, VisualGeneratorClient

from .base import AnalysisContext, BaseAnalyzer, format_history
from .code import CodeAnalysisAnalyzer
from .code_gaps import CodeGapDetector
from .concept import ConceptAnalyzer, GeneralAnalyzer
from .quiz import QuizAssessmentAnalyzer
from .visual import VisualAnalyzer


def build_registry(ai_service: AIService, code_client: CodeAnalyzerClient,
                   visual_client: VisualGeneratorClient, config=None) -> Dict[str, BaseAnalyzer]:
    """Instantiate every analyzer and key it by name."""
    analyzers = [
        CodeAnalysisAnalyzer(code_client, config=config),
        CodeGapDetector(ai_service, config=config),
        VisualAnalyzer(visual_client, config=config),
        ConceptAnalyzer(ai_service, config=config),
        GeneralAnalyzer(ai_service, config=config),
        QuizAssessmentAnalyzer(ai_service, config=config),
    ]
    return {analyzer.name: analyzer for analyzer in analyzers}


__all__ = [
    "AnalysisContext",
    "BaseAnalyzer",
    "CodeAnalysisAnalyzer",
    "CodeGapDetector",
    "ConceptAnalyzer",
    "GeneralAnalyzer",
    "QuizAssessmentAnalyzer",
    "VisualAnalyzer",
    "build_registry",
    "format_history",
]
