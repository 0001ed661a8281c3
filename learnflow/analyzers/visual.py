"""
analyzers/visual.py

Diagram analyzer: delegates rendering to the Visual Generator collaborator.

The explanation that accompanies a diagram comes from the concept analyzer running in
the same fan-out, so a failed render still leaves a text-only answer.
"""

from learnflow.provider_api.base import VisualGeneratorClient
from learnflow.shared.models import ProcessorResult, Query

from .base import AnalysisContext, BaseAnalyzer


class VisualAnalyzer(BaseAnalyzer):

    def __init__(self, visual_client: VisualGeneratorClient, config=None):
        self.visual_client = visual_client
        super().__init__(config=config)

    def setup(self) -> None:
        pass

    def get_analyzer_name(self) -> str:
        return "visual"

    async def _analyze_internal(self, query: Query, context: AnalysisContext) -> ProcessorResult:
        description = context.topic or query.text
        aid = await self.visual_client.render(description, context.deadline)
        return ProcessorResult(
            analyzer=self.name,
            visual_aids=[aid],
            suggestions=["Ask to walk through the diagram one step at a time."],
        )
