"""
analyzers/concept.py

Text explanation analyzers backed by the AI Service Layer.

`ConceptAnalyzer` answers concept questions ("explain recursion") and also supplies the
textual half of visual requests. `GeneralAnalyzer` handles anything else that is a
question but not about a specific concept. Both return plain Markdown; shaping for the
session mode happens later, once, in the mode adapter.
"""

from learnflow.llm_cloud import AIService
from learnflow.shared.models import ProcessorResult, Query

from .base import AnalysisContext, BaseAnalyzer, format_history


class ConceptAnalyzer(BaseAnalyzer):
    """Explains a programming concept in the context of the recent conversation."""

    prompt_key = "concept"

    def __init__(self, ai_service: AIService, config=None):
        self.ai = ai_service
        super().__init__(config=config)

    def setup(self) -> None:
        self.prompt_template = self.config["prompts"][self.prompt_key]

    def get_analyzer_name(self) -> str:
        return "concept"

    async def _analyze_internal(self, query: Query, context: AnalysisContext) -> ProcessorResult:
        # The topic only labels the question; the learner's own wording is always sent
        prompt = self.prompt_template.format(
            question=query.text,
            topic=context.topic or "not stated",
            history=format_history(context.window),
        )
        content = await self.ai.complete(
            prompt,
            mode=context.mode,
            max_tokens=self._max_tokens("tutor"),
            deadline=context.deadline,
            model="tutor",
        )
        return ProcessorResult(
            analyzer=self.name,
            content=content,
            suggestions=self._suggestions(context.topic),
        )

    def _suggestions(self, topic):
        if not topic:
            return ["Ask a follow-up question about any step that is unclear."]
        return [
            f"Ask for a diagram of {topic} to see it visually.",
            f"Answer a short quiz question on {topic} to check your understanding.",
        ]


class GeneralAnalyzer(ConceptAnalyzer):
    """Answers general programming questions that do not name a specific concept."""

    prompt_key = "general"

    def get_analyzer_name(self) -> str:
        return "general"

    def _suggestions(self, topic):
        return ["Ask \"explain <concept>\" to go deeper into one idea."]
