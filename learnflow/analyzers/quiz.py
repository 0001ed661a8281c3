"""
analyzers/quiz.py

Assessment analyzer for quiz answers and self-explanations.

The learner's submission is graded by the tutor model, which returns feedback and the
misunderstandings it spotted. A structured quiz answer ("Q: ... A: ...") that is graded
incorrect yields explicit-miss signals sourced from the quiz; a free-form explanation
("check my understanding: ...") yields softer hint signals sourced from the explanation.
"""

from learnflow.llm_cloud import AIService
from learnflow.shared.models import GapSource, ProcessorResult, Query, SignalStrength
from learnflow.shared.utils import dedupe_preserving_order, has_quiz_structure, safe_json_loads

from .base import AnalysisContext, BaseAnalyzer
from .code_gaps import parse_gap_entries


class QuizAssessmentAnalyzer(BaseAnalyzer):

    def __init__(self, ai_service: AIService, config=None):
        self.ai = ai_service
        super().__init__(config=config)

    def setup(self) -> None:
        self.prompt_template = self.config["prompts"]["quiz_grading"]

    def get_analyzer_name(self) -> str:
        return "quiz"

    async def _analyze_internal(self, query: Query, context: AnalysisContext) -> ProcessorResult:
        reply = await self.ai.complete(
            self.prompt_template.format(submission=query.text),
            mode=context.mode,
            max_tokens=self._max_tokens("tutor"),
            deadline=context.deadline,
            model="tutor",
        )
        payload = safe_json_loads(reply, fallback={})
        if not payload:
            # Unstructured reply: still useful as feedback, but carries no gap data
            return ProcessorResult(analyzer=self.name, content=reply)

        correct = bool(payload.get("correct", False))
        if has_quiz_structure(query.text):
            source = GapSource.QUIZ
            strength = SignalStrength.HINT if correct else SignalStrength.MISS
        else:
            source = GapSource.EXPLANATION
            strength = SignalStrength.HINT

        signals = parse_gap_entries(payload, source, strength)
        verdict = "Correct." if correct else "Not quite."
        feedback = str(payload.get("feedback") or "").strip()
        content = f"**{verdict}** {feedback}".strip()

        suggestions = [f"Revisit {signal.concept} before your next quiz." for signal in signals]
        if correct and not signals:
            suggestions.append("Try a harder question on the same topic.")
        return ProcessorResult(
            analyzer=self.name,
            content=content,
            gaps=signals,
            suggestions=dedupe_preserving_order(suggestions),
        )
