"""
analyzers/code_gaps.py

Gap detection on submitted code.

Runs next to the code analyzer for `code_analysis` queries. It asks the utility model to
name conceptual misunderstandings visible in the code and reports them as soft (HINT)
code-sourced gap signals. It contributes no text of its own, which is why it is an
optional entry in the code-analysis plan.
"""

from learnflow.llm_cloud import AIService
from learnflow.shared.models import GapSignal, GapSource, ProcessorResult, Query, SignalStrength
from learnflow.shared.utils import safe_json_loads

from .base import AnalysisContext, BaseAnalyzer
from .code import code_of


def parse_gap_entries(payload, source: GapSource, strength: SignalStrength):
    """
    Convert the `gaps` list of a model JSON reply into gap signals.

    Entries without a concept are skipped; `related` may be missing or a single string.
    """
    signals = []
    for entry in payload.get("gaps") or []:
        if not isinstance(entry, dict):
            continue
        concept = str(entry.get("concept") or "").strip()
        if not concept:
            continue
        related = entry.get("related") or []
        if isinstance(related, str):
            related = [related]
        signals.append(GapSignal(
            concept=concept,
            evidence=str(entry.get("evidence") or concept).strip(),
            source=source,
            strength=strength,
            related_concepts=frozenset(str(item).strip() for item in related if str(item).strip()),
        ))
    return signals


class CodeGapDetector(BaseAnalyzer):

    def __init__(self, ai_service: AIService, config=None):
        self.ai = ai_service
        super().__init__(config=config)

    def setup(self) -> None:
        self.prompt_template = self.config["prompts"]["code_gaps"]

    def get_analyzer_name(self) -> str:
        return "code_gaps"

    async def _analyze_internal(self, query: Query, context: AnalysisContext) -> ProcessorResult:
        extracted = code_of(query)
        if extracted is None:
            return ProcessorResult(analyzer=self.name)
        code, language = extracted

        reply = await self.ai.complete(
            self.prompt_template.format(language=language or "unknown", code=code),
            mode=None,
            max_tokens=self._max_tokens("utility"),
            deadline=context.deadline,
            model="utility",
        )
        payload = safe_json_loads(reply, fallback={"gaps": []})
        return ProcessorResult(
            analyzer=self.name,
            gaps=parse_gap_entries(payload, GapSource.CODE, SignalStrength.HINT),
        )
