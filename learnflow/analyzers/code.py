"""
analyzers/code.py

Code explanation analyzer.

Wraps the external Code Analyzer collaborator. The submitted code is echoed back in a
fenced block so that Build mode always has the learner's code to keep, and every
finding the collaborator reports is passed through as an `AnalyzerError`. Findings that
name a concept are later turned into gap signals by the router.
"""

from typing import Optional, Tuple

from learnflow.core.exceptions import InvalidQuery
from learnflow.provider_api.base import CodeAnalyzerClient
from learnflow.shared.models import ProcessorResult, Query
from learnflow.shared.utils import dedupe_preserving_order, extract_fenced_code, format_code_block

from .base import AnalysisContext, BaseAnalyzer


def code_of(query: Query) -> Optional[Tuple[str, Optional[str]]]:
    """Return `(code, language)` from the code payload, else from the first fenced block in the text."""
    if query.has_code:
        return query.code, query.language
    return extract_fenced_code(query.text)


class CodeAnalysisAnalyzer(BaseAnalyzer):

    def __init__(self, code_client: CodeAnalyzerClient, config=None):
        self.code_client = code_client
        super().__init__(config=config)

    def setup(self) -> None:
        self.max_notes = 20

    def get_analyzer_name(self) -> str:
        return "code"

    async def _analyze_internal(self, query: Query, context: AnalysisContext) -> ProcessorResult:
        extracted = code_of(query)
        if extracted is None:
            raise InvalidQuery("code analysis requested without code")
        code, language = extracted

        analysis = await self.code_client.analyze_code(code, language, context.deadline)

        sections = [f"**What this code does:** {analysis.summary}", format_code_block(code, language)]
        if analysis.line_notes:
            notes = "\n".join(f"- {note}" for note in analysis.line_notes[:self.max_notes])
            sections.append(f"**Line by line:**\n{notes}")
        if analysis.findings:
            issues = "\n".join(f"- {finding.message}" for finding in analysis.findings)
            sections.append(f"**Issues found:**\n{issues}")

        suggestions = [
            f"Review {finding.concept} and try fixing line {finding.line}." if finding.line
            else f"Review {finding.concept}."
            for finding in analysis.findings if finding.concept
        ]
        suggestions.append("Ask for a flowchart of this code to follow its control flow.")

        return ProcessorResult(
            analyzer=self.name,
            content="\n\n".join(sections),
            errors=list(analysis.findings),
            suggestions=dedupe_preserving_order(suggestions),
        )
