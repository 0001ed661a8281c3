"""
Deterministic in-memory collaborators for local runs, demos, and tests.

These are reference implementations of the interfaces in `provider_api.base` so the
service can be executed end to end without external analyzers, renderers or databases.
Behavior is stable across machines: the mock code analyzer applies a handful of regex
rules, the mock visual generator emits a Mermaid flowchart, and both stores keep data
in process memory.
"""

import copy
import dataclasses
import re
import time
from typing import Dict, List, Optional, Tuple

from learnflow.shared.deadline import Deadline
from learnflow.shared.models import AnalyzerError, ConceptualGap, GapKey, Session, VisualAid, utc_now

from .base import (
    CodeAnalysis,
    CodeAnalyzerClient,
    ProgressStore,
    SessionStore,
    VisualGeneratorClient,
)

_PY_INFINITE_LOOP = re.compile(r"^(?P<indent>\s*)while\s+(True|1)\s*:", re.MULTILINE)
_C_INFINITE_LOOP = re.compile(r"while\s*\(\s*(true|1)\s*\)|for\s*\(\s*;\s*;\s*\)")
_PY_DEF = re.compile(r"^(?P<indent>\s*)def\s+(?P<name>\w+)\s*\(", re.MULTILINE)
_BARE_EXCEPT = re.compile(r"^\s*except\s*:", re.MULTILINE)


def _indented_body(lines: List[str], start: int, indent: int) -> List[str]:
    """Lines after `start` that are indented deeper than `indent` (blank lines included)."""
    body = []
    for line in lines[start + 1:]:
        if line.strip() and len(line) - len(line.lstrip()) <= indent:
            break
        body.append(line)
    return body


class MockCodeAnalyzerClient(CodeAnalyzerClient):
    """
    Regex-based stand-in for the real Code Analyzer.

    Rules:
    - `while True:` / `while (true)` / `for (;;)` with no `break` or `return` in the body
      -> finding "infinite-loop" on concept "loop termination"
    - a Python function that calls itself with no `if` in its body
      -> finding "missing-base-case" on concept "recursion base case"
    - a bare `except:` -> finding "bare-except" on concept "exception handling"
    """

    async def analyze_code(self, code: str, language: Optional[str], deadline: Deadline) -> CodeAnalysis:
        lines = code.splitlines()
        findings = self._python_findings(code, lines) + self._c_style_findings(code, lines)
        language_name = language or "unknown-language"
        line_notes = []
        for number, line in enumerate(lines, start=1):
            stripped = line.strip()
            if stripped.startswith(("def ", "class ", "while", "for", "if ", "return")):
                line_notes.append(f"Line {number}: `{stripped}`")
        summary = f"{len(lines)} line(s) of {language_name} code; {len(findings)} potential issue(s) found."
        return CodeAnalysis(summary=summary, line_notes=line_notes, findings=findings)

    def _python_findings(self, code: str, lines: List[str]) -> List[AnalyzerError]:
        findings = []
        for match in _PY_INFINITE_LOOP.finditer(code):
            line_index = code[:match.start()].count("\n")
            body = "\n".join(_indented_body(lines, line_index, len(match.group("indent"))))
            if not re.search(r"\b(break|return|raise)\b", body):
                findings.append(AnalyzerError(
                    code="infinite-loop",
                    message=f"Line {line_index + 1}: the loop has no exit condition and never terminates.",
                    concept="loop termination",
                    line=line_index + 1,
                ))
        for match in _PY_DEF.finditer(code):
            line_index = code[:match.start()].count("\n")
            name = match.group("name")
            body = "\n".join(_indented_body(lines, line_index, len(match.group("indent"))))
            if re.search(rf"\b{name}\s*\(", body) and not re.search(r"\bif\b", body):
                findings.append(AnalyzerError(
                    code="missing-base-case",
                    message=f"Line {line_index + 1}: `{name}` calls itself but has no base case.",
                    concept="recursion base case",
                    line=line_index + 1,
                ))
        for match in _BARE_EXCEPT.finditer(code):
            line_index = code[:match.start()].count("\n")
            findings.append(AnalyzerError(
                code="bare-except",
                message=f"Line {line_index + 1}: a bare `except:` hides every error, including typos.",
                concept="exception handling",
                line=line_index + 1,
            ))
        return findings

    def _c_style_findings(self, code: str, lines: List[str]) -> List[AnalyzerError]:
        findings = []
        for match in _C_INFINITE_LOOP.finditer(code):
            line_index = code[:match.start()].count("\n")
            rest = code[match.end():]
            if not re.search(r"\b(break|return)\b", rest):
                findings.append(AnalyzerError(
                    code="infinite-loop",
                    message=f"Line {line_index + 1}: the loop has no exit condition and never terminates.",
                    concept="loop termination",
                    line=line_index + 1,
                ))
        return findings


class MockVisualGeneratorClient(VisualGeneratorClient):
    """Emits a small Mermaid flowchart whose nodes are the key terms of the description."""

    async def render(self, description: str, deadline: Deadline) -> VisualAid:
        terms = [word.strip(".,?!") for word in description.split() if len(word.strip(".,?!")) > 3][:5]
        if not terms:
            terms = ["Start", "End"]
        nodes = [f"    N{index}[{term}]" for index, term in enumerate(terms)]
        edges = [f"    N{index} --> N{index + 1}" for index in range(len(terms) - 1)]
        source = "\n".join(["flowchart TD"] + nodes + edges)
        return VisualAid(kind="mermaid", title=" -> ".join(terms), source=source)


class InMemorySessionStore(SessionStore):
    """
    Session Store kept in process memory with per-entry TTL.

    Snapshots are deep-copied on the way in and out, like a real store that serializes
    sessions, so callers never share state with what is stored.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Tuple[Session, float]] = {}

    async def get(self, session_id: str) -> Optional[Session]:
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        session, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._sessions[session_id]
            return None
        return copy.deepcopy(session)

    async def put(self, session: Session, ttl_s: int) -> None:
        self._sessions[session.id] = (copy.deepcopy(session), time.monotonic() + ttl_s)

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)


class InMemoryProgressStore(ProgressStore):
    """Progress Store that keeps the latest state of each gap per user."""

    def __init__(self) -> None:
        self._gaps: Dict[str, Dict[GapKey, ConceptualGap]] = {}

    async def append_gap(self, user_id: str, gap: ConceptualGap) -> None:
        self._gaps.setdefault(user_id, {})[gap.key] = gap

    async def list_gaps(self, user_id: str) -> List[ConceptualGap]:
        gaps = list(self._gaps.get(user_id, {}).values())
        return sorted(gaps, key=lambda gap: (-gap.severity.rank, gap.key.concept))

    async def mark_resolved(self, user_id: str, key: GapKey) -> None:
        user_gaps = self._gaps.get(user_id, {})
        gap = user_gaps.get(key)
        if gap is not None and gap.resolved_at is None:
            user_gaps[key] = dataclasses.replace(gap, resolved_at=utc_now())
