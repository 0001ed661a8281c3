"""
core/modes.py

Mode State Machine and Mode Adapter.

A session is always in exactly one learning mode. `ModeStateMachine.set_mode` switches it
synchronously and unconditionally; the router snapshots the mode when it dispatches a
query, so a switch made while a query is in flight only affects the next one.

`ModeAdapter.apply` reshapes the combined response text once, as the last routing step:
- exam: analogies removed, at most `modes.exam_word_limit` words
- concept: optionally rewritten by the AI Service Layer to add an example and an analogy,
  then given the concept structure (explanation + key idea)
- build: code blocks kept (the submitted code is inserted when none is present) and a
  best-practices note appended

If a transformation fails the untransformed content is returned with the concept
structure. Content is never dropped.
"""

import re
from typing import List, Optional

from learnflow.analyzers.code import code_of
from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.llm_cloud import AIService, AIServiceError
from learnflow.monitoring.metrics import ERROR_COUNT
from learnflow.shared.deadline import Deadline
from learnflow.shared.models import Mode, Query, Session
from learnflow.shared.utils import (
    count_words,
    format_code_block,
    has_code_block,
    is_code_block,
    split_blocks,
    split_sentences,
    truncate_words,
)

from .exceptions import UnsupportedMode

logger = get_logger(__name__)

_ANALOGY_BLOCK_RE = re.compile(r"^(#+\s*)?(\*\*)?\s*analog(y|ies)\b", re.IGNORECASE)
_ANALOGY_SENTENCE_RE = re.compile(
    r"\b(analogy|imagine|think of (it|this|them) (as|like)|it'?s (just )?like|is (a bit )?like a|similar to a)\b",
    re.IGNORECASE,
)
_HEADING_RE = re.compile(r"^#{1,6}\s", re.MULTILINE)

EXPLANATION_HEADING = "### Explanation"
KEY_IDEA_HEADING = "### Key idea"
BEST_PRACTICES_HEADING = "### Best practices"


def parse_mode(value) -> Mode:
    """
    Convert a user-supplied mode name into a Mode.

    Raises:
        UnsupportedMode: If the value is not exam, concept or build (case-insensitive).
    """
    if isinstance(value, Mode):
        return value
    try:
        return Mode(str(value).strip().lower())
    except ValueError:
        raise UnsupportedMode(f"Unsupported mode: {value!r}")


class ModeStateMachine:
    """Holds and transitions the learning mode of a session."""

    def __init__(self, default: Optional[Mode] = None):
        self.default = default or parse_mode(CONFIG["modes"]["default"])

    def current(self, session: Session) -> Mode:
        return session.mode

    def set_mode(self, session: Session, mode) -> Mode:
        """
        Switch the session mode. Synchronous and unconditional; no terminal state.

        Args:
            session (Session): The session to update.
            mode (Mode | str): The new mode.

        Returns:
            Mode: The previous mode.

        Raises:
            UnsupportedMode: If `mode` is not a valid mode name.
        """
        new_mode = parse_mode(mode)
        previous = session.mode
        session.mode = new_mode
        logger.info(
            "[ModeStateMachine] Mode changed %s -> %s", previous.value, new_mode.value,
            extra={'session_id': session.id, 'mode': new_mode.value},
        )
        return previous


class ModeAdapter:
    """Shapes response content according to a learning mode."""

    def __init__(self, ai_service: Optional[AIService] = None, config=None):
        self.config = config or CONFIG
        modes_config = self.config["modes"]
        self.ai = ai_service
        self.exam_word_limit = int(modes_config.get("exam_word_limit", 200))
        self.concept_target_words = int(modes_config.get("concept_target_words", 300))
        self.concept_ai_expand = bool(modes_config.get("concept_ai_expand", True))
        self.best_practices = list(modes_config.get("best_practices", []))
        self.rewrite_prompt = self.config["prompts"]["concept_rewrite"]

    async def apply(
        self,
        content: str,
        mode: Mode,
        query: Optional[Query] = None,
        deadline: Optional[Deadline] = None,
    ) -> str:
        """
        Reshape `content` for `mode`.

        Args:
            content (str): Combined analyzer text.
            mode (Mode): The mode snapshotted at dispatch.
            query (Optional[Query]): The query, used by Build mode to insert submitted code.
            deadline (Optional[Deadline]): Remaining budget for the optional concept rewrite.

        Returns:
            str: The transformed content, or the concept-structured original on failure.
        """
        try:
            if mode is Mode.EXAM:
                return self.apply_exam(content)
            if mode is Mode.BUILD:
                return self.apply_build(content, query)
            return await self.apply_concept(content, deadline)
        except Exception as e:
            ERROR_COUNT.labels(type='mode_adapter', location=mode.value).inc()
            logger.error(
                "[ModeAdapter] %s transformation failed, returning untransformed content: %s", mode.value, e,
                extra={'mode': mode.value, 'query_id': query.id if query else None},
            )
            return self.concept_structure(content)

    def apply_exam(self, content: str) -> str:
        """Strip analogies and fit the content into the exam word limit."""
        remaining = self.exam_word_limit
        kept: List[str] = []
        for block in split_blocks(content):
            if remaining <= 0:
                break
            if is_code_block(block):
                words = count_words(block)
                if words <= remaining:
                    kept.append(block)
                    remaining -= words
                continue
            if _ANALOGY_BLOCK_RE.match(block):
                continue
            block = self._without_analogies(block)
            if not block:
                continue
            words = count_words(block)
            if words <= remaining:
                kept.append(block)
                remaining -= words
            else:
                kept.append(truncate_words(block, remaining))
                remaining = 0
        if kept or not content.strip():
            return "\n\n".join(kept)
        return self._exam_excerpt(content)

    def _exam_excerpt(self, content: str) -> str:
        """
        Shortest faithful excerpt for content that nothing survived filtering in.

        An oversized code block is cut line by line with its fence closed; prose made only
        of analogies is reduced to its first sentence.
        """
        blocks = split_blocks(content)
        code = next((block for block in blocks if is_code_block(block)), None)
        if code is not None:
            lines = code.splitlines()
            kept_lines = [lines[0]]
            used = count_words(lines[0]) + 1
            for line in lines[1:-1]:
                words = count_words(line)
                if used + words > self.exam_word_limit:
                    break
                kept_lines.append(line)
                used += words
            return "\n".join(kept_lines + ["```"])
        first_sentence = split_sentences(" ".join(blocks))[0]
        return truncate_words(first_sentence, self.exam_word_limit)

    def _without_analogies(self, block: str) -> str:
        lines = []
        for line in block.splitlines():
            sentences = [s for s in split_sentences(line) if not _ANALOGY_SENTENCE_RE.search(s)]
            if sentences:
                lines.append(" ".join(sentences))
        return "\n".join(lines).strip()

    async def apply_concept(self, content: str, deadline: Optional[Deadline]) -> str:
        """
        Expand short explanations through the AI rewrite, then apply the concept structure.

        A failed rewrite falls back to the original text. Text is never padded to reach the target.
        """
        if self.concept_ai_expand and self.ai is not None and deadline is not None \
                and count_words(content) < self.concept_target_words:
            try:
                rewritten = await self.ai.complete(
                    self.rewrite_prompt.format(content=content),
                    mode=Mode.CONCEPT,
                    max_tokens=int(self.config["llm"]["models"]["tutor"]["settings"].get("max_tokens", 700)),
                    deadline=deadline,
                    model="tutor",
                )
                content = self._keep_code_blocks(content, rewritten)
            except AIServiceError as e:
                ERROR_COUNT.labels(type='mode_adapter', location='concept_rewrite').inc()
                logger.warning("[ModeAdapter] Concept rewrite unavailable, keeping original text: %s", e)
        return self.concept_structure(content)

    @staticmethod
    def _keep_code_blocks(original: str, rewritten: str) -> str:
        missing = [block for block in split_blocks(original) if is_code_block(block) and block not in rewritten]
        if not missing:
            return rewritten
        return "\n\n".join([rewritten] + missing)

    @staticmethod
    def concept_structure(content: str) -> str:
        """
        Tag content with the concept layout: an explanation section and a key idea.

        Content that already carries Markdown headings is left as is.
        """
        if not content.strip() or _HEADING_RE.search(content):
            return content
        key_idea = ""
        for block in split_blocks(content):
            if not is_code_block(block):
                sentences = split_sentences(block)
                key_idea = sentences[0] if sentences else ""
                break
        sections = [EXPLANATION_HEADING, content.strip()]
        if key_idea and key_idea.strip() != content.strip():
            sections += [KEY_IDEA_HEADING, key_idea]
        return "\n\n".join(sections)

    def apply_build(self, content: str, query: Optional[Query]) -> str:
        """Keep every code block, insert the submitted code if none is present, add best practices."""
        sections = [content.strip()] if content.strip() else []
        if not has_code_block(content) and query is not None:
            extracted = code_of(query)
            if extracted is not None:
                code, language = extracted
                sections.append("### Your code\n\n" + format_code_block(code, language))
        if self.best_practices and BEST_PRACTICES_HEADING not in content:
            notes = "\n".join(f"- {practice}" for practice in self.best_practices)
            sections.append(f"{BEST_PRACTICES_HEADING}\n{notes}")
        return "\n\n".join(sections)
