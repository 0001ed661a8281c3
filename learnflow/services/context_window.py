"""
services/context_window.py

Context Window Manager: the bounded, ordered log of recent interactions for a session.

Responsibilities:
- Append interactions in acceptance order and evict the oldest one (FIFO) past capacity K
- Hand analyzers an immutable snapshot of the window
- Resolve back-references ("the code above", "that concept") by entity kind, newest first
- Keep the window under a token budget by folding the oldest entries into one summary entry

Only the raw interaction log lives here. Eviction and compaction never touch the gap
ledger, so forgetting old conversation never forgets a learner's gaps.
"""

import re
from typing import List, Optional, Tuple

from learnflow.analyzers.code import code_of
from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.llm_cloud import AIService, AIServiceError
from learnflow.monitoring.metrics import ERROR_COUNT
from learnflow.shared.deadline import Deadline
from learnflow.shared.models import EntryKind, Interaction, MentionKind, ReferencedEntity, Session
from learnflow.shared.utils import dedupe_preserving_order, estimate_tokens, split_sentences, truncate_words

logger = get_logger(__name__)

_CODE_MENTION_RE = re.compile(
    r"\b(the|that|this|my) (code|snippet|function|program) (above|before|earlier)\b|"
    r"\b(that|my (previous|last)|the (previous|last)) (code|snippet|function|program)\b",
    re.IGNORECASE,
)
_CONCEPT_MENTION_RE = re.compile(
    r"\b(that|this|the (previous|last|same)) (concept|topic|idea)\b",
    re.IGNORECASE,
)


def find_mention(text: str) -> Optional[MentionKind]:
    """
    Detect a back-reference in the query text.

    Returns:
        Optional[MentionKind]: CODE for "the code above"-style phrases, CONCEPT for
        "that concept"-style phrases, or None when the text refers to nothing earlier.
    """
    if _CODE_MENTION_RE.search(text or ""):
        return MentionKind.CODE
    if _CONCEPT_MENTION_RE.search(text or ""):
        return MentionKind.CONCEPT
    return None


class ContextWindowManager:
    """Owns the append/evict/compact policy of session context windows."""

    def __init__(self, ai_service: Optional[AIService] = None, config=None):
        self.config = config or CONFIG
        context_config = self.config["context"]
        self.ai = ai_service
        self.capacity = int(context_config["window_capacity"])
        self.token_budget = int(context_config.get("token_budget", 1500))
        self.chars_per_token = int(context_config.get("chars_per_token", 4))
        self.summary_max_tokens = int(context_config.get("summary_max_tokens", 200))
        self.summary_prompt = self.config["prompts"]["context_summary"]

    def append(self, session: Session, interaction: Interaction) -> None:
        """
        Append an interaction, evicting the oldest entries beyond capacity.

        Args:
            session (Session): Session whose window is mutated (caller holds the session lock).
            interaction (Interaction): The immutable record to append.
        """
        session.context_window.append(interaction)
        evicted = 0
        while len(session.context_window) > self.capacity:
            session.context_window.pop(0)
            evicted += 1
        if evicted:
            logger.debug(
                "[ContextWindow] Evicted %d oldest interaction(s)", evicted,
                extra={'session_id': session.id},
            )

    def window(self, session: Session) -> Tuple[Interaction, ...]:
        """Ordered snapshot of the window, oldest first."""
        return tuple(session.context_window)

    def resolve_reference(self, session: Session, mention: MentionKind) -> Optional[ReferencedEntity]:
        """
        Find the most recent entity of the mentioned kind.

        Args:
            session (Session): Session to search.
            mention (MentionKind): CODE for the latest code submission, CONCEPT for the
                latest named concept.

        Returns:
            Optional[ReferencedEntity]: The newest match, or None when the window holds no candidate.
        """
        for entry in reversed(session.context_window):
            if mention is MentionKind.CODE:
                if entry.query is None:
                    continue
                extracted = code_of(entry.query)
                if extracted is not None:
                    code, language = extracted
                    return ReferencedEntity(kind=mention, value=code, query_id=entry.query.id, language=language)
            elif entry.concepts:
                return ReferencedEntity(
                    kind=mention,
                    value=entry.concepts[0],
                    query_id=entry.query.id if entry.query else None,
                )
        return None

    def estimated_tokens(self, session: Session) -> int:
        return sum(estimate_tokens(entry.text, self.chars_per_token) for entry in session.context_window)

    async def compact(self, session: Session, deadline: Optional[Deadline] = None) -> bool:
        """
        Fold the oldest entries into one summary entry when the window is over budget.

        The newest entry is never folded. The summary comes from the AI Service Layer; when
        that is unavailable (or there is no budget left) an extractive summary is used.

        Returns:
            bool: True if the window was compacted.
        """
        if self.estimated_tokens(session) <= self.token_budget:
            return False

        entries = list(session.context_window)
        fold_count = self._fold_count(entries)
        if fold_count == 0:
            return False

        folded = entries[:fold_count]
        summary_text = await self._summarize(folded, deadline, session.id)
        concepts = tuple(dedupe_preserving_order(concept for entry in folded for concept in entry.concepts))
        # Single synchronous replacement; nothing awaits past this point
        session.context_window[:fold_count] = [Interaction.summary(summary_text, concepts)]
        logger.info(
            "[ContextWindow] Compacted %d entries into a summary (~%d tokens now)",
            fold_count, self.estimated_tokens(session), extra={'session_id': session.id},
        )
        return True

    def _fold_count(self, entries: List[Interaction]) -> int:
        total = sum(estimate_tokens(entry.text, self.chars_per_token) for entry in entries)
        count = 0
        while count < len(entries) - 1 and total + self.summary_max_tokens > self.token_budget:
            total -= estimate_tokens(entries[count].text, self.chars_per_token)
            count += 1
        if count == 1 and entries[0].kind is EntryKind.SUMMARY:
            # Re-summarizing a lone summary changes nothing; fold the next entry with it
            count = 2 if len(entries) > 2 else 0
        return count

    async def _summarize(self, folded: List[Interaction], deadline: Optional[Deadline], session_id: str) -> str:
        max_words = max(20, self.summary_max_tokens * 3 // 4)
        transcript = "\n\n".join(entry.text for entry in folded)
        if self.ai is not None and deadline is not None:
            try:
                summary = await self.ai.complete(
                    self.summary_prompt.format(max_words=max_words, transcript=transcript),
                    mode=None,
                    max_tokens=self.summary_max_tokens,
                    deadline=deadline,
                    model="utility",
                )
                return truncate_words(summary, max_words)
            except AIServiceError as e:
                ERROR_COUNT.labels(type='context', location='summary').inc()
                logger.warning(
                    "[ContextWindow] AI summary unavailable, using extractive summary: %s", e,
                    extra={'session_id': session_id},
                )
        return self._extractive_summary(folded, max_words)

    @staticmethod
    def _extractive_summary(folded: List[Interaction], max_words: int) -> str:
        lines = []
        for entry in folded:
            if entry.kind is EntryKind.SUMMARY:
                lines.append(entry.text)
                continue
            question = entry.query.text if entry.query else ""
            first = split_sentences(question)[0] if split_sentences(question) else "(code submission)"
            topics = f" [{', '.join(entry.concepts)}]" if entry.concepts else ""
            lines.append(f"Learner asked: {first}{topics}")
        return truncate_words("Earlier: " + " ".join(lines), max_words)
