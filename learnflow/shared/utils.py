"""
shared/utils.py

Shared text helpers used by the classifier, the mode adapter, the context window and
the gap pipeline.

Everything here is pure and synchronous. Responses are Markdown, so most helpers
understand fenced code blocks and treat them as indivisible units.
"""

import json
import logging
import re
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

FENCED_BLOCK_RE = re.compile(r"```[^\n]*\n.*?```", re.DOTALL)
_WORD_RE = re.compile(r"\S+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def normalize_concept(concept: str) -> str:
    """
    Normalize a concept name so repeated detections map to the same gap key.

    Lower-cases, collapses internal whitespace, and trims surrounding punctuation and quotes.

    Examples:
        normalize_concept("  Loop   Termination. ") -> "loop termination"
        normalize_concept('"Recursion"') -> "recursion"
    """
    collapsed = " ".join(str(concept).split()).lower()
    return collapsed.strip(" .,:;!?\"'`()[]{}")


def count_words(text: str) -> int:
    """Count whitespace-separated words, code blocks included."""
    return len(_WORD_RE.findall(text or ""))


def has_code_block(text: str) -> bool:
    return bool(FENCED_BLOCK_RE.search(text or ""))


def split_blocks(text: str) -> List[str]:
    """
    Split Markdown into paragraph blocks, keeping each fenced code block as one block.

    Returns:
        List[str]: Non-empty blocks in document order.
    """
    blocks: List[str] = []
    position = 0
    for match in FENCED_BLOCK_RE.finditer(text or ""):
        blocks.extend(_paragraphs(text[position:match.start()]))
        blocks.append(match.group(0).strip())
        position = match.end()
    blocks.extend(_paragraphs((text or "")[position:]))
    return blocks


def _paragraphs(text: str) -> List[str]:
    return [part.strip() for part in re.split(r"\n\s*\n", text) if part.strip()]


def is_code_block(block: str) -> bool:
    return block.startswith("```")


def split_sentences(text: str) -> List[str]:
    return [sentence for sentence in _SENTENCE_SPLIT_RE.split(text.strip()) if sentence]


def truncate_words(text: str, limit: int) -> str:
    """
    Truncate prose to at most `limit` words, preferring a sentence boundary.

    Falls back to a hard word cut when the first sentence alone is over the limit.
    """
    if count_words(text) <= limit:
        return text
    kept: List[str] = []
    used = 0
    for sentence in split_sentences(text):
        words = count_words(sentence)
        if used + words > limit:
            break
        kept.append(sentence)
        used += words
    if kept:
        return " ".join(kept)
    return " ".join(text.split()[:limit])


def format_code_block(code: str, language: Optional[str] = None) -> str:
    return f"```{language or ''}\n{code.rstrip()}\n```"


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Rough token estimate used for the context budget (no tokenizer dependency)."""
    if not text:
        return 0
    return max(1, len(text) // max(1, chars_per_token))


def dedupe_preserving_order(items: Iterable[str]) -> List[str]:
    """Drop duplicate strings (compared after whitespace normalization), first occurrence wins."""
    seen = set()
    result = []
    for item in items:
        marker = " ".join(str(item).split()).lower()
        if not marker or marker in seen:
            continue
        seen.add(marker)
        result.append(item)
    return result


def safe_json_loads(json_string: str, fallback: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Safely parse a JSON object out of an LLM reply with fallback handling.

    Models occasionally wrap JSON in prose or code fences; the first `{...}` span is tried
    when the whole string does not parse.

    Args:
        json_string (str): Raw model output
        fallback (Optional[Dict[str, Any]]): Value returned if parsing fails

    Returns:
        Dict[str, Any]: Parsed JSON dictionary or fallback value
    """
    candidates = [json_string]
    match = _JSON_OBJECT_RE.search(json_string or "")
    if match:
        candidates.append(match.group(0))
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed
    logger.warning("Failed to parse JSON object from model output. Using fallback value.")
    return fallback if fallback is not None else {}


def truncate_message_for_logging(message: str, max_length: int = 100) -> str:
    """
    Truncate long messages for logging purposes.

    Args:
        message (str): Message to truncate
        max_length (int): Maximum length before truncation (default: 100)

    Returns:
        str: Truncated message with ellipsis if needed
    """
    if message is None:
        return ""
    if len(message) <= max_length:
        return message
    return message[:max_length] + "..."


_FENCE_PARTS_RE = re.compile(r"```([^\n]*)\n(.*?)```", re.DOTALL)
QUIZ_STRUCTURE_RE = re.compile(r"(^|\n)\s*(q(uestion)?\s*\d*\s*[:.)]|a(nswer)?\s*\d*\s*[:.)]|my answer\s*[:.])", re.IGNORECASE)


def extract_fenced_code(text: str) -> Optional[Tuple[str, Optional[str]]]:
    """
    Return `(code, language)` for the first fenced code block in `text`, or None.

    The language is taken from the fence info string (```python) and is None when absent.
    """
    match = _FENCE_PARTS_RE.search(text or "")
    if not match:
        return None
    language = match.group(1).strip().lower() or None
    return match.group(2).rstrip("\n"), language


def has_quiz_structure(text: str) -> bool:
    """True when the text looks like a quiz answer ("Q: ... A: ...", "Answer: ...")."""
    return bool(QUIZ_STRUCTURE_RE.search(text or ""))


def generate_query_id() -> str:
    """Unique identifier for one learner query, used to correlate logs and responses."""
    return uuid.uuid4().hex
