# utils/query_text.py
"""Query cleanup for keyword search and near-duplicate suppression for results"""
import re
from typing import Callable, List, Sequence, Set, TypeVar

T = TypeVar("T")

# Longest first within each family so "what is the" wins over "what is"
FILLER_PREFIXES = (
    "can you give me the answer for",
    "can you give me the answer to",
    "can you give me",
    "can you help me with",
    "can you explain",
    "could you explain",
    "could you help me with",
    "i need help with",
    "i need to understand",
    "i want to know about",
    "please help me with",
    "please explain",
    "what is the",
    "what are the",
    "what is",
    "what are",
    "how does the",
    "how does",
    "how do",
    "how is",
    "explain the",
    "explain",
    "tell me about",
    "describe the",
    "describe",
    "define the",
    "define",
    "why does",
    "why is",
    "why do",
    "when does",
    "when is",
    "where does",
    "where is",
    "give me the answer for",
    "give me the answer to",
    "give me",
)

TRAILING_FILLER = (
    "and all its sub questions",
    "and all sub questions",
    "and its sub questions",
    "and sub questions",
    "and all the sub questions",
)

REFERENCE_KEYWORDS = frozenset({
    "exercise", "exercises", "chapter", "section", "page", "problem", "problems",
    "question", "questions", "figure", "theorem", "definition", "example",
    "lemma", "corollary", "proposition",
})

_SPECIFICALLY_RE = re.compile(r"\s+specifically\b", re.IGNORECASE)


def enhance_query(raw: str) -> str:
    """
    Strip conversational filler from a question so keyword search sees the topic.

    "what is the mitochondria?" -> "mitochondria". Explicit references such as
    "page 26" or "exercises ... 0.3" have their numbers appended once more so
    they weigh in the lexical ranking. A query that is nothing but filler is
    returned trimmed, never emptied.
    """
    trimmed = (raw or "").strip().rstrip("?").strip()
    lower = trimmed.lower()

    cleaned = trimmed
    for prefix in FILLER_PREFIXES:
        if lower.startswith(prefix) and (len(lower) == len(prefix) or lower[len(prefix)].isspace()):
            rest = trimmed[len(prefix):].strip()
            if rest:
                cleaned = rest
                break

    for suffix in TRAILING_FILLER:
        if cleaned.lower().endswith(suffix):
            cleaned = cleaned[: len(cleaned) - len(suffix)].strip()

    match = _SPECIFICALLY_RE.search(cleaned)
    if match:
        before = cleaned[: match.start()].strip()
        after = cleaned[match.end():].strip()
        cleaned = f"{before} {after}".strip() if after else before

    refs = extract_references(cleaned)
    if refs:
        return f"{cleaned} {' '.join(refs)}"
    return cleaned


def extract_references(query: str) -> List[str]:
    """Tokens containing a digit that follow a reference keyword ("chapter 3" -> "3")."""
    words = query.lower().split()
    refs = []
    for i, word in enumerate(words[:-1]):
        following = words[i + 1]
        if word in REFERENCE_KEYWORDS and any(c.isdigit() for c in following):
            refs.append(following)
    return refs


def _word_set(text: str) -> Set[str]:
    words = set()
    for raw in text.split():
        word = re.sub(r"^[^\w]+|[^\w]+$", "", raw.lower())
        if word:
            words.add(word)
    return words


def chunks_overlap(a: str, b: str, threshold: float) -> bool:
    """True when the word-level Jaccard similarity of a and b reaches threshold."""
    words_a = _word_set(a)
    words_b = _word_set(b)
    if not words_a or not words_b:
        return False
    union = words_a | words_b
    return len(words_a & words_b) / len(union) >= threshold


def deduplicate(items: Sequence[T], threshold: float = 0.8,
                text_of: Callable[[T], str] = str) -> List[T]:
    """Keep the first of any run of near-duplicate items; order is preserved."""
    kept: List[T] = []
    for item in items:
        content = text_of(item)
        if not any(chunks_overlap(text_of(k), content, threshold) for k in kept):
            kept.append(item)
    return kept
