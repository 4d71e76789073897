"""
Paragraph-aware chunking with word overlap.

Sizes are configured in characters but applied in words, using a fixed
average of 1.33 characters per word. Paragraphs are kept whole unless a single
paragraph is larger than the word budget, in which case it is cut into
overlapping fixed-size windows.
"""
import math
import re
from typing import List

CHARS_PER_WORD = 1.33

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


def word_budgets(chunk_size: int, overlap: int, chars_per_word: float = CHARS_PER_WORD):
    """Return (word_budget, overlap_words) for character budgets."""
    word_budget = max(1, math.floor(chunk_size / chars_per_word))
    overlap_words = max(0, math.floor(overlap / chars_per_word))
    return word_budget, min(overlap_words, word_budget - 1)


def _tail(words: List[str], count: int) -> List[str]:
    # words[-0:] would be the whole list
    return words[-count:] if count else []


def split_paragraphs(text: str) -> List[List[str]]:
    paragraphs = (p.split() for p in _PARAGRAPH_BREAK.split(text.strip()))
    return [p for p in paragraphs if p]


def chunk_text(
    text: str,
    chunk_size: int = 800,
    overlap: int = 150,
    chars_per_word: float = CHARS_PER_WORD,
) -> List[str]:
    if not text or not text.strip():
        return []

    word_budget, overlap_words = word_budgets(chunk_size, overlap, chars_per_word)
    step = word_budget - overlap_words

    chunks: List[str] = []
    current: List[str] = []

    for words in split_paragraphs(text):
        if len(words) > word_budget:
            if current:
                chunks.append(" ".join(current))
            # Every window start inside the paragraph is emitted, so the last
            # window can be shorter than the overlap
            for start in range(0, len(words), step):
                window = words[start:start + word_budget]
                chunks.append(" ".join(window))
            current = _tail(window, overlap_words)
            continue

        if len(current) + len(words) <= word_budget:
            current.extend(words)
        else:
            if current:
                chunks.append(" ".join(current))
            current = _tail(current, overlap_words) + words

    # The remaining buffer is flushed even when it only holds carried-over words
    if current:
        chunks.append(" ".join(current))

    return [c for c in chunks if c.strip()]
