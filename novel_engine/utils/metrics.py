"""Deterministic prose metrics used by the quality dimensions."""

import re
from statistics import pstdev

from .text import split_paragraphs


def repetition_rate(text: str, n: int = 3) -> float:
    """Calculate the ratio of repeated n-grams to total n-grams.

    Args:
        text: Input text to analyze.
        n: Size of n-grams to consider (default 3).

    Returns:
        Float between 0.0 (no repetition) and 1.0 (all repeated).
        Returns 0.0 if text is too short to form any n-grams.
    """
    words = text.lower().split()
    if len(words) < n:
        return 0.0

    ngrams = [tuple(words[i : i + n]) for i in range(len(words) - n + 1)]
    return 1.0 - (len(set(ngrams)) / len(ngrams))


def vocabulary_diversity(text: str) -> float:
    """Type-token ratio (unique words / total words), 0.0 for empty text."""
    words = re.findall(r"[\w']+", text.lower())
    if not words:
        return 0.0
    return len(set(words)) / len(words)


def sentence_lengths(text: str) -> list[int]:
    sentences = [s.strip() for s in re.split(r"[.!?]+", text) if s.strip()]
    return [len(s.split()) for s in sentences]


def avg_sentence_length(text: str) -> float:
    """Average number of words per sentence, split on `.`, `!` and `?`."""
    lengths = sentence_lengths(text)
    if not lengths:
        return 0.0
    return sum(lengths) / len(lengths)


def sentence_length_spread(text: str) -> float:
    """Standard deviation of sentence lengths; low values read as monotonous."""
    lengths = sentence_lengths(text)
    if len(lengths) < 2:
        return 0.0
    return pstdev(lengths)


def dialogue_ratio(text: str) -> float:
    """Share of characters that sit inside quotation marks."""
    if not text:
        return 0.0
    quoted = re.findall(r'"[^"]*"|“[^”]*”|「[^」]*」', text)
    return sum(len(q) for q in quoted) / len(text)


def unbalanced_quotes(text: str) -> bool:
    straight = text.count('"') % 2 == 1
    curly = text.count('“') != text.count('”')
    return straight or curly


def paragraph_word_counts(text: str) -> list[int]:
    return [len(p.split()) for p in split_paragraphs(text)]
