from __future__ import annotations

import re
from collections.abc import Iterable

_STOP_WORDS = {
    "a",
    "all",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "by",
    "can",
    "do",
    "for",
    "from",
    "get",
    "give",
    "how",
    "in",
    "is",
    "it",
    "list",
    "me",
    "my",
    "of",
    "on",
    "or",
    "our",
    "show",
    "tell",
    "that",
    "the",
    "to",
    "us",
    "was",
    "we",
    "were",
    "what",
    "which",
    "with",
}


def tokenize(text: str) -> list[str]:
    return re.findall(r"[a-zA-Z0-9_]{2,}", text.lower())


def _stem(token: str) -> str:
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def informative_terms(text: str) -> list[str]:
    terms = (_stem(token) for token in tokenize(text) if token not in _STOP_WORDS)
    return list(dict.fromkeys(term for term in terms if not term.isdigit()))


def term_coverage(query: str, texts: Iterable[str]) -> float:
    """Share of the query's informative terms that appear in *texts*."""
    terms = informative_terms(query)
    if not terms:
        return 0.0
    vocabulary = {_stem(token) for text in texts for token in tokenize(text)}
    hits = sum(1 for term in terms if term in vocabulary)
    return hits / len(terms)
