"""Tokenization utilities shared by chunking, token budgets and lexical scoring."""
from __future__ import annotations

import re
from typing import List, Tuple

_TOKEN_PATTERN = re.compile(r"[\w']+")

Span = Tuple[int, int]


def tokenize(text: str) -> List[str]:
    """Tokenize text into lowercase alphanumeric tokens."""

    return [token.lower() for token in _TOKEN_PATTERN.findall(text)]


def tokenize_with_spans(text: str) -> Tuple[List[str], List[Span]]:
    """Return tokens alongside their ``(start, end)`` character spans."""

    tokens: List[str] = []
    spans: List[Span] = []
    for match in _TOKEN_PATTERN.finditer(text):
        tokens.append(match.group(0).lower())
        spans.append((match.start(), match.end()))
    return tokens, spans


def count_tokens(text: str) -> int:
    """Return the number of tokens ``tokenize`` would produce for ``text``."""

    return sum(1 for _ in _TOKEN_PATTERN.finditer(text))

