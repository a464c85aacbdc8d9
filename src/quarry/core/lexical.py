"""Keyword query parsing and BM25 ranking.

Queries are an OR of significant terms. Double-quoted text is a phrase that
must appear as consecutive tokens, and ``-term`` excludes documents containing
that term. Tokenization approximates the Postgres ``simple`` text search
configuration: lowercase, split on anything that is not a letter or digit,
except that dotted numbers, versions, hostnames, email addresses and
hyphenated words stay one token. The Postgres store hands each term back to
the server's own parser.
"""

import re
from dataclasses import dataclass, field
from typing import List, Sequence

import numpy as np
from rank_bm25 import BM25Plus

_TOKEN = re.compile(r"[^\W_]+(?:[.@-][^\W_]+)*")
_PHRASE = re.compile(r'"([^"]*)"')


def tokenize(text: str) -> List[str]:
    return _TOKEN.findall(text.lower())


def is_significant(token: str) -> bool:
    return len(token) > 1 or token.isdigit()


def _unique(tokens: Sequence[str]) -> List[str]:
    seen = set()
    result = []
    for token in tokens:
        if token not in seen:
            seen.add(token)
            result.append(token)
    return result


@dataclass
class LexicalQuery:
    terms: List[str] = field(default_factory=list)
    phrases: List[List[str]] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.terms and not self.phrases

    def scoring_tokens(self) -> List[str]:
        tokens = list(self.terms)
        for phrase in self.phrases:
            tokens.extend(phrase)
        return _unique(tokens)


def parse_query(text: str) -> LexicalQuery:
    """Parse free text into terms, phrases and exclusions."""
    query = LexicalQuery()
    if not text:
        return query

    for quoted in _PHRASE.findall(text):
        tokens = tokenize(quoted)
        if len(tokens) > 1:
            query.phrases.append(tokens)
        elif tokens and is_significant(tokens[0]):
            query.terms.append(tokens[0])

    remainder = _PHRASE.sub(" ", text).replace('"', " ")
    for word in remainder.split():
        if word.lower() == "or":
            continue
        if word.startswith("-") and len(word) > 1:
            query.excluded.extend(tokenize(word[1:]))
            continue
        query.terms.extend(t for t in tokenize(word) if is_significant(t))

    query.terms = _unique(query.terms)
    query.excluded = _unique(query.excluded)
    return query


def contains_phrase(tokens: Sequence[str], phrase: Sequence[str]) -> bool:
    width = len(phrase)
    if width == 0 or width > len(tokens):
        return False
    first = phrase[0]
    for i in range(len(tokens) - width + 1):
        if tokens[i] == first and list(tokens[i:i + width]) == list(phrase):
            return True
    return False


def matches(query: LexicalQuery, tokens: Sequence[str]) -> bool:
    """True when the document satisfies the OR-of-terms query."""
    token_set = set(tokens)
    if any(term in token_set for term in query.excluded):
        return False
    if any(term in token_set for term in query.terms):
        return True
    return any(contains_phrase(tokens, phrase) for phrase in query.phrases)


def rank_documents(query: LexicalQuery, documents: List[List[str]]) -> List[float]:
    """
    Keyword rank per document; 0.0 for documents the query does not match.

    BM25+ keeps every matching document's score strictly positive, so a
    non-zero rank always means a keyword hit.
    """
    ranks = [0.0] * len(documents)
    if query.is_empty or not documents or not any(documents):
        return ranks

    bm25 = BM25Plus(documents)
    scores = bm25.get_scores(query.scoring_tokens())
    for i, tokens in enumerate(documents):
        if matches(query, tokens):
            ranks[i] = float(np.maximum(scores[i], 0.0))
    return ranks
