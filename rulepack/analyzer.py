# =============================================================================
# Query Analyzer & Entity Resolver
# =============================================================================
# This module normalizes a free-text question, extracts the keyword tokens
# used for scoring, and resolves at most one named entity (a card) by exact
# or longest n-gram match against the store. There is no fuzzy scoring:
# resolution is either a unique exact hit or nothing.

import re
import unicodedata
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from rulepack.store import Entity

MIN_TOKEN_LENGTH = 3

# Longest n-gram tried during resolution
MAX_NGRAM = 4

# Rule citations such as 702, 702.19 or 702.19a
RULE_ID_PATTERN = re.compile(r'\b\d{3}(?:\.\d+)*[a-z]?\b')

_APOSTROPHES = re.compile(r"['‘’ʼ`]")
# A dot survives only between two digits (rule ids); everything else that is
# not a letter, digit or whitespace becomes a space
_STRAY_DOTS = re.compile(r'(?<!\d)\.|\.(?!\d)')
_NON_WORD = re.compile(r'[^a-z0-9.\s]')
_WHITESPACE = re.compile(r'\s+')


@dataclass(frozen=True)
class QueryAnalysis:
    normalized_query: str
    tokens: Tuple[str, ...]
    keyword_tokens: Tuple[str, ...]
    extracted_name: Optional[str] = None
    rule_citations: Tuple[str, ...] = ()
    resolved_entity: Optional[Entity] = None
    resolution_step: Optional[str] = None

    @property
    def keyword_set(self) -> FrozenSet[str]:
        return frozenset(self.keyword_tokens)

    @property
    def resolved_entity_name(self):
        return self.resolved_entity.name if self.resolved_entity else None


def fold_diacritics(text):
    decomposed = unicodedata.normalize('NFKD', text)
    return ''.join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize(text, spec=None):
    """
    Normalize text for matching: lowercase, diacritic-fold, strip
    punctuation and collapse whitespace.

    Args:
        text: Raw text
        spec: Optional ProviderSpec whose char_map is applied first

    Returns:
        str: The normalized text

    Example:
        normalize("Æther Vial's   cost?") with char_map {"Æ": "Ae"}
        returns "aether vials cost"
    """
    if not text:
        return ''
    if spec is not None:
        for source, target in spec.char_map.items():
            text = text.replace(source, target)
    text = fold_diacritics(text).lower()
    text = _APOSTROPHES.sub('', text)
    text = _NON_WORD.sub(' ', text)
    text = _STRAY_DOTS.sub(' ', text)
    return _WHITESPACE.sub(' ', text).strip()


def keyword_tokens(normalized, stopwords):
    """
    Tokens used for scoring: long enough and not a stopword.
    Order of first appearance is kept; duplicates are dropped.
    """
    out = []
    seen = set()
    for token in normalized.split():
        if len(token) < MIN_TOKEN_LENGTH or token in stopwords or token in seen:
            continue
        seen.add(token)
        out.append(token)
    return tuple(out)


def extract_rule_citations(normalized):
    citations = []
    for match in RULE_ID_PATTERN.finditer(normalized):
        if match.group(0) not in citations:
            citations.append(match.group(0))
    return tuple(citations)


def extract_entity_name(normalized, spec):
    """First extraction pattern that matches gives the step (a) candidate."""
    if spec is None:
        return None
    for pattern in spec.extraction_patterns:
        match = pattern.search(normalized)
        if match and match.group(1) and match.group(1).strip():
            return match.group(1).strip()
    return None


class EntityResolver:
    """
    Resolves a normalized query to at most one entity.

    Every lookup goes through the name-prefix index first: a phrase is only
    compared against entities indexed under its leading characters.

    Args:
        cards: CardsStore
        thresholds: ResolverThresholds from the router configuration
    """

    def __init__(self, cards, thresholds):
        self.cards = cards
        self.thresholds = thresholds

    def lookup(self, phrase):
        if not phrase:
            return None
        prefix_len = self.thresholds.prefix_index_len
        if len(phrase) < prefix_len:
            return self.cards.entity_by_normalized_name(phrase)
        return self.cards.entity_by_prefix_and_name(phrase[:prefix_len], phrase)

    def _anchored(self, normalized, tokens, smallest):
        for n in range(min(MAX_NGRAM, len(tokens)), smallest - 1, -1):
            phrase = ' '.join(tokens[:n])
            if len(phrase) < self.thresholds.prefix_len_min:
                continue
            entity = self.lookup(phrase)
            if entity and normalized.startswith(phrase):
                return entity
        return None

    def _any_window(self, tokens):
        for n in range(min(MAX_NGRAM, len(tokens)), 1, -1):
            for i in range(len(tokens) - n + 1):
                entity = self.lookup(' '.join(tokens[i:i + n]))
                if entity:
                    return entity
        return None

    def resolve(self, normalized, extracted_name=None):
        """
        Try each strategy in order and stop at the first hit.

        Returns:
            tuple: (Entity or None, name of the step that hit or None)
        """
        if extracted_name:
            entity = self.lookup(extracted_name)
            if entity:
                return entity, 'extracted'

        if not normalized:
            return None, None

        entity = self.lookup(normalized)
        if entity:
            return entity, 'exact'

        tokens = normalized.split()

        entity = self._anchored(normalized, tokens, smallest=2)
        if entity:
            return entity, 'prefix_ngram'

        if len(tokens) >= 2:
            entity = self._any_window(tokens)
            if entity:
                return entity, 'window_ngram'

        entity = self._anchored(normalized, tokens, smallest=1)
        if entity:
            return entity, 'prefix_unigram'

        return None, None


def analyze_query(question, router_config, spec=None, resolver=None):
    """
    Analyze a raw question.

    Args:
        question: The user's question
        router_config: RouterConfig (stopwords)
        spec: Optional ProviderSpec (char map, extraction patterns)
        resolver: Optional EntityResolver; without one no entity is resolved

    Returns:
        QueryAnalysis: normalized text, keyword tokens, citations and the
            resolved entity (if any)
    """
    normalized = normalize(question, spec)
    extracted = extract_entity_name(normalized, spec)
    entity, step = (None, None)
    if resolver is not None:
        entity, step = resolver.resolve(normalized, extracted)

    return QueryAnalysis(
        normalized_query=normalized,
        tokens=tuple(normalized.split()),
        keyword_tokens=keyword_tokens(normalized, router_config.stopwords),
        extracted_name=extracted,
        rule_citations=extract_rule_citations(normalized),
        resolved_entity=entity,
        resolution_step=step,
    )


def entity_tokens(entity, router_config, spec=None):
    """Keyword tokens of an entity's name and body text (empty when no entity resolved)."""
    if entity is None:
        return ()
    text = f"{entity.name} {entity.body_text}"
    return keyword_tokens(normalize(text, spec), router_config.stopwords)
