# =============================================================================
# Router
# =============================================================================
# Maps an analyzed question plus the resolved entity's tokens to a routing
# plan: the ordered rule sections to score, rule-id prefixes that are always
# included, and concept-default rule ids.

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class SectionIntent:
    section: int
    reason: str


@dataclass(frozen=True)
class RoutingPlan:
    section_intents: Tuple[SectionIntent, ...]
    hard_include_prefixes: Tuple[str, ...]
    concept_default_rule_ids: Tuple[str, ...]
    keyword_ability_triggered: bool = False

    @property
    def sections(self):
        return tuple(intent.section for intent in self.section_intents)


def _append_unique(items, value):
    if value not in items:
        items.append(value)


def keyword_ability_hits(tokens, router_config):
    """Detected tokens that appear in the keyword->ability map, in order."""
    return [t for t in tokens if t in router_config.keyword_abilities]


def route(analysis, router_config, entity_tokens=()):
    """
    Build the routing plan for one question.

    Sections come from, in order:
    1. Explicit rule citations in the question (their three-digit section)
    2. section_keywords hits on query tokens, then on entity tokens
    3. The keyword-ability section, only when a query or entity token is a
       known keyword ability
    4. default_sections, when nothing above produced a section

    Args:
        analysis: QueryAnalysis for the question
        router_config: RouterConfig
        entity_tokens: Keyword tokens of the resolved entity (may be empty)

    Returns:
        RoutingPlan: The plan for the scorer
    """
    intents = []
    seen_sections = set()

    def add_section(section, reason):
        if section in seen_sections:
            return
        seen_sections.add(section)
        intents.append(SectionIntent(section=section, reason=reason))

    detected = list(analysis.keyword_tokens)
    for token in entity_tokens:
        _append_unique(detected, token)

    hard_includes = []
    for citation in analysis.rule_citations:
        _append_unique(hard_includes, citation)
        add_section(int(citation[:3]), f"citation:{citation}")

    for token in detected:
        for section in router_config.section_keywords.get(token, ()):
            add_section(section, f"keyword:{token}")

    ability_hits = keyword_ability_hits(detected, router_config)
    triggered = bool(ability_hits)
    if triggered:
        if router_config.keyword_ability_section is not None:
            add_section(router_config.keyword_ability_section, f"keyword_ability:{ability_hits[0]}")
        for token in ability_hits:
            for prefix in router_config.keyword_abilities[token]:
                _append_unique(hard_includes, prefix)

    if not intents:
        for section in router_config.default_sections:
            add_section(section, 'default')

    concept_ids = []
    for token in analysis.keyword_tokens:
        for rule_id in router_config.concepts.get(token, ()):
            _append_unique(concept_ids, rule_id)

    return RoutingPlan(
        section_intents=tuple(intents),
        hard_include_prefixes=tuple(hard_includes),
        concept_default_rule_ids=tuple(concept_ids),
        keyword_ability_triggered=triggered,
    )
