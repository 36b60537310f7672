# =============================================================================
# Candidate Scorer
# =============================================================================
# Scores every rule in each routed section by literal token overlap with the
# question keywords and the resolved entity's tokens, then gathers the
# definition, mechanism and supporting rules that the assembler packs.

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Tuple

from rulepack.store import Rule


@dataclass(frozen=True)
class ScoredRule:
    rule: Rule
    score: int
    query_overlap: int
    entity_overlap: int


@dataclass(frozen=True)
class SectionResult:
    section: int
    selected: Tuple[Rule, ...]
    used_default: bool = False


@dataclass(frozen=True)
class RuleSelection:
    definitions: Tuple[Rule, ...]
    mechanism: Tuple[Rule, ...]
    supporting: Tuple[Rule, ...]
    sections_considered: Tuple[int, ...]
    sections_selected: Tuple[int, ...]
    section_results: Tuple[SectionResult, ...] = ()


def overlap_score(rule_tokens, query_tokens, entity_tokens):
    """Return (query overlap, entity overlap) counts for one rule's token set."""
    query_overlap = sum(1 for t in rule_tokens if t in query_tokens)
    entity_overlap = sum(1 for t in rule_tokens if t in entity_tokens)
    return query_overlap, entity_overlap


def score_rules(rules, query_tokens, entity_tokens, entity_resolved, min_score=2, top_n=3):
    """
    Score a section's rules and keep the best few.

    A rule is kept when its total overlap is at least min_score and, when an
    entity resolved, it shares at least one token with that entity. Survivors
    sort by score descending, ties by ascending rule id.

    Args:
        rules: Rules of one section
        query_tokens: frozenset of question keyword tokens
        entity_tokens: frozenset of resolved-entity tokens
        entity_resolved: Whether an entity resolved for this question
        min_score: Discard threshold
        top_n: How many survivors to keep

    Returns:
        list: ScoredRule entries, best first
    """
    scored = []
    for rule in rules:
        query_overlap, entity_overlap = overlap_score(rule.tokens, query_tokens, entity_tokens)
        score = query_overlap + entity_overlap
        if score < min_score:
            continue
        if entity_resolved and entity_overlap < 1:
            continue
        scored.append(ScoredRule(rule, score, query_overlap, entity_overlap))

    scored.sort(key=lambda s: (-s.score, s.rule.rule_id))
    return scored[:top_n]


def section_is_gated(section, plan, router_config):
    """The keyword-ability section is only scored when a keyword ability was detected."""
    return (
        section == router_config.keyword_ability_section
        and not plan.keyword_ability_triggered
    )


def fetch_definitions(keyword_tokens, router_config, rules_store, limit=2):
    """
    Definition rules looked up directly from the keyword->definitions map,
    bypassing scoring. At most `limit` distinct ids are fetched.
    """
    rule_ids = []
    for token in keyword_tokens:
        for rule_id in router_config.definitions.get(token, ())[:limit]:
            if rule_id not in rule_ids:
                rule_ids.append(rule_id)
    rules = []
    for rule_id in rule_ids[:limit]:
        rule = rules_store.rule_by_id(rule_id)
        if rule:
            rules.append(rule)
    return rules


def _score_section(section, rules_store, router_config, query_tokens, entity_tokens,
                   entity_resolved, min_score, top_n):
    rules = rules_store.rules_by_section(section)
    top = score_rules(rules, query_tokens, entity_tokens, entity_resolved, min_score, top_n)
    if top:
        return SectionResult(section, tuple(s.rule for s in top))

    # Every selected section still contributes a grounding rule
    defaults = router_config.section_defaults.get(section, ())
    if defaults:
        rule = rules_store.rule_by_id(defaults[0])
        if rule:
            return SectionResult(section, (rule,), used_default=True)
    return SectionResult(section, ())


def _dedupe(rules, exclude=()):
    seen = set(exclude)
    out = []
    for rule in rules:
        if not rule.rule_id or rule.rule_id in seen:
            continue
        seen.add(rule.rule_id)
        out.append(rule)
    return out


def select_rules(analysis, plan, entity_token_list, router_config, rules_store,
                 context_config, executor=None, logger=None):
    """
    Run the scorer over a routing plan and categorize the collected rules.

    Collection order is: hard includes (by prefix), concept defaults, then
    each selected section's top rules in routing order. Categories, with
    first-seen de-duplication and this precedence:
      definitions  - up to max_definitions, from the definitions map
      mechanism    - collected rules whose section was scored
      supporting   - everything else that was collected

    Args:
        analysis: QueryAnalysis
        plan: RoutingPlan
        entity_token_list: Keyword tokens of the resolved entity
        router_config: RouterConfig
        rules_store: RulesStore
        context_config: The 'context' section of the engine config
        executor: Optional ThreadPoolExecutor to score sections concurrently
        logger: Optional logger for tracking decisions

    Returns:
        RuleSelection: The three categories plus the routing trace data
    """
    query_tokens = analysis.keyword_set
    entity_tokens = frozenset(entity_token_list)
    entity_resolved = analysis.resolved_entity is not None
    min_score = context_config['min_score']
    top_n = context_config['top_per_section']
    limit = context_config['hard_include_limit']

    collected = []
    for prefix in plan.hard_include_prefixes:
        collected.extend(rules_store.rules_by_id_prefix(prefix, limit))
    for rule_id in plan.concept_default_rule_ids:
        rule = rules_store.rule_by_id(rule_id)
        if rule:
            collected.append(rule)

    considered = plan.sections
    selected = tuple(
        s for s in considered if not section_is_gated(s, plan, router_config)
    )

    args = (rules_store, router_config, query_tokens, entity_tokens, entity_resolved, min_score, top_n)
    if executor is not None and len(selected) > 1:
        # map() yields in submission order, so the merge stays deterministic
        results = list(executor.map(lambda s: _score_section(s, *args), selected))
    else:
        results = [_score_section(s, *args) for s in selected]

    for result in results:
        if logger:
            ids = ', '.join(r.rule_id for r in result.selected) or '-'
            note = ' (section default)' if result.used_default else ''
            logger.debug(f"Section {result.section}: {ids}{note}")
        collected.extend(result.selected)

    definitions = _dedupe(
        fetch_definitions(analysis.keyword_tokens, router_config, rules_store,
                          context_config['max_definitions'])
    )[:context_config['max_definitions']]
    definition_ids = {r.rule_id for r in definitions}

    selected_set = set(selected)
    mechanism = _dedupe(
        [r for r in collected if r.section in selected_set], exclude=definition_ids
    )
    mechanism_ids = {r.rule_id for r in mechanism}
    supporting = _dedupe(collected, exclude=definition_ids | mechanism_ids)

    return RuleSelection(
        definitions=tuple(definitions),
        mechanism=tuple(mechanism),
        supporting=tuple(supporting),
        sections_considered=considered,
        sections_selected=selected,
        section_results=tuple(results),
    )


def create_section_executor(config):
    """Thread pool for per-section scoring, or None when fan-out is disabled."""
    if not config['context'].get('parallel_sections'):
        return None
    return ThreadPoolExecutor(max_workers=4, thread_name_prefix='rulepack-score')
