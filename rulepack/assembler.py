# =============================================================================
# Budget Assembler
# =============================================================================
# This module packs the resolved entity and the selected rules into a single
# context bundle under a fixed token budget.
#
# The packer is greedy on purpose: items go in category order (entities,
# definitions, mechanism, supporting) and assembly stops at the first item
# that would push the estimate over the budget. Answer wording depends on
# exactly which rules are included, so this order must stay stable.

import math
from dataclasses import dataclass, field
from typing import List, Tuple

from rulepack.store import Entity, Rule

DEFAULT_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class RoutingTrace:
    sections_considered: Tuple[int, ...]
    sections_selected: Tuple[int, ...]

    def to_dict(self):
        return {
            'sections_considered': list(self.sections_considered),
            'sections_selected': list(self.sections_selected),
        }


@dataclass(frozen=True)
class ContextBundle:
    entities: Tuple[Entity, ...] = ()
    rules: Tuple[Rule, ...] = ()
    keywords: Tuple[str, ...] = ()
    routing_trace: RoutingTrace = field(default_factory=lambda: RoutingTrace((), ()))
    token_estimate: int = 0

    @property
    def is_empty(self):
        return not self.entities and not self.rules

    @property
    def rule_ids(self):
        return [r.rule_id for r in self.rules]

    def to_dict(self):
        return {
            'entities': [
                {'id': e.id, 'name': e.name, 'body_text': e.body_text}
                for e in self.entities
            ],
            'rules': [
                {'rule_id': r.rule_id, 'section': r.section, 'text': r.text}
                for r in self.rules
            ],
            'keywords': list(self.keywords),
            'routing_trace': self.routing_trace.to_dict(),
            'token_estimate': self.token_estimate,
        }


def estimate_tokens(text, chars_per_token=DEFAULT_CHARS_PER_TOKEN):
    """Rough token count: characters divided by a fixed ratio, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def assemble(entities, definitions, mechanism, supporting, budget,
             chars_per_token=DEFAULT_CHARS_PER_TOKEN, max_definitions=2,
             keywords=(), routing_trace=None):
    """
    Greedily pack excerpts into a bundle.

    Args:
        entities: Resolved entities (zero or one in practice)
        definitions: Definition rules; only the first max_definitions are tried
        mechanism: Rules from the routed sections
        supporting: Rules reached through hard includes or concept defaults
        budget: Token budget for the whole bundle
        chars_per_token: Ratio used by the estimator
        max_definitions: Cap on definition rules
        keywords: Query and entity keyword tokens carried on the bundle
        routing_trace: RoutingTrace carried on the bundle

    Returns:
        ContextBundle: Everything that fit, in priority order
    """
    total = 0
    included_entities: List[Entity] = []
    included_rules: List[Rule] = []

    queue = [('entity', e, e.body_text) for e in entities]
    queue += [('rule', r, r.text) for r in list(definitions)[:max_definitions]]
    queue += [('rule', r, r.text) for r in mechanism]
    queue += [('rule', r, r.text) for r in supporting]

    for kind, item, text in queue:
        est = estimate_tokens(text, chars_per_token)
        if total + est > budget:
            break
        total += est
        if kind == 'entity':
            included_entities.append(item)
        else:
            included_rules.append(item)

    return ContextBundle(
        entities=tuple(included_entities),
        rules=tuple(included_rules),
        keywords=tuple(keywords),
        routing_trace=routing_trace or RoutingTrace((), ()),
        token_estimate=total,
    )


def render_raw_bundle(bundle):
    """
    Plain-text form of a bundle, used for parity comparison.

    Example:
        [Card: Lightning Bolt]
        Lightning Bolt deals 3 damage to any target.

        [Rule 702.19a]
        Trample is a static ability ...
    """
    parts = [f"[Card: {e.name}]\n{e.body_text}" for e in bundle.entities]
    parts += [f"[Rule {r.rule_id}]\n{r.text}" for r in bundle.rules]
    return '\n\n'.join(parts)


def drop_last(bundle, chars_per_token=DEFAULT_CHARS_PER_TOKEN):
    """
    Remove the last-appended item: the last rule if any, otherwise the last
    entity. Returns a new bundle.
    """
    if bundle.rules:
        removed = bundle.rules[-1].text
        entities, rules = bundle.entities, bundle.rules[:-1]
    elif bundle.entities:
        removed = bundle.entities[-1].body_text
        entities, rules = bundle.entities[:-1], bundle.rules
    else:
        return bundle
    return ContextBundle(
        entities=entities,
        rules=rules,
        keywords=bundle.keywords,
        routing_trace=bundle.routing_trace,
        token_estimate=max(0, bundle.token_estimate - estimate_tokens(removed, chars_per_token)),
    )
