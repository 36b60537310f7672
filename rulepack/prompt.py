# =============================================================================
# Prompt Builder
# =============================================================================
# This module renders a context bundle into the chat-turn prompt handed to
# the on-device model, then trims the bundle until the prompt fits under a
# hard character cap derived from the model's context window.

from dataclasses import dataclass
from typing import List

from rulepack.assembler import drop_last
from rulepack.errors import W_PROMPT_OVERFLOW, make_warning


DEFAULT_SYSTEM_INSTRUCTION = (
    "Answer using only the provided context. Cite the rule id or card id "
    "in brackets for every excerpt you use. If the context is insufficient, "
    "reply exactly: Insufficient retrieved context."
)

RULES_HEADER = 'Rules excerpts (cite by rule id):'
ENTITIES_HEADER = 'Card excerpts (cite by card id):'
EMPTY_CONTEXT = 'No excerpts were retrieved.'


@dataclass
class PromptResult:
    prompt: str
    bundle: object
    dropped: int
    warnings: List[dict]

    @property
    def char_len(self):
        return len(self.prompt)


def build_context_block(bundle):
    """
    Render the bundle's rules and entities as two labeled excerpt sections.

    Each line carries the id the model should cite, e.g.
        [702.19a] Trample is a static ability ...
        [card:abc123] Lightning Bolt: Lightning Bolt deals 3 damage ...

    Args:
        bundle: ContextBundle

    Returns:
        str: The context block (a fixed placeholder when the bundle is empty)
    """
    parts = []
    if bundle.rules:
        parts.append(RULES_HEADER)
        for rule in bundle.rules:
            parts.append(f"[{rule.rule_id}] {rule.text}".strip())
    if bundle.entities:
        if parts:
            parts.append('')
        parts.append(ENTITIES_HEADER)
        for entity in bundle.entities:
            parts.append(f"[card:{entity.id}] {entity.name}: {entity.body_text}".strip())
    if not parts:
        return EMPTY_CONTEXT
    return '\n'.join(parts)


def build_prompt(context_block, question, system_instruction=DEFAULT_SYSTEM_INSTRUCTION):
    """Wrap the context block and the literal question in the chat template."""
    return (
        f"<|im_start|>system\n{system_instruction}<|im_end|>\n"
        f"<|im_start|>user\n"
        f"Context:\n{context_block}\n\n"
        f"Question: {question}<|im_end|>\n"
        f"<|im_start|>assistant\n"
    )


def render(bundle, question, system_instruction=DEFAULT_SYSTEM_INSTRUCTION):
    return build_prompt(build_context_block(bundle), question, system_instruction)


def trim_to_fit(bundle, question, max_chars, system_instruction=DEFAULT_SYSTEM_INSTRUCTION,
                chars_per_token=4, logger=None):
    """
    Preflight the prompt against the hard cap.

    The last-appended bundle item is dropped and the prompt re-rendered
    until it fits. If the bundle runs empty and the bare template is still
    too long, that prompt is returned as-is with a W_PROMPT_OVERFLOW warning.

    Args:
        bundle: ContextBundle from the assembler
        question: The user's question, inserted verbatim
        max_chars: Hard character cap for the rendered prompt
        system_instruction: System turn text
        chars_per_token: Ratio used to keep the bundle's token estimate current
        logger: Optional logger for tracking trims

    Returns:
        PromptResult: Final prompt, the (possibly trimmed) bundle and warnings
    """
    prompt = render(bundle, question, system_instruction)
    dropped = 0
    while len(prompt) > max_chars and not bundle.is_empty:
        bundle = drop_last(bundle, chars_per_token)
        dropped += 1
        prompt = render(bundle, question, system_instruction)

    if dropped and logger:
        logger.debug(f"Trimmed {dropped} bundle item(s) to fit {max_chars} chars")

    warnings = []
    if len(prompt) > max_chars:
        message = f"Prompt is {len(prompt)} chars with an empty bundle; cap is {max_chars}"
        if logger:
            logger.warning(message)
        warnings.append(make_warning(W_PROMPT_OVERFLOW, message, {
            'prompt_chars': len(prompt),
            'max_prompt_chars': max_chars,
        }))

    return PromptResult(prompt=prompt, bundle=bundle, dropped=dropped, warnings=warnings)
