# =============================================================================
# Router Configuration
# =============================================================================
# The router configuration (router_map.json) and the optional provider spec
# (context_provider_spec.json) are versioned assets shipped inside the pack.
# This module parses them once into immutable objects; nothing here decides
# routing, it only exposes the lookups the analyzer and router consume.

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Mapping, Optional, Tuple
from types import MappingProxyType

from rulepack.errors import EngineError, E_CONTEXT_PROVIDER

ROUTER_MAP_SCHEMA_VERSION = 1

DEFAULT_STOPWORDS = ('the', 'a', 'of')

DEFAULT_EXTRACTION_PATTERNS = (
    r'^what does (.+?) do$',
    r'^how does (.+?) work$',
    r'^what is (.+?)$',
)


@dataclass(frozen=True)
class ResolverThresholds:
    prefix_len_min: int = 3
    prefix_index_len: int = 3


@dataclass(frozen=True)
class RouterConfig:
    stopwords: FrozenSet[str]
    resolver: ResolverThresholds
    section_keywords: Mapping[str, Tuple[int, ...]]
    keyword_abilities: Mapping[str, Tuple[str, ...]]
    keyword_ability_section: Optional[int]
    definitions: Mapping[str, Tuple[str, ...]]
    section_defaults: Mapping[int, Tuple[str, ...]]
    concepts: Mapping[str, Tuple[str, ...]]
    default_sections: Tuple[int, ...]
    schema_version: int = ROUTER_MAP_SCHEMA_VERSION


@dataclass(frozen=True)
class ProviderSpec:
    char_map: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    extraction_patterns: Tuple[re.Pattern, ...] = ()


def _fail(message, details=None):
    raise EngineError(E_CONTEXT_PROVIDER, message, details)


def _string_list_map(data, key):
    raw = data.get(key) or {}
    if not isinstance(raw, dict):
        _fail(f"router_map.{key} must be an object", {'type': type(raw).__name__})
    out: Dict[str, Tuple[str, ...]] = {}
    for token, values in raw.items():
        if isinstance(values, str):
            values = [values]
        if not isinstance(values, list):
            _fail(f"router_map.{key}.{token} must be a list", {'token': token})
        out[str(token)] = tuple(str(v) for v in values)
    return MappingProxyType(out)


def _threshold(resolver_raw, key, default):
    value = resolver_raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        _fail(f"router_map.resolver.{key} must be a positive integer", {'value': value})
    return value


def _section(value, where):
    try:
        return int(value)
    except (TypeError, ValueError):
        _fail(f"Invalid section in {where}: {value!r}")


def parse_router_config(data):
    """
    Parse the router_map.json document.

    Args:
        data: The decoded JSON document

    Returns:
        RouterConfig: The immutable router configuration

    Raises:
        EngineError: E_CONTEXT_PROVIDER if the document is not usable
    """
    if not isinstance(data, dict):
        _fail('router_map must be a JSON object')

    schema_version = data.get('schema_version', ROUTER_MAP_SCHEMA_VERSION)
    if schema_version != ROUTER_MAP_SCHEMA_VERSION:
        _fail(f"Unsupported router_map schema_version: {schema_version}", {
            'expected': ROUTER_MAP_SCHEMA_VERSION,
        })

    stopwords = data.get('stopwords')
    if stopwords is None:
        stopwords = list(DEFAULT_STOPWORDS)
    if not isinstance(stopwords, list):
        _fail('router_map.stopwords must be a list')

    resolver_raw = data.get('resolver') or {}
    if not isinstance(resolver_raw, dict):
        _fail('router_map.resolver must be an object')
    defaults = ResolverThresholds()
    resolver = ResolverThresholds(
        prefix_len_min=_threshold(resolver_raw, 'prefix_len_min', defaults.prefix_len_min),
        prefix_index_len=_threshold(resolver_raw, 'prefix_index_len', defaults.prefix_index_len),
    )

    section_keywords_raw = data.get('section_keywords') or {}
    if not isinstance(section_keywords_raw, dict):
        _fail('router_map.section_keywords must be an object')
    section_keywords = {}
    for token, sections in section_keywords_raw.items():
        if not isinstance(sections, list):
            sections = [sections]
        section_keywords[str(token)] = tuple(
            _section(s, f"section_keywords.{token}") for s in sections
        )

    section_defaults_raw = data.get('section_defaults') or {}
    if not isinstance(section_defaults_raw, dict):
        _fail('router_map.section_defaults must be an object')
    section_defaults = {}
    for section, rule_ids in section_defaults_raw.items():
        if isinstance(rule_ids, str):
            rule_ids = [rule_ids]
        if not isinstance(rule_ids, list):
            _fail(f"router_map.section_defaults.{section} must be a list")
        section_defaults[_section(section, 'section_defaults')] = tuple(str(r) for r in rule_ids)

    kas = data.get('keyword_ability_section', 702)
    default_sections = data.get('default_sections') or []
    if not isinstance(default_sections, list):
        _fail('router_map.default_sections must be a list')

    return RouterConfig(
        stopwords=frozenset(str(s) for s in stopwords),
        resolver=resolver,
        section_keywords=MappingProxyType(section_keywords),
        keyword_abilities=_string_list_map(data, 'keyword_abilities'),
        keyword_ability_section=None if kas is None else _section(kas, 'keyword_ability_section'),
        definitions=_string_list_map(data, 'definitions'),
        section_defaults=MappingProxyType(section_defaults),
        concepts=_string_list_map(data, 'concepts'),
        default_sections=tuple(_section(s, 'default_sections') for s in default_sections),
        schema_version=schema_version,
    )


def parse_provider_spec(data):
    """
    Parse the optional context_provider_spec.json document.

    A missing document (None) gives the built-in extraction patterns and
    no extra character mapping.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        _fail('context_provider_spec must be a JSON object')

    char_map = data.get('char_map') or {}
    if not isinstance(char_map, dict):
        _fail('context_provider_spec.char_map must be an object')

    patterns = data.get('extraction_patterns')
    if patterns is None:
        patterns = list(DEFAULT_EXTRACTION_PATTERNS)
    if not isinstance(patterns, list):
        _fail('context_provider_spec.extraction_patterns must be a list')

    compiled = []
    for pattern in patterns:
        try:
            regex = re.compile(str(pattern))
        except re.error as e:
            _fail(f"Invalid extraction pattern: {pattern!r}", {'cause': str(e)})
        if regex.groups < 1:
            _fail(f"Extraction pattern needs a capture group: {pattern!r}")
        compiled.append(regex)

    return ProviderSpec(
        char_map=MappingProxyType({str(k): str(v) for k, v in char_map.items()}),
        extraction_patterns=tuple(compiled),
    )
