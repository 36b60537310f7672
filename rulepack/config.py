# =============================================================================
# Configuration Loading and Merging
# =============================================================================
# This module handles loading YAML config files and merging them with
# command-line overrides and the optional pack-supplied rag_config.json.
# It keeps things simple using plain dictionaries.

import copy
import math
import os
from pathlib import Path

import yaml


# =============================================================================
# Built-in defaults (mobile-tuned). configs/base.yaml is merged on top.
# =============================================================================
DEFAULT_CONFIG = {
    'pack': {
        'root': 'data/content_pack',
        'embedding_model_id': None,
        'deterministic_only': True,
    },
    'context': {
        'budget': 800,
        'chars_per_token': 4,
        'min_score': 2,
        'top_per_section': 3,
        'max_definitions': 2,
        'hard_include_limit': 2,
        'parallel_sections': False,
    },
    'prompt': {
        'max_prompt_chars': 1400,
        'system_instruction': (
            'Answer using only the provided context. Use concise bullet points. '
            'Include exactly one quoted sentence from context. If context is '
            'insufficient, reply exactly: Insufficient retrieved context.'
        ),
    },
    'model': {
        'chat_n_ctx': 1024,
        'n_predict': 96,
        'generation': {
            'temperature': 0,
            'top_p': 1,
            'top_k': 1,
            'penalty_repeat': 1,
        },
    },
    'retrieval': {
        'top_k_rules': 3,
        'top_k_cards': 2,
        'top_k_merge': 4,
        'rules_weight': 0.6,
        'cards_weight': 0.4,
    },
    'completion': {
        'base_url': 'http://localhost:11434/v1',
        'model': 'llama3.2',
        'embedding_model': 'nomic-embed-text',
        'timeout': 60,
    },
    'debug': {
        'excerpt_len': 180,
        'prompt_preview_len': 400,
    },
}

# Supported schema_version of rag_config.json
PACK_CONFIG_SCHEMA_VERSION = 1

# rag_config.json key -> (dotted config section, config key, kind)
# kinds: number (finite), positive (finite and > 0), string (non-blank)
_TOP_LEVEL_OVERRIDES = {
    'n_predict': ('model', 'n_predict', 'positive'),
    'chat_n_ctx': ('model', 'chat_n_ctx', 'positive'),
    'context_budget': ('context', 'budget', 'positive'),
}

_SECTION_OVERRIDES = {
    'generation': {
        'temperature': ('model.generation', 'temperature', 'number'),
        'top_p': ('model.generation', 'top_p', 'number'),
        'top_k': ('model.generation', 'top_k', 'number'),
        'penalty_repeat': ('model.generation', 'penalty_repeat', 'number'),
    },
    'retrieval': {
        'top_k_rules': ('retrieval', 'top_k_rules', 'positive'),
        'top_k_cards': ('retrieval', 'top_k_cards', 'positive'),
        'top_k_merge': ('retrieval', 'top_k_merge', 'positive'),
        'rules_weight': ('retrieval', 'rules_weight', 'number'),
        'cards_weight': ('retrieval', 'cards_weight', 'number'),
    },
    'prompt': {
        'max_prompt_chars': ('prompt', 'max_prompt_chars', 'positive'),
        'chars_per_token_est': ('context', 'chars_per_token', 'positive'),
        'system_instruction': ('prompt', 'system_instruction', 'string'),
    },
    'debug': {
        'excerpt_len': ('debug', 'excerpt_len', 'positive'),
        'prompt_preview_len': ('debug', 'prompt_preview_len', 'positive'),
    },
}


def get_project_root():
    """
    Directory that holds main.py, configs/ and the default data/ and
    runs/ folders.

    Returns:
        Path: Absolute project root
    """
    # Go up from rulepack/ to the project root
    return Path(__file__).parent.parent


def load_yaml_file(file_path):
    """
    Read a YAML config file.

    A missing file is not an error: optional layers such as a custom
    --config file or secrets.yaml simply contribute nothing.

    Args:
        file_path: Location of the YAML document

    Returns:
        dict: Parsed mapping (empty for a missing or empty file)
    """
    path = Path(file_path)
    if not path.exists():
        return {}

    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def deep_merge(base, override):
    """
    Layer one config dictionary over another, section by section.
    Leaf values from override win; neither input is modified.

    Args:
        base: Lower-priority settings
        override: Higher-priority settings

    Returns:
        dict: A fresh merged dictionary

    Example:
        deep_merge({'context': {'budget': 800, 'min_score': 2}},
                   {'context': {'budget': 300}})
        -> {'context': {'budget': 300, 'min_score': 2}}
    """
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def default_config():
    """Return a fresh copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def load_config(config_path=None, cli_overrides=None):
    """
    Load configuration from YAML files and merge with CLI overrides.

    The loading order is:
    1. Built-in defaults (DEFAULT_CONFIG)
    2. configs/base.yaml
    3. Custom config file (if provided via --config)
    4. CLI overrides (highest priority)

    Args:
        config_path: Optional path to a custom config YAML file
        cli_overrides: Optional dict of CLI argument overrides

    Returns:
        dict: The merged configuration dictionary
    """
    project_root = get_project_root()

    # Step 1 + 2: defaults, then base config
    base_config_path = project_root / 'configs' / 'base.yaml'
    config = deep_merge(DEFAULT_CONFIG, load_yaml_file(base_config_path))

    # Step 3: Merge custom config file (if provided)
    if config_path:
        custom_config = load_yaml_file(config_path)
        config = deep_merge(config, custom_config)

    # Step 4: Apply CLI overrides (if provided)
    if cli_overrides:
        config = deep_merge(config, cli_overrides)

    return config


def _is_number(value):
    # bool is an int subclass; a JSON true/false is never a valid tunable
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _is_positive(value):
    return _is_number(value) and value > 0


def _is_string(value):
    return isinstance(value, str) and bool(value.strip())


_VALIDATORS = {
    'number': _is_number,
    'positive': _is_positive,
    'string': _is_string,
}


def _set_path(config, dotted_section, key, value):
    target = config
    for part in dotted_section.split('.'):
        target = target.setdefault(part, {})
    target[key] = value


def apply_pack_overrides(config, override, logger=None):
    """
    Apply an optional pack-supplied rag_config.json on top of a config.

    Every field is validated on its own: numbers must be finite (booleans are
    rejected), sizes and ratios must also be greater than zero, and strings
    must be non-blank. Invalid fields are ignored with a warning and
    unknown fields are ignored silently. If the override declares an
    unsupported schema_version, nothing is applied.

    Args:
        config: The configuration dictionary to start from (not modified)
        override: The parsed rag_config.json contents (or None)
        logger: Optional logger for rejected fields

    Returns:
        tuple: (new config dict, list of applied dotted keys)
    """
    result = copy.deepcopy(config)
    applied = []

    if not isinstance(override, dict):
        return result, applied

    schema_version = override.get('schema_version')
    if schema_version is not None and schema_version != PACK_CONFIG_SCHEMA_VERSION:
        return result, applied

    def apply(section, key, kind, value):
        if not _VALIDATORS[kind](value):
            if logger:
                logger.warning(f"Ignoring rag_config value for {section}.{key}: {value!r}")
            return
        _set_path(result, section, key, value)
        applied.append(f"{section}.{key}")

    for name, (section, key, kind) in _TOP_LEVEL_OVERRIDES.items():
        if name in override:
            apply(section, key, kind, override[name])

    for group, fields in _SECTION_OVERRIDES.items():
        values = override.get(group)
        if not isinstance(values, dict):
            continue
        for name, (section, key, kind) in fields.items():
            if name in values:
                apply(section, key, kind, values[name])

    return result, applied


def prompt_char_cap(config):
    """
    Hard cap on rendered prompt length, derived from the model context window.

    The window left after reserving n_predict tokens for generation is
    converted to characters and clamped by prompt.max_prompt_chars.
    """
    chars_per_token = config['context']['chars_per_token']
    n_ctx = config['model']['chat_n_ctx']
    n_predict = config['model']['n_predict']
    window_chars = max(0, int((n_ctx - n_predict) * chars_per_token))
    return min(int(config['prompt']['max_prompt_chars']), window_chars)


def get_secrets():
    """
    Load API keys and other secrets.

    configs/secrets.yaml is read when present; the OPENAI_API_KEY environment
    variable fills in a missing key (local OpenAI-compatible servers such as
    Ollama accept any placeholder).

    Returns:
        dict: Dictionary containing secrets (e.g., openai_api_key)
    """
    project_root = get_project_root()
    secrets_path = project_root / 'configs' / 'secrets.yaml'

    secrets = load_yaml_file(secrets_path)
    if not secrets.get('openai_api_key'):
        secrets['openai_api_key'] = os.getenv('OPENAI_API_KEY')

    return secrets


def resolve_path(path_str):
    """
    Turn a configured path (pack root, parity file) into an absolute one.
    Relative paths are taken from the project root, not the working
    directory, so the CLI behaves the same from anywhere.

    Args:
        path_str: Relative or absolute path

    Returns:
        Path: Absolute path
    """
    path = Path(path_str)

    if path.is_absolute():
        return path

    return get_project_root() / path


# =============================================================================
# Debug output
# =============================================================================
def print_config(config, indent=0):
    """
    Print the effective configuration as an indented tree (--verbose).

    Args:
        config: Configuration dictionary
        indent: Nesting depth, used by the recursion
    """
    prefix = "  " * indent
    for key, value in config.items():
        if isinstance(value, dict):
            print(f"{prefix}{key}:")
            print_config(value, indent + 1)
        else:
            print(f"{prefix}{key}: {value}")
