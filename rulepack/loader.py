# =============================================================================
# Pack Loader & Validator
# =============================================================================
# This module reads the pack manifest, capability blocks and per-index
# metadata and enforces the schema/version/embedding-identity invariants
# before any question runs. The result is an immutable DataState.
#
# Load order matters: the manifest is read and fully checked first, so a pack
# declaring an unsupported version fails without touching any other file.

import json
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from rulepack.config import apply_pack_overrides
from rulepack.errors import (
    EngineError,
    E_PACK_LOAD,
    E_PACK_SCHEMA,
    E_RETRIEVAL_FORMAT,
    E_VALIDATE_CAPABILITY,
    E_VALIDATE_SCHEMA,
    E_VALIDATE_FILES,
    E_CONTEXT_PROVIDER,
    E_INDEX_META,
    E_EMBED_MISMATCH,
    E_COUNTS_MISMATCH,
)
from rulepack.router_config import (
    RouterConfig,
    ProviderSpec,
    parse_router_config,
    parse_provider_spec,
)

# Supported pack_schema_version. Unknown versions hard-fail.
PACK_SCHEMA_VERSION = 1

# Supported sidecars validate capability schema_version.
VALIDATE_CAPABILITY_SCHEMA_VERSION = 1

# Supported retrieval format (vector blob layout).
RETRIEVAL_FORMAT_VERSION = 1

SUPPORTED_METRICS = ('l2', 'cosine')

INDEX_ROOTS = ('rules', 'cards')

DEFAULT_CONTEXT_FILES = {
    'rules_db': 'rules/rules.db',
    'cards_db': 'cards/cards.db',
    'router_map': 'router/router_map.json',
    'provider_spec': 'context_provider_spec.json',
}

PACK_CONFIG_FILE = 'rag_config.json'


@dataclass(frozen=True)
class InitParams:
    """
    Host-supplied initialization parameters.

    embedding_model_id is only checked against the pack when the legacy
    vector path is active (deterministic_only=False).
    """
    pack_root: str
    embedding_model_id: Optional[str] = None
    deterministic_only: bool = True


@dataclass(frozen=True)
class IndexMeta:
    embedding_model_id: str
    dim: int
    metric: str
    normalize: bool
    max_rows: Optional[int] = None


@dataclass(frozen=True)
class IndexPaths:
    meta: IndexMeta
    chunks_path: str
    vectors_path: str
    row_map_path: str


@dataclass(frozen=True)
class DataState:
    pack_root: str
    manifest: Mapping[str, Any]
    rules: IndexPaths
    cards: IndexPaths
    rules_rule_ids_path: str
    cards_name_lookup_path: str
    rules_db_path: str
    cards_db_path: str
    router_config: RouterConfig
    provider_spec: ProviderSpec
    config: Mapping[str, Any]
    config_overrides: Tuple[str, ...] = ()


def parse_json(raw, path):
    """Decode a JSON document, failing with E_PACK_LOAD on malformed content."""
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EngineError(E_PACK_LOAD, f"Invalid JSON: {path}", {
            'path': path,
            'cause': str(e),
        }) from e


def _read_text(reader, path):
    try:
        return reader.read_text(path)
    except UnicodeDecodeError as e:
        raise EngineError(E_PACK_LOAD, f"Not valid UTF-8: {path}", {
            'path': path,
            'cause': str(e),
        }) from e
    except OSError as e:
        raise EngineError(E_PACK_LOAD, f"Cannot read pack file: {path}", {
            'path': path,
            'cause': str(e),
        }) from e


def read_json(reader, path):
    """Read and decode a JSON document from the pack."""
    return parse_json(_read_text(reader, path), path)


def _file_path(files, key):
    entry = files.get(key) if isinstance(files, dict) else None
    if isinstance(entry, dict):
        path = entry.get('path')
        if isinstance(path, str) and path.strip():
            return path
    return None


def load_manifest(reader):
    """
    Load manifest.json and check versions and the validate capability.

    Args:
        reader: PackFileReader scoped to the pack root

    Returns:
        dict: The decoded manifest

    Raises:
        EngineError: with a kind specific to each malformed shape
    """
    manifest = read_json(reader, 'manifest.json')
    if not isinstance(manifest, dict):
        raise EngineError(E_PACK_LOAD, 'manifest.json must be a JSON object')

    version = manifest.get('pack_schema_version')
    if version != PACK_SCHEMA_VERSION:
        raise EngineError(E_PACK_SCHEMA, f"Unsupported pack_schema_version: {version}", {
            'expected': PACK_SCHEMA_VERSION,
            'actual': version,
        })

    rfv = manifest.get('retrieval_format_version', RETRIEVAL_FORMAT_VERSION)
    if rfv != RETRIEVAL_FORMAT_VERSION:
        raise EngineError(E_RETRIEVAL_FORMAT, f"Unsupported retrieval_format_version: {rfv}", {
            'expected': RETRIEVAL_FORMAT_VERSION,
            'actual': rfv,
        })

    sidecars = manifest.get('sidecars')
    capabilities = sidecars.get('capabilities') if isinstance(sidecars, dict) else None
    validate = capabilities.get('validate') if isinstance(capabilities, dict) else None
    if not isinstance(validate, dict):
        raise EngineError(
            E_VALIDATE_CAPABILITY,
            'Validate capability is required; missing from manifest.',
        )

    if validate.get('schema_version') != VALIDATE_CAPABILITY_SCHEMA_VERSION:
        raise EngineError(
            E_VALIDATE_SCHEMA,
            f"Unsupported validate capability schema_version: {validate.get('schema_version')}",
            {'expected': VALIDATE_CAPABILITY_SCHEMA_VERSION, 'actual': validate.get('schema_version')},
        )

    files = validate.get('files')
    missing = [
        key for key in ('rules_rule_ids', 'cards_name_lookup')
        if _file_path(files, key) is None
    ]
    if missing:
        raise EngineError(
            E_VALIDATE_FILES,
            'Validate capability must have files.rules_rule_ids.path and files.cards_name_lookup.path',
            {'missing': missing},
        )

    return manifest


def load_index_meta(reader, index_dir):
    """
    Load index_meta.json for an index root (rules or cards).

    Raises:
        EngineError: E_INDEX_META if the embedding id or dim is absent, or
            the metric is outside the supported set
    """
    path = f"{index_dir}/index_meta.json"
    meta = read_json(reader, path)
    if not isinstance(meta, dict):
        raise EngineError(E_INDEX_META, f"{path} must be a JSON object")

    embedding_model_id = meta.get('embed_model_id')
    dim = meta.get('dim')
    if not embedding_model_id or isinstance(dim, bool) or not isinstance(dim, int):
        raise EngineError(E_INDEX_META, f"Missing embed_model_id or dim in {path}", {'path': path})

    metric = meta.get('metric') or 'l2'
    if metric not in SUPPORTED_METRICS:
        raise EngineError(E_INDEX_META, f"Unsupported metric: {metric}", {
            'path': path,
            'supported': list(SUPPORTED_METRICS),
        })

    max_rows = meta.get('max_rows')
    return IndexMeta(
        embedding_model_id=str(embedding_model_id),
        dim=dim,
        metric=metric,
        normalize=bool(meta.get('normalize', False)),
        max_rows=max_rows if isinstance(max_rows, int) and not isinstance(max_rows, bool) else None,
    )


def check_embedding_identity(rules_meta, cards_meta, embedding_model_id):
    """Both indices must carry the caller-configured embedding id."""
    for label, meta in (('rules', rules_meta), ('cards', cards_meta)):
        if meta.embedding_model_id != embedding_model_id:
            raise EngineError(
                E_EMBED_MISMATCH,
                f"Pack ({label}) embed_model_id does not match app config",
                {'index': label, 'pack': meta.embedding_model_id, 'app': embedding_model_id},
            )


def check_counts(manifest):
    """Declared validate counts must agree with the manifest's index summaries."""
    validate = manifest['sidecars']['capabilities']['validate']
    counts = validate.get('counts') or {}
    indices = manifest.get('indices') or {}
    for key in INDEX_ROOTS:
        declared = counts.get(key) if isinstance(counts, dict) else None
        summary = indices.get(key) if isinstance(indices, dict) else None
        chunk_count = summary.get('chunk_count') if isinstance(summary, dict) else None
        if declared is None or chunk_count is None:
            continue
        if declared != chunk_count:
            raise EngineError(
                E_COUNTS_MISMATCH,
                f"Validate counts.{key} does not match manifest.indices.{key}.chunk_count",
                {f"counts_{key}": declared, f"indices_{key}_chunk_count": chunk_count},
            )


def context_provider_files(manifest):
    """
    Resolve the deterministic-path file locations from the manifest.

    The context_provider capability is required; individual file entries
    fall back to the conventional pack layout.
    """
    capabilities = manifest['sidecars']['capabilities']
    cp = capabilities.get('context_provider')
    if not isinstance(cp, dict):
        raise EngineError(
            E_CONTEXT_PROVIDER,
            'manifest.sidecars.capabilities.context_provider missing',
        )
    files = cp.get('files') or {}
    resolved = {}
    for key, default in DEFAULT_CONTEXT_FILES.items():
        resolved[key] = _file_path(files, key) or default
    return resolved


def _read_optional_json(reader, path):
    if hasattr(reader, 'exists') and not reader.exists(path):
        return None
    try:
        return read_json(reader, path)
    except EngineError as e:
        if isinstance(e.__cause__, FileNotFoundError):
            return None
        raise


def _index_paths(meta, index_dir):
    return IndexPaths(
        meta=meta,
        chunks_path=f"{index_dir}/chunks.jsonl",
        vectors_path=f"{index_dir}/vectors.f16",
        row_map_path=f"{index_dir}/row_map.jsonl",
    )


def load_pack(reader, params, config, logger=None):
    """
    Full pack load: manifest, validate capability, index metadata, router
    configuration, optional provider spec and optional rag_config override.

    Args:
        reader: PackFileReader scoped to the pack root
        params: InitParams from the host
        config: Engine configuration dictionary (not modified)
        logger: Optional logger for tracking progress

    Returns:
        DataState: The immutable loaded state
    """
    def log(message):
        if logger:
            logger.info(message)

    log(f"Loading pack manifest from {params.pack_root}")
    manifest = load_manifest(reader)
    validate = manifest['sidecars']['capabilities']['validate']
    files = validate['files']

    log("Loading index metadata (rules, cards)")
    rules_meta = load_index_meta(reader, 'rules')
    cards_meta = load_index_meta(reader, 'cards')

    if not params.deterministic_only:
        check_embedding_identity(rules_meta, cards_meta, params.embedding_model_id)

    check_counts(manifest)

    context_files = context_provider_files(manifest)

    log(f"Loading router configuration: {context_files['router_map']}")
    router_doc = _read_optional_json(reader, context_files['router_map'])
    if router_doc is None:
        raise EngineError(E_CONTEXT_PROVIDER, f"Router configuration missing: {context_files['router_map']}", {
            'path': context_files['router_map'],
        })
    router_config = parse_router_config(router_doc)
    provider_spec = parse_provider_spec(_read_optional_json(reader, context_files['provider_spec']))

    pack_override = _read_optional_json(reader, PACK_CONFIG_FILE)
    effective_config, applied = apply_pack_overrides(config, pack_override, logger=logger)
    if applied:
        log(f"Applied pack config overrides: {', '.join(applied)}")

    return DataState(
        pack_root=str(params.pack_root),
        manifest=manifest,
        rules=_index_paths(rules_meta, 'rules'),
        cards=_index_paths(cards_meta, 'cards'),
        rules_rule_ids_path=files['rules_rule_ids']['path'],
        cards_name_lookup_path=files['cards_name_lookup']['path'],
        rules_db_path=context_files['rules_db'],
        cards_db_path=context_files['cards_db'],
        router_config=router_config,
        provider_spec=provider_spec,
        config=effective_config,
        config_overrides=tuple(applied),
    )


def get_pack_embedding_model_id(reader):
    """
    Read the pack's embedding id from rules/index_meta.json (no full load),
    so a host can initialize with the pack's own id.
    """
    return load_index_meta(reader, 'rules').embedding_model_id
