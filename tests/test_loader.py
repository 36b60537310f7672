"""
Tests for pack loading and validation.
Run with: python -m pytest tests/test_loader.py -v
"""

import pytest

from rulepack.engine import Engine, LoadState
from rulepack.errors import (
    EngineError,
    E_CONTEXT_PROVIDER,
    E_COUNTS_MISMATCH,
    E_EMBED_MISMATCH,
    E_INDEX_META,
    E_PACK_LOAD,
    E_PACK_SCHEMA,
    E_RETRIEVAL_FORMAT,
    E_VALIDATE_CAPABILITY,
    E_VALIDATE_FILES,
    E_VALIDATE_SCHEMA,
)
from rulepack.loader import InitParams, get_pack_embedding_model_id, load_pack
from rulepack.reader import DirectoryPackReader

from conftest import EMBED_MODEL_ID, build_pack, write_json


def _validate(manifest):
    return manifest['sidecars']['capabilities']['validate']


def _load(pack_dir, config, **params):
    reader = DirectoryPackReader(pack_dir)
    return load_pack(reader, InitParams(pack_root=str(pack_dir), **params), config), reader


# ─────────────────────────────────────────────────────────────
# Malformed manifests
# ─────────────────────────────────────────────────────────────

MANIFEST_MUTATIONS = [
    ('schema_version', lambda m: m.update(pack_schema_version=2), E_PACK_SCHEMA),
    ('schema_version_missing', lambda m: m.pop('pack_schema_version'), E_PACK_SCHEMA),
    ('retrieval_format', lambda m: m.update(retrieval_format_version=2), E_RETRIEVAL_FORMAT),
    ('no_validate', lambda m: m['sidecars']['capabilities'].pop('validate'), E_VALIDATE_CAPABILITY),
    ('no_sidecars', lambda m: m.pop('sidecars'), E_VALIDATE_CAPABILITY),
    ('validate_schema', lambda m: _validate(m).update(schema_version=3), E_VALIDATE_SCHEMA),
    ('no_rule_ids_path', lambda m: _validate(m)['files'].pop('rules_rule_ids'), E_VALIDATE_FILES),
    ('blank_lookup_path', lambda m: _validate(m)['files']['cards_name_lookup'].update(path='  '), E_VALIDATE_FILES),
    ('counts_mismatch', lambda m: _validate(m)['counts'].update(rules=99), E_COUNTS_MISMATCH),
    ('no_context_provider', lambda m: m['sidecars']['capabilities'].pop('context_provider'), E_CONTEXT_PROVIDER),
]


class TestManifestValidation:

    @pytest.mark.parametrize(
        'mutate,kind',
        [(m, k) for _, m, k in MANIFEST_MUTATIONS],
        ids=[name for name, _, _ in MANIFEST_MUTATIONS],
    )
    def test_each_shape_has_its_own_kind(self, pack_dir, config, edit_json, mutate, kind):
        edit_json(pack_dir / 'manifest.json', mutate)
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == kind

    def test_invalid_json(self, pack_dir, config):
        (pack_dir / 'manifest.json').write_text('{not json', encoding='utf-8')
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_PACK_LOAD

    def test_manifest_not_utf8(self, pack_dir, config):
        (pack_dir / 'manifest.json').write_bytes(b'\xff\xfe')
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_PACK_LOAD
        assert exc.value.details['path'] == 'manifest.json'

    def test_manifest_not_an_object(self, pack_dir, config):
        (pack_dir / 'manifest.json').write_text('[1, 2]', encoding='utf-8')
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_PACK_LOAD

    def test_missing_manifest(self, tmp_path, config):
        with pytest.raises(EngineError) as exc:
            _load(tmp_path, config)
        assert exc.value.kind == E_PACK_LOAD

    def test_unsupported_schema_reads_only_the_manifest(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'manifest.json', lambda m: m.update(pack_schema_version=7))
        reader = DirectoryPackReader(pack_dir)
        with pytest.raises(EngineError) as exc:
            load_pack(reader, InitParams(pack_root=str(pack_dir)), config)
        assert exc.value.kind == E_PACK_SCHEMA
        assert exc.value.details == {'expected': 1, 'actual': 7}
        assert reader.reads == ['manifest.json']

    def test_retrieval_format_defaults_to_supported(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'manifest.json', lambda m: m.pop('retrieval_format_version'))
        state, _ = _load(pack_dir, config)
        assert state.manifest['pack_schema_version'] == 1

    def test_counts_only_checked_when_both_declared(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'manifest.json', lambda m: m['indices'].pop('rules'))
        edit_json(pack_dir / 'manifest.json', lambda m: _validate(m)['counts'].update(rules=99))
        state, _ = _load(pack_dir, config)
        assert state.rules.meta.dim == 4


# ─────────────────────────────────────────────────────────────
# Index metadata and embedding identity
# ─────────────────────────────────────────────────────────────

class TestIndexMeta:

    def test_missing_dim(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'cards' / 'index_meta.json', lambda m: m.pop('dim'))
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_INDEX_META

    def test_missing_embed_id(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'rules' / 'index_meta.json', lambda m: m.pop('embed_model_id'))
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_INDEX_META

    def test_unknown_metric(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'rules' / 'index_meta.json', lambda m: m.update(metric='dot'))
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_INDEX_META

    def test_embedding_mismatch_names_both_ids(self, pack_dir, config):
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config, embedding_model_id='other-model', deterministic_only=False)
        assert exc.value.kind == E_EMBED_MISMATCH
        assert exc.value.details['pack'] == EMBED_MODEL_ID
        assert exc.value.details['app'] == 'other-model'

    def test_rules_and_cards_ids_must_agree(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'cards' / 'index_meta.json', lambda m: m.update(embed_model_id='drift'))
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config, embedding_model_id=EMBED_MODEL_ID, deterministic_only=False)
        assert exc.value.kind == E_EMBED_MISMATCH
        assert exc.value.details['index'] == 'cards'

    def test_embedding_not_checked_on_deterministic_path(self, pack_dir, config):
        state, _ = _load(pack_dir, config, embedding_model_id='other-model')
        assert state.rules.meta.embedding_model_id == EMBED_MODEL_ID

    def test_pack_embedding_id_without_full_load(self, pack_dir):
        reader = DirectoryPackReader(pack_dir)
        assert get_pack_embedding_model_id(reader) == EMBED_MODEL_ID
        assert reader.reads == ['rules/index_meta.json']


# ─────────────────────────────────────────────────────────────
# Router configuration and pack overrides
# ─────────────────────────────────────────────────────────────

class TestPackDocuments:

    def test_router_map_required(self, pack_dir, config):
        (pack_dir / 'router' / 'router_map.json').unlink()
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_CONTEXT_PROVIDER

    def test_router_map_wrong_type(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'router' / 'router_map.json', lambda m: m.update(section_keywords=[1]))
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_CONTEXT_PROVIDER

    def test_provider_spec_optional(self, pack_dir, config):
        (pack_dir / 'context_provider_spec.json').unlink()
        state, _ = _load(pack_dir, config)
        assert len(state.provider_spec.extraction_patterns) == 3
        assert dict(state.provider_spec.char_map) == {}

    @pytest.mark.parametrize('document', [
        'router/router_map.json',
        'context_provider_spec.json',
        'rag_config.json',
    ])
    def test_document_not_utf8(self, pack_dir, config, document):
        (pack_dir / document).write_bytes(b'{"schema_version": 1, "name": "\xff\xfe"}')
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_PACK_LOAD
        assert exc.value.details['path'] == document

    @pytest.mark.parametrize('value', ['three', 0, -2, 2.5, True, None])
    def test_resolver_threshold_must_be_positive_integer(self, pack_dir, config, edit_json, value):
        edit_json(pack_dir / 'router' / 'router_map.json',
                  lambda m: m['resolver'].update(prefix_len_min=value))
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_CONTEXT_PROVIDER
        assert exc.value.details == {'value': value}

    def test_resolver_index_length_checked(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'router' / 'router_map.json',
                  lambda m: m['resolver'].update(prefix_index_len='3'))
        with pytest.raises(EngineError) as exc:
            _load(pack_dir, config)
        assert exc.value.kind == E_CONTEXT_PROVIDER

    def test_resolver_thresholds_default_when_absent(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'router' / 'router_map.json', lambda m: m.pop('resolver'))
        state, _ = _load(pack_dir, config)
        assert state.router_config.resolver.prefix_len_min >= 1
        assert state.router_config.resolver.prefix_index_len >= 1

    @pytest.mark.parametrize('value', [0, -4])
    def test_rag_config_non_positive_ratio_ignored(self, pack_dir, config, value):
        write_json(pack_dir / 'rag_config.json', {
            'prompt': {'chars_per_token_est': value},
            'context_budget': value,
        })
        state, _ = _load(pack_dir, config)
        assert state.config['context']['chars_per_token'] == 4
        assert state.config['context']['budget'] == 800
        assert state.config_overrides == ()

    def test_rag_config_override_applied(self, pack_dir, config):
        write_json(pack_dir / 'rag_config.json', {
            'schema_version': 1,
            'context_budget': 300,
            'prompt': {'max_prompt_chars': 1200, 'system_instruction': '   '},
        })
        state, _ = _load(pack_dir, config)
        assert state.config['context']['budget'] == 300
        assert state.config['prompt']['max_prompt_chars'] == 1200
        assert state.config['prompt']['system_instruction'] == config['prompt']['system_instruction']
        assert set(state.config_overrides) == {'context.budget', 'prompt.max_prompt_chars'}
        # caller's dictionary untouched
        assert config['context']['budget'] == 800


# ─────────────────────────────────────────────────────────────
# Engine load state machine
# ─────────────────────────────────────────────────────────────

class TestInitialize:

    def test_idempotent_single_load(self, pack_dir, config):
        engine = Engine(config)
        reader = DirectoryPackReader(pack_dir)
        params = InitParams(pack_root=str(pack_dir))

        first = engine.initialize(params, reader)
        reads_after_first = list(reader.reads)
        second = engine.initialize(params, reader)

        assert second is first
        assert reader.reads == reads_after_first
        assert engine.load_count == 1
        assert engine.load_state == LoadState.LOADED
        engine.release()

    def test_load_failed_is_terminal(self, pack_dir, config, edit_json):
        edit_json(pack_dir / 'manifest.json', lambda m: m.update(pack_schema_version=5))
        engine = Engine(config)
        reader = DirectoryPackReader(pack_dir)
        params = InitParams(pack_root=str(pack_dir))

        with pytest.raises(EngineError) as first:
            engine.initialize(params, reader)
        assert engine.load_state == LoadState.LOAD_FAILED

        # fixing the data does not auto-retry
        edit_json(pack_dir / 'manifest.json', lambda m: m.update(pack_schema_version=1))
        with pytest.raises(EngineError) as second:
            engine.initialize(params, reader)
        assert second.value is first.value
        assert reader.reads == ['manifest.json']
        assert engine.load_count == 1

        engine.release()
        assert engine.load_state == LoadState.UNLOADED
        engine.initialize(params, reader)
        assert engine.load_state == LoadState.LOADED
        engine.release()

    def test_new_root_reloads(self, tmp_path, config):
        pack_a = build_pack(tmp_path / 'a')
        pack_b = build_pack(tmp_path / 'b')
        engine = Engine(config)

        state_a = engine.initialize(InitParams(pack_root=str(pack_a)))
        state_b = engine.initialize(InitParams(pack_root=str(pack_b)))

        assert state_a is not state_b
        assert state_b.pack_root == str(pack_b)
        assert engine.load_count == 2
        engine.release()

    def test_store_opened_read_only(self, engine):
        with pytest.raises(EngineError) as exc:
            engine.rules_store.port.query("INSERT INTO rules VALUES ('999.1', 999, 'x', '[]')")
        assert exc.value.kind == 'E_STORE'

    def test_stores_loaded(self, engine):
        assert engine.rules_store.count() == 13
        assert engine.cards_store.count() == 7

    def test_cards_lookup_is_bucketed_by_prefix(self, engine):
        cards = engine.cards_store
        assert cards.entity_by_normalized_name('giant growth').id == 'c-growth'
        assert cards.entity_by_prefix_and_name('gia', 'giant growth').name == 'Giant Growth'
        assert cards.entity_by_prefix_and_name('sho', 'giant growth') is None
        assert cards.entity_by_normalized_name('giant growths') is None
