"""
Shared fixtures: a small but complete content pack written to tmp_path.

The pack has real SQLite rules/cards databases, a router map, a provider
spec and float16 vector blobs, so every test runs against the same files
the engine reads in production.
"""

import json
import sqlite3

import numpy as np
import pytest

from rulepack.analyzer import keyword_tokens, normalize
from rulepack.config import default_config
from rulepack.engine import Engine
from rulepack.loader import InitParams
from rulepack.reader import DirectoryPackReader
from rulepack.router_config import parse_provider_spec


EMBED_MODEL_ID = 'test-embed'
DIM = 4

STOPWORDS = [
    'the', 'a', 'of', 'and', 'what', 'does', 'how', 'with', 'is', 'do',
    'to', 'can', 'that', 'its', 'are', 'was',
]

RULES = [
    ('100.1', 100, 'These rules apply to any game with two or more players.'),
    ('106.1', 106, 'Mana is the primary resource in the game.'),
    ('115.1', 115, 'Some spells and abilities require their controller to choose one or more targets.'),
    ('120.1', 120, 'Objects can deal damage to creatures, planeswalkers, and players.'),
    ('120.3', 120, 'Damage dealt to a player by a source without infect causes that player to lose that much life.'),
    ('120.4a', 120, 'Damage is dealt to any target in the order chosen.'),
    ('510.1', 510, 'Each attacking creature and each blocking creature assigns combat damage equal to its power.'),
    ('702.1', 702, 'Each keyword ability has its own rule.'),
    ('702.19', 702, "Trample is a static ability that modifies the rules for assigning an attacking creature's combat damage."),
    ('702.19b', 702, 'The controller of an attacking creature with trample first assigns damage to the creatures blocking it.'),
    ('702.2', 702, 'Deathtouch is a static ability.'),
    ('702.2b', 702, 'A creature dealt damage by a source with deathtouch since the last check is destroyed.'),
    ('702.2c', 702, 'Any nonzero combat damage assigned by a source with deathtouch is lethal damage, including with trample.'),
]

CARDS = [
    ('c-bolt', 'Lightning Bolt', 'Lightning Bolt deals 3 damage to any target.'),
    ('c-elves', 'Llanowar Elves', 'Tap: Add one green mana.'),
    ('c-bears', 'Grizzly Bears', 'A vanilla creature.'),
    ('c-giant', 'Giant', 'A large creature.'),
    ('c-growth', 'Giant Growth', 'Target creature gets +3/+3 until end of turn.'),
    ('c-shock', 'Shock', 'Shock deals 2 damage to any target.'),
    ('c-aether', 'Æther Vial', 'At the beginning of your upkeep, you may put a charge counter on Aether Vial.'),
]

ROUTER_MAP = {
    'schema_version': 1,
    'stopwords': STOPWORDS,
    'resolver': {'prefix_len_min': 3, 'prefix_index_len': 3},
    'section_keywords': {
        'damage': [120],
        'target': [115],
        'combat': [510],
        'trample': [702],
        'deathtouch': [702],
    },
    'keyword_abilities': {
        'trample': ['702.19'],
        'deathtouch': ['702.2'],
    },
    'keyword_ability_section': 702,
    'definitions': {
        'trample': ['702.19'],
        'deathtouch': ['702.2'],
        'damage': ['120.1'],
    },
    'section_defaults': {
        '100': ['100.1'],
        '115': ['115.1'],
        '120': ['120.1'],
        '510': ['510.1'],
        '702': ['702.1'],
    },
    'concepts': {
        'mana': ['106.1'],
    },
    'default_sections': [100],
}

PROVIDER_SPEC = {
    'char_map': {'Æ': 'Ae', 'æ': 'ae'},
}

# Legacy vector path: (doc_id, title, text, vector)
RULE_CHUNKS = [
    ('rules:702.19', None, 'Trample is a static ability.', [1, 0, 0, 0]),
    ('rules:120.4a', None, 'Damage is dealt to any target in the order chosen.', [0, 1, 0, 0]),
    ('rules:100.1', None, 'These rules apply to any game.', [0, 0, 1, 0]),
]

CARD_CHUNKS = [
    ('card:c-bolt', 'Lightning Bolt', 'Lightning Bolt deals 3 damage to any target.', [1, 0, 0, 0]),
    ('card:c-shock', 'Shock', 'Shock deals 2 damage to any target.', [0, 0, 0, 1]),
]


def normalized_name(name):
    return normalize(name, parse_provider_spec(PROVIDER_SPEC))


def write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


def read_json(path):
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def build_manifest():
    return {
        'pack_schema_version': 1,
        'retrieval_format_version': 1,
        'sidecars': {
            'schema_version': 1,
            'capabilities': {
                'validate': {
                    'schema_version': 1,
                    'files': {
                        'rules_rule_ids': {'path': 'validate/rule_ids.json'},
                        'cards_name_lookup': {'path': 'validate/name_lookup.json'},
                    },
                    'counts': {'rules': len(RULE_CHUNKS), 'cards': len(CARD_CHUNKS)},
                },
                'context_provider': {
                    'files': {
                        'rules_db': {'path': 'rules/rules.db'},
                        'cards_db': {'path': 'cards/cards.db'},
                        'router_map': {'path': 'router/router_map.json'},
                        'provider_spec': {'path': 'context_provider_spec.json'},
                    },
                },
            },
        },
        'indices': {
            'rules': {'chunk_count': len(RULE_CHUNKS)},
            'cards': {'chunk_count': len(CARD_CHUNKS)},
        },
    }


def build_rules_db(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.execute(
        'CREATE TABLE rules (rule_id TEXT PRIMARY KEY, section INTEGER, text TEXT, token_index TEXT)'
    )
    for rule_id, section, text in RULES:
        tokens = keyword_tokens(normalize(text), set(STOPWORDS))
        conn.execute(
            'INSERT INTO rules VALUES (?, ?, ?, ?)',
            (rule_id, section, text, json.dumps(list(tokens))),
        )
    conn.commit()
    conn.close()


def build_cards_db(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.execute(
        'CREATE TABLE cards (id TEXT PRIMARY KEY, name TEXT, normalized_name TEXT UNIQUE, body_text TEXT)'
    )
    conn.execute('CREATE TABLE name_prefix (prefix TEXT, id TEXT)')
    for card_id, name, body in CARDS:
        norm = normalized_name(name)
        conn.execute('INSERT INTO cards VALUES (?, ?, ?, ?)', (card_id, name, norm, body))
        conn.execute('INSERT INTO name_prefix VALUES (?, ?)', (norm[:3], card_id))
    conn.commit()
    conn.close()


def write_vector_index(root, index_dir, chunks):
    directory = root / index_dir
    directory.mkdir(parents=True, exist_ok=True)
    write_json(directory / 'index_meta.json', {
        'embed_model_id': EMBED_MODEL_ID,
        'dim': DIM,
        'metric': 'l2',
        'normalize': False,
    })
    with open(directory / 'chunks.jsonl', 'w', encoding='utf-8') as f:
        for doc_id, title, text, _ in chunks:
            f.write(json.dumps({'doc_id': doc_id, 'title': title, 'text': text}) + '\n')
    with open(directory / 'row_map.jsonl', 'w', encoding='utf-8') as f:
        for doc_id, _, _, _ in chunks:
            f.write(json.dumps({'doc_id': doc_id}) + '\n')
    vectors = np.array([v for _, _, _, v in chunks], dtype='<f2')
    (directory / 'vectors.f16').write_bytes(vectors.tobytes())


def build_pack(root):
    """Write the complete test pack under root and return root."""
    root.mkdir(parents=True, exist_ok=True)
    write_json(root / 'manifest.json', build_manifest())
    write_vector_index(root, 'rules', RULE_CHUNKS)
    write_vector_index(root, 'cards', CARD_CHUNKS)
    build_rules_db(root / 'rules' / 'rules.db')
    build_cards_db(root / 'cards' / 'cards.db')
    write_json(root / 'router' / 'router_map.json', ROUTER_MAP)
    write_json(root / 'context_provider_spec.json', PROVIDER_SPEC)
    write_json(root / 'validate' / 'rule_ids.json', [r[0] for r in RULES])
    write_json(root / 'validate' / 'name_lookup.json', {normalized_name(c[1]): c[0] for c in CARDS})
    return root


@pytest.fixture
def pack_dir(tmp_path):
    return build_pack(tmp_path / 'pack')


@pytest.fixture
def edit_json():
    """Rewrite a pack JSON document in place through a callback."""
    def _edit(path, mutate):
        data = read_json(path)
        mutate(data)
        write_json(path, data)
    return _edit


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def engine(pack_dir, config):
    eng = Engine(config)
    eng.initialize(InitParams(pack_root=str(pack_dir)), DirectoryPackReader(pack_dir))
    yield eng
    eng.release()


@pytest.fixture
def vector_engine(pack_dir, config):
    eng = Engine(config)
    params = InitParams(
        pack_root=str(pack_dir),
        embedding_model_id=EMBED_MODEL_ID,
        deterministic_only=False,
    )
    eng.initialize(params, DirectoryPackReader(pack_dir))
    yield eng
    eng.release()
