# =============================================================================
# Data Store
# =============================================================================
# Read-only access to the pack's relational tables:
#   rules(rule_id PK, section, text, token_index)
#   cards(id PK, name, normalized_name UNIQUE, body_text)
#   name_prefix(prefix, id)
#
# Engine logic only talks to a StoragePort (open / query / close). The
# SQLite port opens the database files read-only once, at load time.

import json
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import FrozenSet

from rulepack.errors import EngineError, E_STORE


@dataclass(frozen=True)
class Rule:
    rule_id: str
    section: int
    text: str
    tokens: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Entity:
    id: str
    name: str
    normalized_name: str
    body_text: str


class StoragePort:
    """
    Minimal storage interface the engine depends on.

    query() takes SQL with `?` placeholders and a parameter tuple and
    returns a list of dict rows.
    """

    def open(self):
        raise NotImplementedError

    def query(self, sql, params=()):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError


class SqliteStoragePort(StoragePort):
    """
    StoragePort over a single SQLite file opened in read-only mode.

    Args:
        db_path: Absolute path to the .db file
    """

    def __init__(self, db_path):
        self.db_path = str(db_path)
        self.conn = None
        self._lock = threading.Lock()

    def open(self):
        if self.conn is not None:
            return self
        uri = f"file:{self.db_path}?mode=ro"
        try:
            self.conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        except sqlite3.Error as e:
            raise EngineError(E_STORE, f"Cannot open database: {self.db_path}", {
                'path': self.db_path,
                'cause': str(e),
            }) from e
        self.conn.row_factory = sqlite3.Row
        return self

    def query(self, sql, params=()):
        if self.conn is None:
            raise EngineError(E_STORE, f"Database not open: {self.db_path}")
        try:
            with self._lock:
                rows = self.conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise EngineError(E_STORE, f"Query failed on {self.db_path}", {
                'sql': sql,
                'cause': str(e),
            }) from e
        return [dict(row) for row in rows]

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None


def parse_token_index(raw):
    """
    Parse the precomputed token_index column (a JSON array of strings).

    A malformed value yields an empty token set: the rule can still be
    reached through defaults or hard includes, it just never scores.
    """
    if not raw:
        return frozenset()
    try:
        tokens = json.loads(raw)
    except (TypeError, ValueError):
        return frozenset()
    if not isinstance(tokens, list):
        return frozenset()
    return frozenset(str(t) for t in tokens)


def _row_to_rule(row):
    return Rule(
        rule_id=str(row.get('rule_id') or ''),
        section=int(row.get('section') or 0),
        text=row.get('text') or '',
        tokens=parse_token_index(row.get('token_index')),
    )


def _row_to_entity(row):
    return Entity(
        id=str(row.get('id') or ''),
        name=row.get('name') or '',
        normalized_name=row.get('normalized_name') or '',
        body_text=row.get('body_text') or '',
    )


class RulesStore:
    """Query surface over the rules table."""

    def __init__(self, port):
        self.port = port

    def rules_by_section(self, section):
        rows = self.port.query(
            'SELECT * FROM rules WHERE section = ? ORDER BY rule_id ASC', (int(section),)
        )
        return [_row_to_rule(r) for r in rows]

    def rule_by_id(self, rule_id):
        rows = self.port.query('SELECT * FROM rules WHERE rule_id = ?', (rule_id,))
        return _row_to_rule(rows[0]) if rows else None

    def rules_by_id_prefix(self, prefix, limit=2):
        # LIKE wildcards inside the prefix itself must match literally
        escaped = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        rows = self.port.query(
            "SELECT * FROM rules WHERE rule_id LIKE ? ESCAPE '\\' ORDER BY rule_id ASC LIMIT ?",
            (escaped + '%', int(limit)),
        )
        return [_row_to_rule(r) for r in rows]

    def count(self):
        rows = self.port.query('SELECT COUNT(*) AS n FROM rules')
        return rows[0]['n'] if rows else 0


class CardsStore:
    """Query surface over the cards and name_prefix tables."""

    def __init__(self, port):
        self.port = port

    def entity_by_normalized_name(self, normalized_name):
        rows = self.port.query(
            'SELECT * FROM cards WHERE normalized_name = ?', (normalized_name,)
        )
        return _row_to_entity(rows[0]) if rows else None

    def entity_by_prefix_and_name(self, prefix, normalized_name):
        """Exact normalized-name hit restricted to entities indexed under prefix."""
        rows = self.port.query(
            'SELECT c.* FROM cards c INNER JOIN name_prefix p '
            'ON p.id = c.id AND p.prefix = ? WHERE c.normalized_name = ? LIMIT 1',
            (prefix, normalized_name),
        )
        return _row_to_entity(rows[0]) if rows else None

    def count(self):
        rows = self.port.query('SELECT COUNT(*) AS n FROM cards')
        return rows[0]['n'] if rows else 0
