#!/usr/bin/env python3
"""
Database Module - Document store adapter for users, phrases, cadences and classifiers

Every collection is an explicit SQLite table. Documents go in and come out as
plain dicts; filters and mutations use a small operator vocabulary:

    filter:   {'phrase_id': pid, 'user_id': {'$ne': uid}, 'participants': uid}
    mutation: {'$set': {...}, '$inc': {...}, '$add_to_set': {...}, '$pull': {...}}

Set-valued fields ('participants', 'unenrolling', 'roles') are stored as JSON arrays and
matched by membership.
"""

import sqlite3
import json
import os
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from .errors import ConstraintViolation, StoreUnavailable

logger = logging.getLogger(__name__)

TEXT, INT, REAL, JSON, SET, BLOB = 'text', 'int', 'real', 'json', 'set', 'blob'

# Field kinds per collection, and defaults applied on insert
COLLECTIONS: Dict[str, Dict[str, str]] = {
    'users': {
        'id': TEXT, 'username': TEXT, 'password': TEXT, 'roles': SET,
        'name': TEXT, 'email': TEXT, 'created_at': TEXT,
    },
    'phrases': {
        'id': TEXT, 'text': TEXT, 'participants': SET, 'participant_count': INT,
        'marker': REAL, 'unenrolling': SET, 'created_at': TEXT,
    },
    'cadences': {
        'id': TEXT, 'phrase_id': TEXT, 'user_id': TEXT, 'timeline': JSON,
        'marker': REAL, 'extra': JSON, 'created_at': TEXT,
    },
    'classifiers': {
        'id': TEXT, 'user_id': TEXT, 'phrase_id': TEXT, 'model': BLOB, 'kind': TEXT,
        'attempts': INT, 'authentications': INT, 'rejections': INT,
        'successes': INT, 'failures': INT, 'created_at': TEXT,
    },
}

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'users': {'roles': set()},
    'phrases': {'participants': set(), 'participant_count': 0, 'unenrolling': set()},
    'cadences': {'timeline': [], 'extra': {}},
    'classifiers': {'kind': 'svm', 'attempts': 0, 'authentications': 0,
                    'rejections': 0, 'successes': 0, 'failures': 0},
}

COMPARISONS = {'$gt': '>', '$gte': '>=', '$lt': '<', '$lte': '<='}


def new_id() -> str:
    """Generate a stable 24 character hex identifier"""
    return uuid.uuid4().hex[:24]


def _fields(collection: str) -> Dict[str, str]:
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection!r}")


def _check_field(collection: str, name: str) -> str:
    kinds = _fields(collection)
    if name not in kinds:
        raise ValueError(f"Unknown field {name!r} for collection {collection!r}")
    return kinds[name]


def _encode(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == SET:
        return json.dumps(sorted(set(value)))
    if kind == JSON:
        return json.dumps(value)
    if kind == BLOB:
        return sqlite3.Binary(value)
    if kind == INT:
        return int(value)
    if kind == REAL:
        return float(value)
    return value


def _decode(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == SET:
        return set(json.loads(value))
    if kind == JSON:
        return json.loads(value)
    if kind == BLOB:
        return bytes(value)
    return value


def compile_filter(collection: str, criteria: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
    """Translate a filter dict into a SQL WHERE clause and its parameters"""
    clauses: List[str] = []
    params: List[Any] = []

    for name, condition in (criteria or {}).items():
        kind = _check_field(collection, name)
        column = f"{collection}.{name}"
        operators = condition if isinstance(condition, dict) else {'$eq': condition}

        for op, value in operators.items():
            if kind == SET:
                membership = f"EXISTS (SELECT 1 FROM json_each({column}) WHERE json_each.value = ?)"
                if op == '$eq':
                    clauses.append(membership)
                elif op == '$ne':
                    clauses.append(f"NOT {membership}")
                else:
                    raise ValueError(f"Operator {op} is not supported on set field {name!r}")
                params.append(value)
            elif op == '$eq':
                if value is None:
                    clauses.append(f"{column} IS NULL")
                else:
                    clauses.append(f"{column} = ?")
                    params.append(_encode(kind, value))
            elif op == '$ne':
                if value is None:
                    clauses.append(f"{column} IS NOT NULL")
                else:
                    clauses.append(f"({column} IS NULL OR {column} != ?)")
                    params.append(_encode(kind, value))
            elif op in COMPARISONS:
                clauses.append(f"{column} {COMPARISONS[op]} ?")
                params.append(_encode(kind, value))
            elif op == '$in':
                values = list(value)
                if not values:
                    clauses.append('0')
                else:
                    clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                    params.extend(_encode(kind, v) for v in values)
            else:
                raise ValueError(f"Unknown filter operator: {op}")

    return (' AND '.join(clauses) or '1'), params


def apply_mutation(collection: str, doc: Dict[str, Any], ops: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Apply mutation operators to a decoded document, returning the changed fields"""
    changes: Dict[str, Any] = {}

    for op, fields in ops.items():
        for name, value in fields.items():
            kind = _check_field(collection, name)
            if name == 'id':
                raise ValueError("The id field is immutable")
            current = changes.get(name, doc.get(name))

            if op == '$set':
                changes[name] = value
            elif op == '$inc':
                if kind not in (INT, REAL):
                    raise ValueError(f"$inc on non-numeric field {name!r}")
                changes[name] = (current or 0) + value
            elif op in ('$add_to_set', '$pull'):
                if kind != SET:
                    raise ValueError(f"{op} on non-set field {name!r}")
                members = set(current or ())
                if op == '$add_to_set' and isinstance(value, dict) and '$each' in value:
                    members.update(value['$each'])
                elif op == '$add_to_set':
                    members.add(value)
                else:
                    members.discard(value)
                changes[name] = members
            else:
                raise ValueError(f"Unknown mutation operator: {op}")

    return changes


class CadenceDatabase:
    """SQLite backed document store for the cadence data layer"""

    def __init__(self, db_path: str = '/app/data/cadence.db', timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self.local = threading.local()
        self._init_database()

    @classmethod
    def from_config(cls, config) -> 'CadenceDatabase':
        return cls(config.db_path, timeout=config.store_timeout)

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection"""
        if not hasattr(self.local, 'connection') or self.local.connection is None:
            try:
                # Transactions are managed explicitly with BEGIN/COMMIT
                self.local.connection = sqlite3.connect(self.db_path, timeout=self.timeout,
                                                        isolation_level=None)
            except sqlite3.Error as e:
                logger.error(f"Cannot open database {self.db_path}: {e}")
                raise StoreUnavailable(f"Cannot open database {self.db_path}: {e}") from e
            self.local.connection.row_factory = sqlite3.Row
        return self.local.connection

    @contextmanager
    def _store_errors(self, operation: str):
        """Translate sqlite errors into the cadence error taxonomy"""
        try:
            yield
        except sqlite3.IntegrityError as e:
            logger.error(f"Constraint violation during {operation}: {e}")
            raise ConstraintViolation(f"{operation}: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Store error during {operation}: {e}")
            raise StoreUnavailable(f"{operation}: {e}") from e

    @contextmanager
    def _transaction(self, write: bool = True):
        """Run a block inside one transaction on the thread's connection"""
        conn = self._get_connection()
        conn.execute('BEGIN IMMEDIATE' if write else 'BEGIN')
        try:
            yield conn
        except BaseException:
            conn.execute('ROLLBACK')
            raise
        else:
            conn.execute('COMMIT')

    def _init_database(self):
        """Initialize database tables"""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self._store_errors('init'), self._transaction() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    password TEXT,
                    roles TEXT NOT NULL DEFAULT '[]',  -- JSON array
                    name TEXT,
                    email TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS phrases (
                    id TEXT PRIMARY KEY,
                    text TEXT NOT NULL,
                    participants TEXT NOT NULL DEFAULT '[]',  -- JSON array of user ids
                    participant_count INTEGER NOT NULL DEFAULT 0,
                    unenrolling TEXT NOT NULL DEFAULT '[]',  -- JSON array of user ids mid-unenroll
                    marker REAL NOT NULL CHECK (marker >= 0 AND marker < 1),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS cadences (
                    id TEXT PRIMARY KEY,
                    phrase_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    timeline TEXT NOT NULL DEFAULT '[]',  -- JSON array of timings
                    marker REAL NOT NULL CHECK (marker >= 0 AND marker < 1),
                    extra TEXT NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS classifiers (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    phrase_id TEXT NOT NULL,
                    model BLOB NOT NULL,
                    kind TEXT NOT NULL DEFAULT 'svm',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    authentications INTEGER NOT NULL DEFAULT 0,
                    rejections INTEGER NOT NULL DEFAULT 0,
                    successes INTEGER NOT NULL DEFAULT 0,
                    failures INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

        self.ensure_indexes()
        logger.info("Database initialized successfully")

    def ensure_indexes(self):
        """Create the indexes the sampler, the assembler and the uniqueness rules rely on"""
        with self._store_errors('ensure_indexes'), self._transaction() as conn:
            conn.execute('CREATE INDEX IF NOT EXISTS idx_cadences_pair_marker '
                         'ON cadences(phrase_id, user_id, marker)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_phrases_marker ON phrases(marker)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_phrases_count ON phrases(participant_count)')
            conn.execute('CREATE UNIQUE INDEX IF NOT EXISTS idx_phrases_text ON phrases(text)')
            conn.execute('CREATE UNIQUE INDEX IF NOT EXISTS idx_classifiers_pair '
                         'ON classifiers(user_id, phrase_id)')
            conn.execute('CREATE UNIQUE INDEX IF NOT EXISTS idx_users_username ON users(username)')

    # Reads

    def _row_to_doc(self, collection: str, row: sqlite3.Row) -> Dict[str, Any]:
        kinds = _fields(collection)
        return {key: _decode(kinds[key], row[key]) for key in row.keys()}

    def _columns(self, collection: str, projection: Optional[Sequence[str]]) -> str:
        if not projection:
            return ', '.join(_fields(collection))
        names = ['id'] + [p for p in projection if p != 'id']
        for name in names:
            _check_field(collection, name)
        return ', '.join(names)

    def _select(self, conn: sqlite3.Connection, collection: str, criteria, projection,
                limit: Optional[int], near: Optional[Tuple[str, float]]) -> List[Dict[str, Any]]:
        where, params = compile_filter(collection, criteria)
        columns = self._columns(collection, projection)

        if near is None:
            sql = f"SELECT {columns} FROM {collection} WHERE {where}"
            if limit is not None:
                sql += f" LIMIT {int(limit)}"
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_doc(collection, row) for row in rows]

        # Nearest neighbours of a point: walk the index up and down from the point
        # and merge the two runs by distance
        field, point = near
        if _check_field(collection, field) not in (INT, REAL):
            raise ValueError(f"near query on non-numeric field {field!r}")
        bound = '' if limit is None else f" LIMIT {int(limit)}"
        above = conn.execute(
            f"SELECT {columns}, {field} AS _near FROM {collection} "
            f"WHERE {where} AND {field} >= ? ORDER BY {field} ASC{bound}",
            params + [point]).fetchall()
        below = conn.execute(
            f"SELECT {columns}, {field} AS _near FROM {collection} "
            f"WHERE {where} AND {field} < ? ORDER BY {field} DESC{bound}",
            params + [point]).fetchall()

        merged = sorted(list(above) + list(below), key=lambda row: abs(row['_near'] - point))
        if limit is not None:
            merged = merged[:limit]
        kinds = _fields(collection)
        return [{key: _decode(kinds[key], row[key]) for key in row.keys() if key != '_near'}
                for row in merged]

    def find_one(self, collection: str, criteria: Optional[Dict[str, Any]] = None,
                 projection: Optional[Sequence[str]] = None,
                 near: Optional[Tuple[str, float]] = None) -> Optional[Dict[str, Any]]:
        """Return the first matching document, or the one nearest to `near`, or None"""
        with self._store_errors(f'find_one {collection}'):
            conn = self._get_connection()
            docs = self._select(conn, collection, criteria, projection, 1, near)
        return docs[0] if docs else None

    def find_many(self, collection: str, criteria: Optional[Dict[str, Any]] = None,
                  projection: Optional[Sequence[str]] = None, limit: Optional[int] = None,
                  snapshot: bool = False,
                  near: Optional[Tuple[str, float]] = None) -> List[Dict[str, Any]]:
        """
        Return matching documents

        With snapshot=True the whole batch is read inside one read transaction,
        so concurrent writers cannot change it halfway through.
        """
        if limit is not None and limit <= 0:
            return []
        with self._store_errors(f'find_many {collection}'):
            if snapshot:
                with self._transaction(write=False) as conn:
                    return self._select(conn, collection, criteria, projection, limit, near)
            return self._select(self._get_connection(), collection, criteria, projection, limit, near)

    def get_by_id(self, collection: str, doc_id: str,
                  projection: Optional[Sequence[str]] = None) -> Optional[Dict[str, Any]]:
        return self.find_one(collection, {'id': doc_id}, projection)

    def count(self, collection: str, criteria: Optional[Dict[str, Any]] = None) -> int:
        where, params = compile_filter(collection, criteria)
        with self._store_errors(f'count {collection}'):
            row = self._get_connection().execute(
                f"SELECT COUNT(*) AS count FROM {collection} WHERE {where}", params).fetchone()
        return row['count']

    # Writes

    def _insert(self, conn: sqlite3.Connection, collection: str, doc: Dict[str, Any]) -> str:
        kinds = _fields(collection)
        record = dict(DEFAULTS.get(collection, {}))
        record.update(doc)
        record.setdefault('id', new_id())
        for name in record:
            _check_field(collection, name)

        names = list(record)
        conn.execute(
            f"INSERT INTO {collection} ({', '.join(names)}) "
            f"VALUES ({', '.join('?' for _ in names)})",
            [_encode(kinds[name], record[name]) for name in names])
        return record['id']

    def insert_one(self, collection: str, doc: Dict[str, Any]) -> str:
        """Insert one document and return its id"""
        with self._store_errors(f'insert_one {collection}'), self._transaction() as conn:
            return self._insert(conn, collection, doc)

    def insert_batch(self, collection: str, docs: Iterable[Dict[str, Any]]) -> List[str]:
        """Insert documents in one transaction; an empty batch does nothing"""
        docs = list(docs)
        if not docs:
            return []
        with self._store_errors(f'insert_batch {collection}'), self._transaction() as conn:
            ids = [self._insert(conn, collection, doc) for doc in docs]
        logger.debug(f"Inserted {len(ids)} documents into {collection}")
        return ids

    def update_many(self, collection: str, criteria: Optional[Dict[str, Any]],
                    ops: Dict[str, Dict[str, Any]]) -> int:
        """
        Apply mutation operators to every matching document

        Matching and mutating happen inside one write transaction, so a filter
        can guard the mutation (e.g. only add a member that is not present yet).
        Returns the number of documents matched.
        """
        kinds = _fields(collection)
        where, params = compile_filter(collection, criteria)

        with self._store_errors(f'update_many {collection}'), self._transaction() as conn:
            rows = conn.execute(f"SELECT * FROM {collection} WHERE {where}", params).fetchall()
            for row in rows:
                doc = self._row_to_doc(collection, row)
                changes = apply_mutation(collection, doc, ops)
                if not changes:
                    continue
                assignments = ', '.join(f"{name} = ?" for name in changes)
                conn.execute(
                    f"UPDATE {collection} SET {assignments} WHERE id = ?",
                    [_encode(kinds[name], value) for name, value in changes.items()] + [doc['id']])
        return len(rows)

    def update_by_id(self, collection: str, doc_id: str, ops: Dict[str, Dict[str, Any]]) -> bool:
        """Mutate one document by id; returns whether it exists"""
        return self.update_many(collection, {'id': doc_id}, ops) > 0

    def upsert(self, collection: str, keys: Sequence[str], doc: Dict[str, Any]) -> str:
        """
        Insert a document or overwrite the one sharing its unique keys

        The existing id is kept on overwrite. Returns the id of the stored document.
        """
        kinds = _fields(collection)
        record = dict(DEFAULTS.get(collection, {}))
        record.update(doc)
        record.setdefault('id', new_id())
        for name in record:
            _check_field(collection, name)

        names = list(record)
        updates = ', '.join(f"{name} = excluded.{name}" for name in names
                            if name != 'id' and name not in keys)
        conflict = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"
        with self._store_errors(f'upsert {collection}'), self._transaction() as conn:
            conn.execute(
                f"INSERT INTO {collection} ({', '.join(names)}) "
                f"VALUES ({', '.join('?' for _ in names)}) "
                f"ON CONFLICT({', '.join(keys)}) {conflict}",
                [_encode(kinds[name], record[name]) for name in names])
            where, params = compile_filter(collection, {key: record[key] for key in keys})
            row = conn.execute(f"SELECT id FROM {collection} WHERE {where}", params).fetchone()
        return row['id']

    def remove(self, collection: str, criteria: Optional[Dict[str, Any]]) -> int:
        """Delete matching documents and return how many were removed"""
        where, params = compile_filter(collection, criteria)
        with self._store_errors(f'remove {collection}'), self._transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {collection} WHERE {where}", params)
        return cursor.rowcount

    # Reconciliation queries

    def get_count_mismatches(self) -> List[Dict[str, Any]]:
        """Phrases whose participant_count differs from the size of their participant set"""
        with self._store_errors('get_count_mismatches'):
            rows = self._get_connection().execute('''
                SELECT id, participant_count, json_array_length(participants) AS set_size
                FROM phrases
                WHERE participant_count != json_array_length(participants)
            ''').fetchall()
        return [dict(row) for row in rows]

    def get_orphaned_cadence_pairs(self) -> List[Dict[str, Any]]:
        """
        (phrase, user) pairs left behind by an unenroll that did not finish,
        and pairs whose cadences point at a phrase that no longer exists

        Cadences of a user still in training are not orphans.
        """
        with self._store_errors('get_orphaned_cadence_pairs'):
            rows = self._get_connection().execute('''
                SELECT p.id AS phrase_id, pending.value AS user_id,
                       (SELECT COUNT(*) FROM cadences c
                        WHERE c.phrase_id = p.id AND c.user_id = pending.value) AS cadence_count,
                       0 AS phrase_missing
                FROM phrases p, json_each(p.unenrolling) AS pending
                UNION ALL
                SELECT c.phrase_id, c.user_id, COUNT(*), 1
                FROM cadences c
                LEFT JOIN phrases p ON p.id = c.phrase_id
                WHERE p.id IS NULL
                GROUP BY c.phrase_id, c.user_id
            ''').fetchall()
        return [dict(row) for row in rows]

    def close(self):
        """Close database connection"""
        if hasattr(self.local, 'connection') and self.local.connection:
            self.local.connection.close()
            self.local.connection = None
