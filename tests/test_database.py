"""Tests for the SQLite document store adapter."""
import sqlite3

import pytest

from cadence.database import DEFAULTS, CadenceDatabase, compile_filter
from cadence.errors import ConstraintViolation, StoreUnavailable


def test_insert_and_find_roundtrip(db):
    doc_id = db.insert_one('users', {'username': 'alice', 'password': 'x', 'roles': {'user'}})
    user = db.get_by_id('users', doc_id)
    assert user['username'] == 'alice'
    assert user['roles'] == {'user'}
    assert len(doc_id) == 24


def test_find_one_missing_returns_none(db):
    assert db.find_one('phrases', {'text': 'nope'}) is None
    assert db.get_by_id('cadences', 'does-not-exist') is None


def test_projection_always_includes_id(db):
    db.insert_one('phrases', {'text': 'hello', 'marker': 0.5})
    doc = db.find_one('phrases', {'text': 'hello'}, projection=['text'])
    assert set(doc) == {'id', 'text'}


def test_set_membership_filters(db):
    a = db.insert_one('phrases', {'text': 'a', 'marker': 0.1, 'participants': {'u1', 'u2'}})
    b = db.insert_one('phrases', {'text': 'b', 'marker': 0.2, 'participants': {'u2'}})

    members = {d['id'] for d in db.find_many('phrases', {'participants': 'u1'})}
    others = {d['id'] for d in db.find_many('phrases', {'participants': {'$ne': 'u1'}})}
    assert members == {a}
    assert others == {b}


def test_comparison_and_in_filters(db):
    for i in range(5):
        db.insert_one('phrases', {'text': f'p{i}', 'marker': i / 10, 'participant_count': i})

    assert db.count('phrases', {'participant_count': {'$gt': 2}}) == 2
    assert db.count('phrases', {'participant_count': {'$lte': 2}}) == 3
    assert db.count('phrases', {'text': {'$in': ['p0', 'p4', 'zz']}}) == 2
    assert db.count('phrases', {'text': {'$in': []}}) == 0


def test_unknown_field_or_operator_is_rejected():
    with pytest.raises(ValueError):
        compile_filter('phrases', {'bogus': 1})
    with pytest.raises(ValueError):
        compile_filter('phrases', {'participant_count': {'$regex': 'x'}})
    with pytest.raises(ValueError):
        compile_filter('nothing', {})


def test_update_many_guarded_by_filter(db):
    pid = db.insert_one('phrases', {'text': 'guard', 'marker': 0.3})
    ops = {'$add_to_set': {'participants': 'u1'}, '$inc': {'participant_count': 1}}

    assert db.update_many('phrases', {'id': pid, 'participants': {'$ne': 'u1'}}, ops) == 1
    assert db.update_many('phrases', {'id': pid, 'participants': {'$ne': 'u1'}}, ops) == 0

    phrase = db.get_by_id('phrases', pid)
    assert phrase['participants'] == {'u1'}
    assert phrase['participant_count'] == 1


def test_update_by_id_reports_missing(db):
    assert db.update_by_id('phrases', 'missing', {'$set': {'marker': 0.2}}) is False


def test_insert_batch_empty_is_noop(db):
    assert db.insert_batch('cadences', []) == []
    assert db.count('cadences') == 0


def test_remove_returns_count(db):
    db.insert_batch('cadences', [
        {'phrase_id': 'p', 'user_id': 'u', 'marker': 0.1},
        {'phrase_id': 'p', 'user_id': 'u', 'marker': 0.2},
        {'phrase_id': 'p', 'user_id': 'v', 'marker': 0.3},
    ])
    assert db.remove('cadences', {'phrase_id': 'p', 'user_id': 'u'}) == 2
    assert db.count('cadences') == 1


def test_unique_phrase_text_raises_constraint_violation(db):
    db.insert_one('phrases', {'text': 'dup', 'marker': 0.1})
    with pytest.raises(ConstraintViolation):
        db.insert_one('phrases', {'text': 'dup', 'marker': 0.2})


def test_unique_username_raises_constraint_violation(db):
    db.insert_one('users', {'username': 'bob'})
    with pytest.raises(ConstraintViolation):
        db.insert_one('users', {'username': 'bob'})


def test_failed_batch_is_rolled_back(db):
    with pytest.raises(ConstraintViolation):
        db.insert_batch('phrases', [
            {'text': 'one', 'marker': 0.1},
            {'text': 'one', 'marker': 0.2},
        ])
    assert db.count('phrases') == 0


def test_marker_must_be_in_unit_interval(db):
    with pytest.raises(ConstraintViolation):
        db.insert_one('phrases', {'text': 'bad', 'marker': 1.5})


def test_near_returns_closest_marker(db):
    for i, marker in enumerate([0.05, 0.4, 0.45, 0.9]):
        db.insert_one('phrases', {'text': f'n{i}', 'marker': marker})

    assert db.find_one('phrases', near=('marker', 0.42))['marker'] == 0.4
    assert db.find_one('phrases', near=('marker', 0.44))['marker'] == 0.45
    assert db.find_one('phrases', near=('marker', 0.99))['marker'] == 0.9

    nearest = db.find_many('phrases', near=('marker', 0.0), limit=2, snapshot=True)
    assert [d['marker'] for d in nearest] == [0.05, 0.4]


def test_upsert_keeps_id_and_replaces_fields(db):
    first = db.upsert('classifiers', ('user_id', 'phrase_id'),
                      {'user_id': 'u', 'phrase_id': 'p', 'model': b'one', 'attempts': 3})
    second = db.upsert('classifiers', ('user_id', 'phrase_id'),
                       {'user_id': 'u', 'phrase_id': 'p', 'model': b'two', 'attempts': 0})

    assert first == second
    stored = db.get_by_id('classifiers', first)
    assert stored['model'] == b'two'
    assert stored['attempts'] == 0
    assert db.count('classifiers') == 1


def test_locked_store_raises_store_unavailable(tmp_path):
    path = str(tmp_path / 'locked.db')
    db = CadenceDatabase(path, timeout=0.1)
    blocker = sqlite3.connect(path, isolation_level=None)
    blocker.execute('BEGIN EXCLUSIVE')
    try:
        with pytest.raises(StoreUnavailable):
            db.insert_one('phrases', {'text': 'x', 'marker': 0.5})
    finally:
        blocker.execute('ROLLBACK')
        blocker.close()
        db.close()


def test_upsert_with_only_key_fields_is_noop_on_conflict(db, monkeypatch):
    monkeypatch.setitem(DEFAULTS, 'users', {})

    first = db.upsert('users', ('username',), {'username': 'bob'})
    second = db.upsert('users', ('username',), {'username': 'bob'})

    assert first == second
    assert db.count('users') == 1
