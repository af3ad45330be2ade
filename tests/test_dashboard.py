"""Tests for the Flask operator endpoints."""
import pytest

from dashboard.app import create_app


@pytest.fixture
def client(config, db):
    app = create_app(config, db)
    app.config['TESTING'] = True
    return app.test_client()


def test_get_phrase_by_id(client, tracker, phrase_id):
    tracker.enroll('u1', phrase_id)
    response = client.get(f'/api/phrases/{phrase_id}')
    assert response.status_code == 200
    body = response.get_json()
    assert body['participants'] == ['u1']
    assert body['participant_count'] == 1


def test_missing_record_is_404(client):
    response = client.get('/api/cadences/nope')
    assert response.status_code == 404
    assert response.get_json() == {'error': 'cadence not found'}


def test_user_password_is_not_exposed(client, tracker):
    uid = tracker.add_user('alice', 'secret')
    body = client.get(f'/api/users/{uid}').get_json()
    assert body['username'] == 'alice'
    assert 'password' not in body
    assert body['roles'] == ['user']


def test_classifier_model_is_not_exposed(client, db):
    cid = db.upsert('classifiers', ('user_id', 'phrase_id'),
                    {'user_id': 'u', 'phrase_id': 'p', 'model': b'blob'})
    body = client.get(f'/api/classifiers/{cid}').get_json()
    assert 'model' not in body
    assert body['attempts'] == 0


def test_consistency_report_and_reconcile(client, tracker, db, phrase_id):
    tracker.enroll('u1', phrase_id)
    db.update_by_id('phrases', phrase_id, {'$set': {'participant_count': 3}})

    report = client.get('/api/consistency').get_json()
    assert report['consistent'] is False
    assert report['drifts'][0]['kind'] == 'count_mismatch'

    repaired = client.post('/api/consistency/reconcile').get_json()
    assert len(repaired['drifts']) == 1
    assert client.get('/api/consistency').get_json() == {'consistent': True, 'drifts': []}
