"""Tests for assembling impostor and genuine training cadences."""
from cadence.config import CadenceConfig
from cadence.training_data import TrainingDataAssembler


def test_assemble_caps_both_sides(db, tracker, phrase_id, cadences):
    tracker.batch_insert_cadences('genuine-user', phrase_id, cadences(60))
    for n in range(5):
        tracker.batch_insert_cadences(f'other-{n}', phrase_id, cadences(50))

    impostor, genuine = TrainingDataAssembler(db).assemble('genuine-user', phrase_id)

    assert len(impostor) == 200
    assert len(genuine) == 50
    assert all(c['user_id'] == 'genuine-user' for c in genuine)
    assert all(c['user_id'] != 'genuine-user' for c in impostor)
    assert all(c['phrase_id'] == phrase_id for c in impostor + genuine)


def test_assemble_returns_what_is_available(db, tracker, phrase_id, cadences):
    tracker.batch_insert_cadences('u', phrase_id, cadences(3))
    tracker.batch_insert_cadences('v', phrase_id, cadences(7))

    impostor, genuine = TrainingDataAssembler(db).assemble('u', phrase_id)

    assert len(genuine) == 3
    assert len(impostor) == 7


def test_assemble_ignores_other_phrases(db, tracker, phrase_id, cadences):
    other = tracker.add_phrases(['another phrase'])[0]
    tracker.batch_insert_cadences('u', other, cadences(4))
    tracker.batch_insert_cadences('v', other, cadences(4))

    assert TrainingDataAssembler(db).assemble('u', phrase_id) == ([], [])


def test_assemble_uses_configured_sizes(db, tracker, phrase_id, cadences):
    tracker.batch_insert_cadences('u', phrase_id, cadences(10))
    tracker.batch_insert_cadences('v', phrase_id, cadences(10))
    config = CadenceConfig(impostor_sample_size=4, genuine_sample_size=2)

    impostor, genuine = TrainingDataAssembler(db, config).assemble('u', phrase_id)

    assert (len(impostor), len(genuine)) == (4, 2)


def test_assembled_cadences_carry_timelines(db, tracker, phrase_id):
    tracker.batch_insert_cadences('u', phrase_id, [{'timeline': [120, 80, 95]}])
    _, genuine = TrainingDataAssembler(db).assemble('u', phrase_id)
    assert genuine[0]['timeline'] == [120, 80, 95]
    assert 'marker' not in genuine[0]


def test_assemble_reads_each_side_in_one_read_transaction(db, tracker, phrase_id, cadences,
                                                         monkeypatch):
    tracker.batch_insert_cadences('u', phrase_id, cadences(3))
    tracker.batch_insert_cadences('v', phrase_id, cadences(3))
    opened = []
    transaction = db._transaction

    def recording_transaction(write=True):
        opened.append(write)
        return transaction(write=write)

    monkeypatch.setattr(db, '_transaction', recording_transaction)
    impostor, genuine = TrainingDataAssembler(db).assemble('u', phrase_id)

    assert opened == [False, False]
    assert (len(impostor), len(genuine)) == (3, 3)
