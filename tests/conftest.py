import random

import pytest

from cadence.config import CadenceConfig
from cadence.database import CadenceDatabase
from cadence.enrollment import EnrollmentTracker


@pytest.fixture
def config(tmp_path):
    return CadenceConfig(db_path=str(tmp_path / 'cadence.db'))


@pytest.fixture
def db(config):
    database = CadenceDatabase.from_config(config)
    yield database
    database.close()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def tracker(db, config, rng):
    return EnrollmentTracker(db, config, rng=rng)


@pytest.fixture
def phrase_id(tracker):
    return tracker.add_phrases(['the quick brown fox'])[0]


def make_cadences(n, base=100.0, step=1.0):
    return [{'timeline': [base + i * step, base + 20, base + 40]} for i in range(n)]


@pytest.fixture
def cadences():
    return make_cadences
