#!/usr/bin/env python3
"""
Enrollment Tracker - phrase membership, collected cadences and their consistency

A phrase keeps the set of users who finished training on it together with a
denormalized participant_count. Cadences live in their own collection and
reference (user, phrase) by id, so unenrolling has to clean them up itself.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from .config import CadenceConfig
from .database import CadenceDatabase
from .errors import ConsistencyDrift
from .sampler import MARKER_FIELD, RandomSampler

logger = logging.getLogger(__name__)

PHRASE_FIELDS = ['text']


@dataclass
class ConsistencyReport:
    """Result of a consistency check between phrases and cadences"""
    drifts: List[ConsistencyDrift] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.drifts

    def of_kind(self, kind: str) -> List[ConsistencyDrift]:
        return [d for d in self.drifts if d.kind == kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'consistent': self.consistent,
            'drifts': [d.to_dict() for d in self.drifts],
        }


class EnrollmentTracker:
    """Maintains users, phrases, their participants and the cadences behind them"""

    def __init__(self, db: CadenceDatabase, config: Optional[CadenceConfig] = None,
                 rng: Optional[random.Random] = None):
        self.db = db
        self.config = config or CadenceConfig()
        self.rng = rng or random.Random()
        self.sampler = RandomSampler(db, self.rng)

    # Users

    def add_user(self, username: str, password: str, roles: Iterable[str] = ('user',),
                 **profile) -> str:
        """
        Store a user; the password is credential material prepared by the
        identity layer and is stored as given
        """
        doc = {'username': username, 'password': password, 'roles': set(roles)}
        # Only keep profile fields that carry a value
        doc.update({k: v for k, v in profile.items() if v not in (None, '')})
        user_id = self.db.insert_one('users', doc)
        logger.info(f"Added user {username} ({user_id})")
        return user_id

    def get_user(self, criteria: Union[str, Dict[str, Any]],
                 projection: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        """Get a user by username, or by a filter dict"""
        if isinstance(criteria, str):
            criteria = {'username': criteria}
        return self.db.find_one('users', criteria, projection)

    def add_roles(self, criteria: Union[str, Dict[str, Any]], *roles: str) -> int:
        """Grant roles to every user matching the criteria (or username)"""
        if isinstance(criteria, str):
            criteria = {'username': criteria}
        matched = self.db.update_many('users', criteria,
                                      {'$add_to_set': {'roles': {'$each': list(roles)}}})
        logger.info(f"Granted roles {sorted(roles)} to {matched} users")
        return matched

    # Phrases

    def add_phrases(self, texts: Iterable[str]) -> List[str]:
        """Batch insert phrases with no participants yet"""
        docs = [{
            'text': text,
            'participants': set(),
            'participant_count': 0,
            MARKER_FIELD: self.rng.random(),
        } for text in texts]
        ids = self.db.insert_batch('phrases', docs)
        logger.info(f"Added {len(ids)} phrases")
        return ids

    def get_phrase(self, phrase_id: str) -> Optional[Dict[str, Any]]:
        return self.db.get_by_id('phrases', phrase_id)

    def phrase_for_authentication(self, user_id: str) -> Optional[Dict[str, Any]]:
        """A random phrase the user trained on and enough other users did too"""
        return self.sampler.sample('phrases', {
            'participants': user_id,
            'participant_count': {'$gt': self.config.auth_min_participants},
        }, projection=PHRASE_FIELDS)

    def phrase_for_training(self, user_id: str) -> Optional[Dict[str, Any]]:
        """A random phrase the user has not trained on yet"""
        return self.sampler.sample('phrases', {'participants': {'$ne': user_id}},
                                   projection=PHRASE_FIELDS)

    # Enrollment

    def batch_insert_cadences(self, user_id: str, phrase_id: str,
                              cadences: Iterable[Dict[str, Any]]) -> List[str]:
        """
        Tag cadences with the pair and a fresh marker each, then insert them as one batch

        Each input is a dict with a 'timeline' and optionally 'extra'.
        """
        docs = []
        for cadence in cadences:
            doc = {
                'timeline': cadence.get('timeline', []),
                'extra': cadence.get('extra', {}),
            }
            doc.update({'user_id': user_id, 'phrase_id': phrase_id, MARKER_FIELD: self.rng.random()})
            docs.append(doc)

        ids = self.db.insert_batch('cadences', docs)
        if ids:
            logger.info(f"Stored {len(ids)} cadences for user {user_id} on phrase {phrase_id}")
        return ids

    def enroll(self, user_id: str, phrase_id: str) -> bool:
        """
        Add the user to the phrase's participants

        The count only moves when the user was not a participant yet; the
        membership guard and both mutations run as one store update.
        Returns True if the user was newly added.
        """
        added = self.db.update_many(
            'phrases',
            {'id': phrase_id, 'participants': {'$ne': user_id}},
            {'$add_to_set': {'participants': user_id}, '$inc': {'participant_count': 1}},
        ) > 0

        if added:
            logger.info(f"Enrolled user {user_id} on phrase {phrase_id}")
        else:
            logger.info(f"User {user_id} already enrolled on phrase {phrase_id} (or phrase missing)")
        return added

    def unenroll(self, user_id: str, phrase_id: str) -> int:
        """
        Remove the user from the phrase and delete the pair's cadences

        The pair is first marked as unenrolling on the phrase, then membership
        is pulled, the cadences deleted and the mark cleared, each as its own
        store call. If any step after the mark fails the mark stays behind;
        check_consistency() reports the pair and reconcile() finishes the
        unenroll. Returns the number of cadences deleted.
        """
        self.db.update_by_id('phrases', phrase_id, {'$add_to_set': {'unenrolling': user_id}})

        removed = self.db.update_many(
            'phrases',
            {'id': phrase_id, 'participants': user_id},
            {'$pull': {'participants': user_id}, '$inc': {'participant_count': -1}},
        ) > 0

        deleted = self.db.remove('cadences', {'phrase_id': phrase_id, 'user_id': user_id})
        self.db.update_by_id('phrases', phrase_id, {'$pull': {'unenrolling': user_id}})

        logger.info(f"Unenrolled user {user_id} from phrase {phrase_id} "
                    f"(member: {removed}, cadences removed: {deleted})")
        return deleted

    # Consistency

    def check_consistency(self) -> ConsistencyReport:
        """Report count drift and orphaned cadences; changes nothing"""
        report = ConsistencyReport()

        for row in self.db.get_count_mismatches():
            report.drifts.append(ConsistencyDrift(
                kind='count_mismatch',
                phrase_id=row['id'],
                detail={'participant_count': row['participant_count'],
                        'participants': row['set_size']},
            ))

        for row in self.db.get_orphaned_cadence_pairs():
            report.drifts.append(ConsistencyDrift(
                kind='orphaned_cadence',
                phrase_id=row['phrase_id'],
                user_id=row['user_id'],
                detail={'cadences': row['cadence_count'],
                        'phrase_missing': bool(row['phrase_missing'])},
            ))

        if report.drifts:
            logger.warning(f"Consistency check found {len(report.drifts)} drifts")
        return report

    def reconcile(self) -> ConsistencyReport:
        """
        Repair what check_consistency() finds

        Counts are reset to the participant set size, unfinished unenrolls
        are run again and cadences of missing phrases are deleted. Returns
        the report that was repaired.
        """
        report = self.check_consistency()

        for drift in report.of_kind('count_mismatch'):
            phrase = self.db.get_by_id('phrases', drift.phrase_id, ['participants'])
            if phrase is not None:
                self.db.update_by_id('phrases', drift.phrase_id,
                                     {'$set': {'participant_count': len(phrase['participants'])}})

        for drift in report.of_kind('orphaned_cadence'):
            if not drift.detail['phrase_missing']:
                self.unenroll(drift.user_id, drift.phrase_id)
            else:
                self.db.remove('cadences', {'phrase_id': drift.phrase_id, 'user_id': drift.user_id})

        if report.drifts:
            logger.info(f"Reconciled {len(report.drifts)} drifts")
        return report
