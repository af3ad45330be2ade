#!/usr/bin/env python3
"""
Classifier Cache - get-or-train classifiers keyed by (user, phrase)
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .config import CadenceConfig
from .database import CadenceDatabase
from .training_data import TrainingDataAssembler

logger = logging.getLogger(__name__)

STAT_FIELDS = ('attempts', 'authentications', 'rejections', 'successes', 'failures')


class ClassifierTrainer(Protocol):
    """The dataset construction and training collaborator"""

    KIND: str

    def create_dataset(self, impostor, genuine) -> Any:
        ...

    def train_classifier(self, dataset) -> bytes:
        ...


class ClassifierCache:
    """
    Returns the stored classifier for a pair, training one on a miss

    Concurrent misses for the same pair inside this process wait on one
    training run. Misses in different processes can still train twice; the
    last store wins.
    """

    def __init__(self, db: CadenceDatabase, assembler: TrainingDataAssembler,
                 trainer: ClassifierTrainer, config: Optional[CadenceConfig] = None):
        self.db = db
        self.assembler = assembler
        self.trainer = trainer
        self.config = config or CadenceConfig()
        # pair -> [lock, number of callers holding or waiting on it]
        self._locks: Dict[Tuple[str, str], List[Any]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _key_lock(self, key: Tuple[str, str]):
        """Hold the in-flight lock for a pair; the entry is dropped once nobody waits on it"""
        with self._locks_guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def lookup(self, user_id: str, phrase_id: str) -> Optional[Dict[str, Any]]:
        """The stored classifier for the pair, or None"""
        return self.db.find_one('classifiers', {'user_id': user_id, 'phrase_id': phrase_id})

    def get_classifier(self, user_id: str, phrase_id: str) -> Dict[str, Any]:
        """
        Gets the classifier for the user/phrase pair, training one if none is stored

        A freshly trained result carries 'model', 'kind' and 'dataset'. It is
        stored (and gets an 'id' and zeroed statistics) when persist_on_miss is
        enabled; otherwise every miss trains again.
        """
        found = self.lookup(user_id, phrase_id)
        if found is not None:
            return found

        key = (user_id, phrase_id)
        with self._key_lock(key):
            # Another thread may have trained while we waited
            found = self.lookup(user_id, phrase_id)
            if found is not None:
                logger.debug(f"Classifier for {key} trained by a concurrent request")
                return found
            return self._train(user_id, phrase_id)

    def _train(self, user_id: str, phrase_id: str) -> Dict[str, Any]:
        impostor, genuine = self.assembler.assemble(user_id, phrase_id)
        dataset = self.trainer.create_dataset(impostor, genuine)
        model = self.trainer.train_classifier(dataset)
        kind = getattr(self.trainer, 'KIND', 'svm')
        logger.info(f"Trained {kind} classifier for user {user_id} on phrase {phrase_id}")

        if self.config.persist_on_miss:
            result = self.store_classifier(user_id, phrase_id, model, kind)
        else:
            result = {'user_id': user_id, 'phrase_id': phrase_id, 'model': model, 'kind': kind}
        result['dataset'] = dataset
        return result

    def store_classifier(self, user_id: str, phrase_id: str, model: bytes,
                         kind: str = 'svm') -> Dict[str, Any]:
        """
        Stores the classifier for the pair with fresh statistics

        Replaces any classifier already stored for the pair.
        """
        doc = {'user_id': user_id, 'phrase_id': phrase_id, 'model': model, 'kind': kind}
        doc.update({name: 0 for name in STAT_FIELDS})
        doc['id'] = self.db.upsert('classifiers', ('user_id', 'phrase_id'), doc)
        logger.info(f"Stored classifier {doc['id']} for user {user_id} on phrase {phrase_id}")
        return doc

    def record_outcome(self, user_id: str, phrase_id: str, accepted: bool) -> bool:
        """
        Count one authentication attempt against the pair's classifier

        An accepted attempt bumps authentications and successes, a rejected
        one rejections and failures. Returns False if no classifier is stored.
        """
        if accepted:
            inc = {'attempts': 1, 'authentications': 1, 'successes': 1}
        else:
            inc = {'attempts': 1, 'rejections': 1, 'failures': 1}
        return self.db.update_many('classifiers', {'user_id': user_id, 'phrase_id': phrase_id},
                                   {'$inc': inc}) > 0
