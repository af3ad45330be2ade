#!/usr/bin/env python3
"""
Random Sampler - pick a roughly uniform random document without a full scan

Every phrase and cadence carries a `marker`, a float drawn uniformly from
[0, 1). A draw picks a fresh point and returns the matching document whose
marker is nearest to it, which costs two index probes. The chosen document
then gets a new marker so that repeated draws do not keep landing on the
documents that sit next to wide gaps.
"""

import logging
import random
from typing import Any, Dict, Optional, Sequence

from .database import CadenceDatabase

logger = logging.getLogger(__name__)

MARKER_FIELD = 'marker'


def new_marker(rng: Optional[random.Random] = None) -> float:
    """A fresh sampling marker in [0, 1)"""
    return (rng or random).random()


class RandomSampler:
    """Draws random documents from a collection by nearest marker"""

    def __init__(self, db: CadenceDatabase, rng: Optional[random.Random] = None):
        self.db = db
        self.rng = rng or random.Random()

    def sample(self, collection: str, criteria: Optional[Dict[str, Any]] = None,
               projection: Optional[Sequence[str]] = None) -> Optional[Dict[str, Any]]:
        """
        Return one random document matching `criteria`, or None

        The returned document reflects the state before its marker was moved.
        """
        point = self.rng.random()
        doc = self.db.find_one(collection, criteria, projection, near=(MARKER_FIELD, point))
        if doc is None:
            logger.debug(f"No {collection} document matches {criteria}")
            return None

        self.db.update_by_id(collection, doc['id'], {'$set': {MARKER_FIELD: self.rng.random()}})
        logger.debug(f"Sampled {collection} {doc['id']} near {point:.4f}")
        return doc
