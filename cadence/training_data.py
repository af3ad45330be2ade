#!/usr/bin/env python3
"""
Training Data Assembler - impostor and genuine cadences for one (user, phrase) pair
"""

import logging
import random
from typing import Any, Dict, List, Optional, Tuple

from .config import CadenceConfig
from .database import CadenceDatabase
from .sampler import MARKER_FIELD

logger = logging.getLogger(__name__)

CADENCE_FIELDS = ['phrase_id', 'user_id', 'timeline']


class TrainingDataAssembler:
    """Pulls bounded random batches of cadences for classifier training"""

    def __init__(self, db: CadenceDatabase, config: Optional[CadenceConfig] = None,
                 rng: Optional[random.Random] = None):
        self.db = db
        self.config = config or CadenceConfig()
        self.rng = rng or random.Random()

    def _find_cadences(self, user_id: str, phrase_id: str, by_user: bool,
                       limit: int) -> List[Dict[str, Any]]:
        criteria = {
            'phrase_id': phrase_id,
            'user_id': user_id if by_user else {'$ne': user_id},
        }
        return self.db.find_many('cadences', criteria, projection=CADENCE_FIELDS,
                                 limit=limit, snapshot=True,
                                 near=(MARKER_FIELD, self.rng.random()))

    def assemble(self, user_id: str,
                 phrase_id: str) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Returns (impostor, genuine) cadences

        Impostors are other users' cadences of the phrase, genuine ones are the
        user's own. Each side is capped by the configured sample size and holds
        whatever exists when fewer are stored.
        """
        impostor = self._find_cadences(user_id, phrase_id, False, self.config.impostor_sample_size)
        genuine = self._find_cadences(user_id, phrase_id, True, self.config.genuine_sample_size)

        logger.info(f"Assembled {len(impostor)} impostor and {len(genuine)} genuine cadences "
                    f"for user {user_id} on phrase {phrase_id}")
        return impostor, genuine
