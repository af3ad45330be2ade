#!/usr/bin/env python3
"""
Error taxonomy for the cadence data layer

Read paths never raise for missing documents, they return None.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class CadenceError(Exception):
    """Base class for all errors raised by the data layer"""


class StoreUnavailable(CadenceError):
    """The store could not be reached, or a lock/timeout was hit"""


class ConstraintViolation(CadenceError):
    """A uniqueness constraint was violated (phrase text, username, classifier key)"""


@dataclass
class ConsistencyDrift:
    """
    One detected inconsistency between phrases and cadences

    kind is 'count_mismatch' or 'orphaned_cadence'.
    """
    kind: str
    phrase_id: str
    user_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'phrase_id': self.phrase_id,
            'user_id': self.user_id,
            'detail': dict(self.detail),
        }
