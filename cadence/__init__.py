#!/usr/bin/env python3
"""
Cadence Package
Data layer for keystroke cadence authentication: sampling, enrollment and classifier caching
"""

__version__ = '1.0.0'
__author__ = 'Security Research Team'

from .config import CadenceConfig
from .database import CadenceDatabase
from .sampler import RandomSampler
from .training_data import TrainingDataAssembler
from .enrollment import EnrollmentTracker, ConsistencyReport
from .classifier_cache import ClassifierCache
from .errors import CadenceError, StoreUnavailable, ConstraintViolation, ConsistencyDrift

__all__ = [
    'CadenceConfig',
    'CadenceDatabase',
    'RandomSampler',
    'TrainingDataAssembler',
    'EnrollmentTracker',
    'ConsistencyReport',
    'ClassifierCache',
    'CadenceError',
    'StoreUnavailable',
    'ConstraintViolation',
    'ConsistencyDrift'
]
