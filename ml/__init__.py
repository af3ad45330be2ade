#!/usr/bin/env python3
"""
Machine Learning Module for the cadence data layer
Per-phrase keystroke cadence classification
"""

from .phrase_classifier import (
    Dataset,
    InsufficientTrainingData,
    PhraseClassifierTrainer,
    TimelineFeatureExtractor,
    load_model,
    score
)

__all__ = [
    'Dataset',
    'InsufficientTrainingData',
    'PhraseClassifierTrainer',
    'TimelineFeatureExtractor',
    'load_model',
    'score'
]
