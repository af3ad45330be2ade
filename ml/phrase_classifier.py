#!/usr/bin/env python3
"""
Phrase Classifier - Distinguishes a user's typing cadence from impostors
Uses scikit-learn to train one SVM per (user, phrase) pair
"""

import numpy as np
import pickle
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import SVC

logger = logging.getLogger(__name__)

IMPOSTOR, GENUINE = 0, 1


class InsufficientTrainingData(ValueError):
    """Raised when a dataset does not hold both impostor and genuine samples"""


def timeline_intervals(timeline: Sequence[Any]) -> np.ndarray:
    """
    Timing measurements of a cadence timeline as a float array

    Entries are either numbers or dicts carrying 'interval_ms' (or
    'time_difference'); entries without a timing are skipped.
    """
    values = []
    for entry in timeline or []:
        if isinstance(entry, dict):
            value = entry.get('interval_ms', entry.get('time_difference'))
        else:
            value = entry
        if value is not None:
            values.append(float(value))
    return np.array(values, dtype=float)


class TimelineFeatureExtractor:
    """Extract features from a cadence timeline"""

    STAT_NAMES = ['mean', 'std', 'median', 'min', 'max', 'p25', 'p75', 'total', 'count']

    @staticmethod
    def statistics(intervals: np.ndarray) -> List[float]:
        """Summary statistics of the intervals, zeros for an empty timeline"""
        if len(intervals) == 0:
            return [0.0] * len(TimelineFeatureExtractor.STAT_NAMES)
        return [
            float(np.mean(intervals)),
            float(np.std(intervals)),
            float(np.median(intervals)),
            float(np.min(intervals)),
            float(np.max(intervals)),
            float(np.percentile(intervals, 25)),
            float(np.percentile(intervals, 75)),
            float(np.sum(intervals)),
            float(len(intervals)),
        ]

    @staticmethod
    def extract(timeline: Sequence[Any], length: int) -> np.ndarray:
        """
        Feature vector: the first `length` intervals (zero padded) followed by
        the summary statistics

        Every cadence of one phrase yields a vector of the same size, so the
        per-position timings line up key for key.
        """
        intervals = timeline_intervals(timeline)
        positional = np.zeros(length)
        n = min(length, len(intervals))
        positional[:n] = intervals[:n]
        stats = np.array(TimelineFeatureExtractor.statistics(intervals))
        return np.concatenate([positional, stats])


@dataclass
class Dataset:
    """Labelled feature matrix built from impostor and genuine cadences"""
    X: np.ndarray
    y: np.ndarray
    length: int

    @property
    def counts(self) -> Dict[str, int]:
        return {
            'impostor': int(np.sum(self.y == IMPOSTOR)),
            'genuine': int(np.sum(self.y == GENUINE)),
        }


class PhraseClassifierTrainer:
    """
    Builds datasets and trains per-phrase classifiers

    Models are returned as pickled bytes holding the sklearn pipeline and the
    timeline length it expects, ready to be stored by the classifier cache.
    """

    KIND = 'svm'

    def __init__(self, C: float = 1.0, gamma: str = 'scale'):
        self.C = C
        self.gamma = gamma

    def create_dataset(self, impostor: List[Dict], genuine: List[Dict]) -> Dataset:
        timelines = [c.get('timeline', []) for c in impostor] + [c.get('timeline', []) for c in genuine]
        length = max((len(timeline_intervals(t)) for t in timelines), default=0)

        if timelines:
            X = np.vstack([TimelineFeatureExtractor.extract(t, length) for t in timelines])
        else:
            X = np.empty((0, length + len(TimelineFeatureExtractor.STAT_NAMES)))
        y = np.array([IMPOSTOR] * len(impostor) + [GENUINE] * len(genuine))

        logger.info(f"Created dataset with {len(impostor)} impostor and {len(genuine)} genuine samples")
        return Dataset(X=X, y=y, length=length)

    def train_classifier(self, dataset: Dataset) -> bytes:
        """Fit scaler + SVM on the dataset and return the serialized model"""
        counts = dataset.counts
        if counts['impostor'] == 0 or counts['genuine'] == 0:
            raise InsufficientTrainingData(
                f"Need impostor and genuine samples, got {counts}")

        pipeline = Pipeline([
            ('scaler', StandardScaler()),
            ('svm', SVC(C=self.C, gamma=self.gamma, probability=False,
                        class_weight='balanced')),
        ])

        logger.info("Training SVM phrase classifier...")
        pipeline.fit(dataset.X, dataset.y)

        train_accuracy = pipeline.score(dataset.X, dataset.y)
        logger.info(f"Training complete. Training accuracy: {train_accuracy:.4f}")

        return pickle.dumps({'pipeline': pipeline, 'length': dataset.length})


def load_model(blob: bytes) -> Dict[str, Any]:
    """Deserialize a model produced by PhraseClassifierTrainer"""
    return pickle.loads(blob)


def score(blob: bytes, timeline: Sequence[Any], model: Optional[Dict[str, Any]] = None) -> Dict:
    """
    Classify one cadence against a trained phrase model

    Returns:
        Dict with the genuine flag and the SVM decision value
    """
    model = model or load_model(blob)
    features = TimelineFeatureExtractor.extract(timeline, model['length']).reshape(1, -1)
    pipeline = model['pipeline']

    prediction = int(pipeline.predict(features)[0])
    decision = float(pipeline.decision_function(features)[0])

    return {
        'genuine': prediction == GENUINE,
        'decision': decision,
    }
