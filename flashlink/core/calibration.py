"""
FlashLink Calibration Engine
Derives the brightness decision threshold from samples taken while the
sender shows its calibration pattern.
"""

import logging
import math
import numpy as np
from enum import Enum
from typing import List

from core.errors import CalibrationError, InsufficientSamples

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 128


class CalibrationState(Enum):
    IDLE = 'idle'
    CALIBRATING = 'calibrating'
    CALIBRATED = 'calibrated'


class CalibrationEngine:
    """
    Methods:
    - mean_margin: mean(samples) + margin
    - midpoint:    (min + max) / 2
    - percentile:  midpoint of the 10th and 90th percentiles
    """

    METHODS = ('mean_margin', 'midpoint', 'percentile')

    def __init__(self, method: str = 'mean_margin', margin: float = 50.0,
                 min_samples: int = 1):
        if method not in self.METHODS:
            raise ValueError(f"unknown calibration method '{method}'")
        if min_samples < 1:
            raise ValueError("min_samples must be at least 1")
        self.method = method
        self.margin = margin
        self.min_samples = min_samples
        self.state = CalibrationState.IDLE
        self.threshold = DEFAULT_THRESHOLD
        self.samples: List[float] = []

    def start(self):
        self.samples = []
        self.state = CalibrationState.CALIBRATING
        logger.info("calibration started (%s)", self.method)

    def add_sample(self, brightness: float):
        if self.state != CalibrationState.CALIBRATING:
            raise CalibrationError("add_sample called while not calibrating")
        value = float(brightness)
        if not math.isfinite(value) or not 0 <= value <= 255:
            raise ValueError(f"brightness {brightness!r} outside 0..255")
        self.samples.append(value)

    def compute_threshold(self, samples) -> int:
        arr = np.asarray(samples, dtype=float)
        if self.method == 'mean_margin':
            raw = np.mean(arr) + self.margin
        elif self.method == 'midpoint':
            raw = (np.min(arr) + np.max(arr)) / 2
        else:
            raw = (np.percentile(arr, 10) + np.percentile(arr, 90)) / 2
        return int(np.clip(round(float(raw)), 0, 255))

    def finish(self) -> int:
        """Compute the threshold. State and threshold are untouched on failure."""
        if self.state != CalibrationState.CALIBRATING:
            raise CalibrationError("finish called while not calibrating")
        if len(self.samples) < self.min_samples:
            raise InsufficientSamples(
                f"{len(self.samples)} samples, need at least {self.min_samples}")
        self.threshold = self.compute_threshold(self.samples)
        self.state = CalibrationState.CALIBRATED
        logger.info("calibrated threshold %d from %d samples",
                    self.threshold, len(self.samples))
        return self.threshold

    def reset(self):
        """Back to IDLE; the last threshold is kept."""
        self.samples = []
        self.state = CalibrationState.IDLE

    def get_stats(self) -> dict:
        return {
            'state': self.state.value,
            'method': self.method,
            'threshold': self.threshold,
            'samples': len(self.samples),
        }
