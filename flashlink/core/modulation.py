"""
FlashLink Modulation Module
On-Off Keying for a flashing screen: bit 1 = bright frame, bit 0 = dark frame,
one bit per BIT_DURATION_MS.
"""

import numpy as np
from typing import List, Tuple

from core.bits import BitsLike, as_bit_array
from core.framing import BIT_DURATION_MS


def transmission_duration_ms(bits: BitsLike, bit_duration_ms: int = BIT_DURATION_MS) -> int:
    return len(as_bit_array(bits)) * bit_duration_ms


class FlashSchedule:
    """Turns a bit stream into timed screen brightness levels."""

    def __init__(self, on_level: int = 255, off_level: int = 0,
                 bit_duration_ms: int = BIT_DURATION_MS):
        if not 0 <= off_level < on_level <= 255:
            raise ValueError("need 0 <= off_level < on_level <= 255")
        if bit_duration_ms <= 0:
            raise ValueError("bit_duration_ms must be positive")
        self.on_level = on_level
        self.off_level = off_level
        self.bit_duration_ms = bit_duration_ms

    def levels(self, bits: BitsLike) -> np.ndarray:
        """Brightness level per bit period."""
        arr = as_bit_array(bits)
        return np.where(arr == 1, self.on_level, self.off_level).astype(float)

    def schedule(self, bits: BitsLike) -> List[Tuple[int, int]]:
        """(start_ms, level) steps, one per bit."""
        return [(i * self.bit_duration_ms, int(level))
                for i, level in enumerate(self.levels(bits))]

    def duration_ms(self, bits: BitsLike) -> int:
        return transmission_duration_ms(bits, self.bit_duration_ms)


class ThresholdDemodulator:
    """Slices brightness samples against a fixed threshold."""

    def __init__(self, threshold: float = 128):
        self.threshold = threshold

    def demodulate(self, samples: np.ndarray) -> np.ndarray:
        return (np.asarray(samples, dtype=float) > self.threshold).astype(int)

    def soft_demodulate(self, samples: np.ndarray, span: float = 255.0) -> Tuple[np.ndarray, np.ndarray]:
        """Hard decisions plus a 0..1 confidence from the distance to the threshold."""
        samples = np.asarray(samples, dtype=float)
        bits = (samples > self.threshold).astype(int)
        half = max(self.threshold, span - self.threshold, 1e-10)
        confidence = np.clip(np.abs(samples - self.threshold) / half, 0.0, 1.0)
        return bits, confidence
