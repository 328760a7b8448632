"""
FlashLink Link Quality Metrics
Bit error rate from parity failures, brightness SNR and packet confidence.
"""

import time
import numpy as np
from typing import Dict, List, Optional, Sequence

from core.bits import as_bit_array
from core.parity import UNIT_BITS


def parity_bit_error_rate(unit_bits, total_bits: int) -> float:
    """
    Each failing 9-bit unit counts as 9 bits in error, so this is an
    upper bound on the true BER.
    """
    if total_bits == 0:
        return 0.0
    arr = as_bit_array(unit_bits)
    n_units = len(arr) // UNIT_BITS
    if n_units == 0:
        return 0.0
    units = arr[:n_units * UNIT_BITS].reshape(n_units, UNIT_BITS)
    parity_errors = int(np.sum(units.sum(axis=1) % 2 != 0))
    return parity_errors * UNIT_BITS / total_bits


def brightness_snr(samples: Sequence[float]) -> float:
    """(max - min) / (std + 1) over a window of brightness samples."""
    arr = np.asarray(samples, dtype=float)
    if arr.size < 2:
        return 0.0
    return float((arr.max() - arr.min()) / (arr.std() + 1))


def packet_confidence(valid_packets: int, total_packets: int) -> float:
    """Percentage of packets that passed validation (100 when none were seen)."""
    if total_packets == 0:
        return 100.0
    return valid_packets / total_packets * 100


def bit_error_rate(sent, received) -> float:
    a = as_bit_array(sent)
    b = as_bit_array(received)
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    return float(np.sum(a[:n] != b[:n]) / n)


def aggregate_metrics(history: List[Dict], window_ms: float = 3_600_000,
                      now_ms: Optional[float] = None) -> Optional[Dict]:
    """Average ber/snr/confidence over entries newer than `window_ms`."""
    if now_ms is None:
        now_ms = time.time() * 1000
    recent = [m for m in history if now_ms - m['timestamp'] < window_ms]
    if not recent:
        return None
    return {
        'average_ber': float(np.mean([m['ber'] for m in recent])),
        'average_snr': float(np.mean([m['snr'] for m in recent])),
        'average_confidence': float(np.mean([m['confidence'] for m in recent])),
        'total_transmissions': len(recent),
        'time_window': window_ms,
    }
