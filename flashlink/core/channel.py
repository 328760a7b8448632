"""
FlashLink Optical Channel Simulator
Screen -> camera path: contrast loss, ambient light, sensor noise and
Gilbert-Elliott burst errors (motion blur, glare) on top.
Produces per-bit brightness samples in 0..255.
"""

import numpy as np
from typing import Dict, Optional, Tuple


class OpticalChannel:
    """
    received = ambient + contrast * level + N(0, noise_std), with burst
    errors inverting the sample around the mid level.
    """

    # Named lighting conditions
    LIGHTING = {
        'dark_room': {'ambient': 10.0, 'contrast': 0.9, 'noise_std': 4.0},
        'indoor': {'ambient': 40.0, 'contrast': 0.7, 'noise_std': 8.0},
        'bright_office': {'ambient': 80.0, 'contrast': 0.5, 'noise_std': 12.0},
        'sunlight': {'ambient': 140.0, 'contrast': 0.3, 'noise_std': 20.0},
    }

    def __init__(self, lighting: str = 'indoor', seed: Optional[int] = None):
        self.lighting = lighting
        self.rng = np.random.default_rng(seed)

        # Gilbert-Elliott model parameters
        self.p_gb = 0.0    # Prob: Good -> Bad (burst start)
        self.p_bg = 0.3    # Prob: Bad -> Good (burst end)
        self.error_rate_good = 0.0
        self.error_rate_bad = 0.3
        self.state = 'good'

        self._apply_lighting()
        self._update_parameters()

    def _apply_lighting(self):
        lp = self.LIGHTING.get(self.lighting, self.LIGHTING['indoor'])
        self.ambient = lp['ambient']
        self.contrast = lp['contrast']
        self.noise_std = lp['noise_std']

    def _update_parameters(self):
        # Contrast-to-noise ratio in dB
        swing = 255.0 * self.contrast
        self.snr_db = 20 * np.log10(max(swing / max(self.noise_std, 1e-10), 1e-10))

        p_good = self.p_bg / (self.p_gb + self.p_bg) if self.p_gb + self.p_bg else 1.0
        self.average_ber = p_good * self.error_rate_good + (1 - p_good) * self.error_rate_bad

    # parameter -> allowed (min, max)
    TUNABLE = {
        'ambient': (0.0, 255.0),
        'contrast': (0.0, 1.0),
        'noise_std': (0.0, 255.0),
        'p_gb': (0.0, 1.0),
        'p_bg': (0.0, 1.0),
        'error_rate_good': (0.0, 1.0),
        'error_rate_bad': (0.0, 1.0),
    }

    def set_parameters(self, **kwargs):
        """
        Update channel parameters. A lighting preset is applied first, then
        the numeric overrides. Raises ValueError (and changes nothing) on an
        unknown key, an unknown preset or an out-of-range value.
        """
        updates = {}
        for key, value in kwargs.items():
            if key == 'lighting':
                if value not in self.LIGHTING:
                    raise ValueError(f"unknown lighting preset '{value}'")
                continue
            if key not in self.TUNABLE:
                raise ValueError(f"unknown channel parameter '{key}'")
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"channel parameter '{key}' must be a number")
            lo, hi = self.TUNABLE[key]
            if not lo <= value <= hi:
                raise ValueError(f"channel parameter '{key}' must be within {lo}..{hi}")
            updates[key] = float(value)

        if 'lighting' in kwargs:
            self.lighting = kwargs['lighting']
            self._apply_lighting()
        for key, value in updates.items():
            setattr(self, key, value)
        self._update_parameters()

    def transmit(self, levels: np.ndarray) -> Tuple[np.ndarray, Dict]:
        """Screen levels in, camera brightness samples out (plus metrics)."""
        levels = np.asarray(levels, dtype=float)
        received = self.ambient + self.contrast * levels
        received += self.rng.normal(0, self.noise_std, len(levels))

        error_mask = self._gilbert_elliott_errors(len(levels))
        midpoint = self.ambient + self.contrast * 127.5
        received[error_mask] = 2 * midpoint - received[error_mask]

        received = np.clip(received, 0, 255)
        metrics = {
            'snr_db': float(self.snr_db),
            'burst_errors': int(np.sum(error_mask)),
            'ambient': float(self.ambient),
            'contrast': float(self.contrast),
            'noise_std': float(self.noise_std),
            'lighting': self.lighting,
        }
        return received, metrics

    def _gilbert_elliott_errors(self, length: int) -> np.ndarray:
        errors = np.zeros(length, dtype=bool)
        state = self.state
        for i in range(length):
            if state == 'good':
                errors[i] = self.rng.random() < self.error_rate_good
                if self.rng.random() < self.p_gb:
                    state = 'bad'
            else:
                errors[i] = self.rng.random() < self.error_rate_bad
                if self.rng.random() < self.p_bg:
                    state = 'good'
        self.state = state
        return errors

    def get_quality_label(self) -> str:
        if self.snr_db > 25:
            return 'Excellent'
        elif self.snr_db > 18:
            return 'Good'
        elif self.snr_db > 10:
            return 'Fair'
        else:
            return 'Poor'

    def get_state_dict(self) -> Dict:
        return {
            'lighting': self.lighting,
            'ambient': round(float(self.ambient), 2),
            'contrast': round(float(self.contrast), 3),
            'noise_std': round(float(self.noise_std), 2),
            'snr_db': round(float(self.snr_db), 2),
            'quality': self.get_quality_label(),
            'burst_start_prob': self.p_gb,
            'average_ber': f'{self.average_ber:.2e}',
        }
