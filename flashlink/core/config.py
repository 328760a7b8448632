"""
FlashLink Configuration
Defaults for every tunable, optionally overridden from a YAML file.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from core.framing import BIT_DURATION_MS, MAX_CHUNK_SIZE, MAX_PAYLOAD_LENGTH, packet_bit_length

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'link': {
        'bit_duration_ms': BIT_DURATION_MS,
        'max_chunk_size': MAX_CHUNK_SIZE,
        'compress': 'auto',
        'fec': False,
        'gap_bits': 16,
    },
    'receiver': {
        'mode': 'packet',
        'max_buffer_bits': 40960,
        'max_payload_length': 2048,
        'auto_decode': True,
        'queue_size': 64,
    },
    'calibration': {
        'method': 'mean_margin',
        'margin': 50,
        'min_samples': 1,
        'default_threshold': 128,
        'samples': 20,
    },
    'reassembly': {
        'timeout_s': 120.0,
        'max_groups': 16,
    },
    'channel': {
        'lighting': 'indoor',
        'seed': None,
    },
    'server': {
        'host': '127.0.0.1',
        'port': 5000,
        'debug': False,
    },
}


def _merge(base: dict, override: dict, path: str = '') -> dict:
    for key, value in override.items():
        where = f"{path}{key}"
        if key not in base:
            raise ValueError(f"unknown config key: {where}")
        if isinstance(base[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"config section {where} must be a mapping")
            _merge(base[key], value, where + '.')
        else:
            base[key] = value
    return base


def validate(cfg: Dict[str, Any]) -> Dict[str, Any]:
    link, rx, cal, reasm = cfg['link'], cfg['receiver'], cfg['calibration'], cfg['reassembly']

    if link['bit_duration_ms'] <= 0:
        raise ValueError("link.bit_duration_ms must be positive")
    if link['max_chunk_size'] <= 0:
        raise ValueError("link.max_chunk_size must be positive")
    if link['compress'] not in (True, False, 'auto'):
        raise ValueError("link.compress must be true, false or 'auto'")
    if rx['mode'] not in ('packet', 'legacy'):
        raise ValueError("receiver.mode must be 'packet' or 'legacy'")
    if not 0 <= rx['max_payload_length'] <= MAX_PAYLOAD_LENGTH:
        raise ValueError(f"receiver.max_payload_length must be within 0..{MAX_PAYLOAD_LENGTH}")
    if rx['max_buffer_bits'] < 2 * packet_bit_length(rx['max_payload_length']):
        raise ValueError("receiver.max_buffer_bits must hold at least two maximal frames")
    if rx['queue_size'] < 1:
        raise ValueError("receiver.queue_size must be at least 1")
    if cal['method'] not in ('mean_margin', 'midpoint', 'percentile'):
        raise ValueError(f"unknown calibration.method: {cal['method']}")
    if not 0 <= cal['default_threshold'] <= 255:
        raise ValueError("calibration.default_threshold must be within 0..255")
    if cal['min_samples'] < 1:
        raise ValueError("calibration.min_samples must be at least 1")
    if reasm['timeout_s'] <= 0 or reasm['max_groups'] < 1:
        raise ValueError("reassembly.timeout_s and reassembly.max_groups must be positive")
    return cfg


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Defaults merged with the YAML file at `path` (or $FLASHLINK_CONFIG).
    An empty file yields the defaults.
    """
    cfg = copy.deepcopy(DEFAULTS)
    path = path or os.environ.get('FLASHLINK_CONFIG')
    if path:
        with Path(path).open('r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f)
        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ValueError("config file must contain a mapping")
            _merge(cfg, loaded)
    return validate(cfg)
