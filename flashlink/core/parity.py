"""
FlashLink Legacy Parity Framing
Each byte travels as 8 data bits followed by one even-parity bit,
wrapped in the same start/end markers as packet mode.
"""

import numpy as np
from typing import Union

from core.bits import BitsLike, as_bit_array, bits_to_bytes
from core.errors import ParityError
from core.framing import START_FRAME, END_FRAME

UNIT_BITS = 9


def parity_bit(byte_bits: np.ndarray) -> int:
    """Even parity: 1 when the data bits hold an odd number of ones."""
    return int(np.sum(byte_bits)) % 2


def encode_byte(byte: int) -> np.ndarray:
    data = np.array([(byte >> j) & 1 for j in range(7, -1, -1)], dtype=int)
    return np.append(data, parity_bit(data))


def encode_legacy_message(message: Union[str, bytes]) -> np.ndarray:
    """START + one 9-bit unit per byte + END."""
    if isinstance(message, str):
        message = message.encode('utf-8')
    units = [encode_byte(b) for b in message]
    return np.concatenate([START_FRAME] + units + [END_FRAME])


def check_units(bits: BitsLike) -> bytes:
    """
    Validate a run of 9-bit units and return the data bytes.
    Raises ParityError at the first failing unit.
    """
    arr = as_bit_array(bits)
    if len(arr) % UNIT_BITS != 0:
        raise ValueError(f"{len(arr)} bits is not a whole number of 9-bit units")

    data = []
    for i in range(len(arr) // UNIT_BITS):
        unit = arr[i * UNIT_BITS:(i + 1) * UNIT_BITS]
        if parity_bit(unit[:8]) != unit[8]:
            raise ParityError(i)
        data.append(unit[:8])

    if not data:
        return b''
    return bits_to_bytes(np.concatenate(data))
