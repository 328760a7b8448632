"""
FlashLink Bit/Byte Converter
Fixed-width MSB-first conversions between integers, bytes and bit arrays.
Bit arrays are numpy int arrays holding 0/1.
"""

import numpy as np
from typing import Union, Sequence

BitsLike = Union[str, Sequence[int], np.ndarray]


def as_bit_array(bits: BitsLike) -> np.ndarray:
    """Accept a '0101' string, a list of ints or an array and return an int array."""
    if isinstance(bits, str):
        if any(c not in '01' for c in bits):
            raise ValueError("bit string may only contain '0' and '1'")
        return np.fromiter((c == '1' for c in bits), dtype=int, count=len(bits))
    arr = np.asarray(bits, dtype=int).ravel()
    if arr.size and (arr.min() < 0 or arr.max() > 1):
        raise ValueError("bit array may only contain 0 and 1")
    return arr


def to_bits(value: int, width: int) -> np.ndarray:
    """Fixed-width, MSB first, left-padded with zeros."""
    if width <= 0:
        raise ValueError("width must be positive")
    if value < 0 or value >= (1 << width):
        raise ValueError(f"value {value} does not fit in {width} bits")
    return np.array([(value >> j) & 1 for j in range(width - 1, -1, -1)], dtype=int)


def from_bits(bits: BitsLike) -> int:
    """Inverse of to_bits."""
    arr = as_bit_array(bits)
    if arr.size == 0:
        raise ValueError("cannot convert an empty bit sequence")
    value = 0
    for b in arr:
        value = (value << 1) | int(b)
    return value


def bytes_to_bits(data: bytes) -> np.ndarray:
    """Big-endian bit order within each byte."""
    if not data:
        return np.zeros(0, dtype=int)
    return np.unpackbits(np.frombuffer(bytes(data), dtype=np.uint8)).astype(int)


def bits_to_bytes(bits: BitsLike) -> bytes:
    arr = as_bit_array(bits)
    if arr.size % 8 != 0:
        raise ValueError(f"bit count {arr.size} is not a multiple of 8")
    if arr.size == 0:
        return b''
    return np.packbits(arr.astype(np.uint8)).tobytes()


def bits_to_string(bits: BitsLike) -> str:
    return ''.join(str(int(b)) for b in as_bit_array(bits))
