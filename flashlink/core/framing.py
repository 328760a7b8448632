"""
FlashLink Packet Framing Module
Implements the on-wire packet: start marker, type tag, 16-bit length,
payload, CRC-16 and end marker.

    [START 8b][TYPE 8b][LENGTH 16b][PAYLOAD 8*len b][CRC-16 16b][END 8b]
"""

import logging
import numpy as np
from dataclasses import dataclass
from enum import IntEnum
from numpy.lib.stride_tricks import sliding_window_view
from typing import Optional, Union

from core.bits import (BitsLike, as_bit_array, to_bits, from_bits,
                       bytes_to_bits, bits_to_bytes)
from core.errors import (StartFrameNotFound, IncompleteFrame, InvalidLength,
                         InvalidEndFrame, ChecksumMismatch)

logger = logging.getLogger(__name__)

START_FRAME = np.ones(8, dtype=int)    # 11111111
END_FRAME = np.zeros(8, dtype=int)     # 00000000

TYPE_BITS = 8
LENGTH_BITS = 16
CHECKSUM_BITS = 16
HEADER_BITS = len(START_FRAME) + TYPE_BITS + LENGTH_BITS
MIN_PACKET_BITS = HEADER_BITS + CHECKSUM_BITS + len(END_FRAME)  # 56, empty payload
MAX_PAYLOAD_LENGTH = 0xFFFF

BIT_DURATION_MS = 100
MAX_CHUNK_SIZE = 256


class PacketType(IntEnum):
    TEXT = 1
    JSON = 2
    FILE = 3
    SENSOR_DATA = 4
    IMAGE = 5
    AUDIO = 6
    GESTURE = 7
    MESH_COMMAND = 8
    QUANTUM_KEY = 9


def type_name(value: int) -> str:
    """Name of a type tag, 'UNKNOWN' for tags outside the table."""
    try:
        return PacketType(value).name
    except ValueError:
        return 'UNKNOWN'


class CRC16:
    """CRC-16-CCITT (init 0xFFFF, poly 0x1021, no final XOR)."""

    POLYNOMIAL = 0x1021
    INITIAL = 0xFFFF

    @staticmethod
    def compute(data: bytes) -> int:
        crc = CRC16.INITIAL
        for byte in data:
            crc ^= byte << 8
            for _ in range(8):
                if crc & 0x8000:
                    crc = (crc << 1) ^ CRC16.POLYNOMIAL
                else:
                    crc <<= 1
                crc &= 0xFFFF
        return crc

    @staticmethod
    def verify(data: bytes, expected_crc: int) -> bool:
        return CRC16.compute(data) == expected_crc


def packet_bit_length(length: int) -> int:
    """Total bits of a frame carrying `length` payload bytes."""
    return MIN_PACKET_BITS + 8 * length


@dataclass(frozen=True)
class Packet:
    type: int
    payload: bytes
    checksum: int

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def bit_length(self) -> int:
        return packet_bit_length(self.length)

    @property
    def type_name(self) -> str:
        return type_name(self.type)

    def to_bits(self) -> np.ndarray:
        return PacketCodec.encode(self.type, self.payload)


def find_start_frame(bits: np.ndarray, start: int = 0) -> Optional[int]:
    """Index of the first 8-bit window equal to the start marker, or None."""
    if len(bits) - start < len(START_FRAME):
        return None
    windows = sliding_window_view(bits[start:], len(START_FRAME))
    hits = np.flatnonzero(np.all(windows == START_FRAME, axis=1))
    if hits.size == 0:
        return None
    return start + int(hits[0])


class PacketCodec:
    """Stateless encoder/decoder for single packets."""

    def __init__(self, max_length: int = MAX_PAYLOAD_LENGTH):
        if not 0 <= max_length <= MAX_PAYLOAD_LENGTH:
            raise ValueError(f"max_length must be within 0..{MAX_PAYLOAD_LENGTH}")
        self.max_length = max_length

    @staticmethod
    def encode(packet_type: Union[int, PacketType], payload: bytes) -> np.ndarray:
        """Build the full bit sequence for one packet."""
        packet_type = int(packet_type)
        payload = bytes(payload)
        if not 0 <= packet_type <= 0xFF:
            raise ValueError(f"packet type {packet_type} does not fit in 8 bits")
        if len(payload) > MAX_PAYLOAD_LENGTH:
            raise ValueError(
                f"payload of {len(payload)} bytes exceeds {MAX_PAYLOAD_LENGTH}")

        crc = CRC16.compute(payload)
        return np.concatenate([
            START_FRAME,
            to_bits(packet_type, TYPE_BITS),
            to_bits(len(payload), LENGTH_BITS),
            bytes_to_bits(payload),
            to_bits(crc, CHECKSUM_BITS),
            END_FRAME,
        ])

    def decode(self, bits: BitsLike) -> Packet:
        """
        Parse the first packet found in `bits`.

        Raises StartFrameNotFound / IncompleteFrame when more bits are needed,
        InvalidLength / InvalidEndFrame / ChecksumMismatch when the frame
        locked on to is bad. Never returns a partially populated packet.
        """
        arr = as_bit_array(bits)
        offset = find_start_frame(arr)
        if offset is None:
            raise StartFrameNotFound("no start marker in buffer")

        if len(arr) < offset + HEADER_BITS:
            raise IncompleteFrame("header incomplete", offset,
                                  needed_bits=offset + HEADER_BITS)

        pos = offset + len(START_FRAME)
        packet_type = from_bits(arr[pos:pos + TYPE_BITS])
        pos += TYPE_BITS
        length = from_bits(arr[pos:pos + LENGTH_BITS])
        pos += LENGTH_BITS

        if length > self.max_length:
            raise InvalidLength(
                f"declared length {length} exceeds {self.max_length}", offset)

        needed = offset + packet_bit_length(length)
        if len(arr) < needed:
            raise IncompleteFrame(f"need {needed} bits, have {len(arr)}",
                                  offset, needed_bits=needed)

        payload = bits_to_bytes(arr[pos:pos + 8 * length])
        pos += 8 * length
        checksum = from_bits(arr[pos:pos + CHECKSUM_BITS])
        pos += CHECKSUM_BITS

        if not np.array_equal(arr[pos:pos + len(END_FRAME)], END_FRAME):
            raise InvalidEndFrame("end marker mismatch", offset)

        actual = CRC16.compute(payload)
        if actual != checksum:
            raise ChecksumMismatch(
                f"crc {actual:#06x} != {checksum:#06x}", offset,
                expected=checksum, actual=actual)

        logger.debug("decoded %s packet, %d bytes at offset %d",
                     type_name(packet_type), length, offset)
        return Packet(type=packet_type, payload=payload, checksum=checksum)


def encode_packet(packet_type: Union[int, PacketType], payload: bytes) -> np.ndarray:
    return PacketCodec.encode(packet_type, payload)


def decode_packet(bits: BitsLike, max_length: int = MAX_PAYLOAD_LENGTH) -> Packet:
    return PacketCodec(max_length).decode(bits)
