"""
FlashLink Sender Encoder
Application data -> payload bytes -> envelopes (compression, FEC, chunking)
-> packet bit sequences ready for the flash schedule.
"""

import json
import logging
import uuid
import zlib
import numpy as np
from typing import Any, Callable, List, Optional, Union

from core.chunking import chunk_payload
from core.envelope import (RawPayload, SingleEnvelope, ChunkEnvelope,
                           FLAG_COMPRESSED, FLAG_FEC_ENABLED,
                           encode_envelope, decode_envelope)
from core.fec import FECAdapter, ReedSolomonFEC
from core.framing import PacketCodec, PacketType, MAX_CHUNK_SIZE
from core.parity import encode_legacy_message

logger = logging.getLogger(__name__)


def serialize(data: Any, data_type: int) -> bytes:
    """Bytes as-is, text as UTF-8, JSON/SENSOR_DATA objects as compact JSON."""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode('utf-8')
    if data_type in (PacketType.JSON, PacketType.SENSOR_DATA):
        return json.dumps(data, separators=(',', ':')).encode('utf-8')
    raise TypeError(f"cannot encode {type(data).__name__} as {data_type!r}")


def _new_transmission_id() -> str:
    return uuid.uuid4().hex[:8]


class Encoder:
    """
    compress: False, True or 'auto' (only when it saves at least
    `min_savings_bytes` or `min_savings_pct`)
    """

    def __init__(self, max_chunk_size: int = MAX_CHUNK_SIZE,
                 fec: Optional[FECAdapter] = None,
                 compress_fn: Callable[[bytes], bytes] = zlib.compress,
                 min_savings_bytes: int = 8, min_savings_pct: float = 0.08,
                 id_factory: Callable[[], str] = _new_transmission_id):
        if max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        self.max_chunk_size = max_chunk_size
        self.fec = fec
        self.compress_fn = compress_fn
        self.min_savings_bytes = min_savings_bytes
        self.min_savings_pct = min_savings_pct
        self.id_factory = id_factory
        self.messages_encoded = 0

    def _maybe_compress(self, payload: bytes, compress: Union[bool, str]):
        if not compress:
            return payload, False
        compressed = self.compress_fn(payload)
        if compress == 'auto':
            savings = len(payload) - len(compressed)
            savings_pct = savings / len(payload) if payload else 0.0
            if savings < self.min_savings_bytes and savings_pct < self.min_savings_pct:
                return payload, False
        return compressed, True

    def build_envelopes(self, payload: bytes, compress: Union[bool, str] = False,
                        fec: bool = False) -> list:
        payload, compressed = self._maybe_compress(payload, compress)
        adapter = None
        if fec:
            adapter = self.fec or ReedSolomonFEC()
        flags = (FLAG_COMPRESSED if compressed else 0) | (FLAG_FEC_ENABLED if adapter else 0)

        if len(payload) <= self.max_chunk_size:
            fec_info = adapter.encode(payload) if adapter else None
            if not flags and isinstance(decode_envelope(payload), RawPayload):
                return [RawPayload(payload)]
            return [SingleEnvelope(payload, flags, fec_info)]

        tid = self.id_factory()
        envelopes = []
        for chunk in chunk_payload(payload, self.max_chunk_size):
            fec_info = adapter.encode(chunk.data) if adapter else None
            envelopes.append(ChunkEnvelope(tid, chunk.sequence, chunk.total,
                                           chunk.data, flags, fec_info))
        logger.debug("payload of %d bytes split into %d chunks (id %s)",
                     len(payload), len(envelopes), tid)
        return envelopes

    def encode_data(self, data: Any, data_type: Union[int, PacketType] = PacketType.TEXT,
                    compress: Union[bool, str] = False, fec: bool = False) -> List[np.ndarray]:
        """One bit array per packet, in transmission order."""
        payload = serialize(data, data_type)
        envelopes = self.build_envelopes(payload, compress, fec)
        self.messages_encoded += 1
        return [PacketCodec.encode(data_type, encode_envelope(env)) for env in envelopes]

    @staticmethod
    def to_bit_stream(packets: List[np.ndarray], gap_bits: int = 0) -> np.ndarray:
        """Concatenate packets, separated by `gap_bits` dark bits."""
        if not packets:
            return np.zeros(0, dtype=int)
        gap = np.zeros(gap_bits, dtype=int)
        parts = []
        for i, bits in enumerate(packets):
            if i and gap_bits:
                parts.append(gap)
            parts.append(bits)
        return np.concatenate(parts)

    @staticmethod
    def encode_legacy(message: Union[str, bytes]) -> np.ndarray:
        return encode_legacy_message(message)


def encode_data(data: Any, data_type: Union[int, PacketType] = PacketType.TEXT,
                compress: Union[bool, str] = False, fec: bool = False,
                max_chunk_size: int = MAX_CHUNK_SIZE) -> List[np.ndarray]:
    return Encoder(max_chunk_size=max_chunk_size).encode_data(data, data_type, compress, fec)
