"""
FlashLink Packet Dispatch
Turns a validated packet into a DecodedRecord: envelope -> FEC ->
decompression -> chunk reassembly -> per-type processing.
"""

import base64
import json
import logging
import time
import zlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.chunking import ReassemblyBuffer
from core.envelope import (RawPayload, SingleEnvelope, ChunkEnvelope,
                           FLAG_COMPRESSED, FLAG_FEC_ENABLED,
                           decode_envelope, split_mode_prefix, detect_backend_mode)
from core.errors import EnvelopeError
from core.fec import FECAdapter, apply_fec
from core.framing import Packet, PacketType, type_name

logger = logging.getLogger(__name__)


@dataclass
class DecodedRecord:
    type: int
    data: Any
    timestamp: float        # ms since epoch
    duration: float         # ms from start marker to dispatch
    size: int               # payload bytes after reassembly/decompression
    mode: Optional[str] = None
    fec_corrected: int = 0

    @property
    def type_name(self) -> str:
        return type_name(self.type)

    def to_dict(self) -> Dict[str, Any]:
        """Persisted record shape."""
        data = self.data
        if isinstance(data, (bytes, bytearray)):
            data = base64.b64encode(bytes(data)).decode('ascii')
        record = {
            'type': self.type_name,
            'data': data,
            'timestamp': self.timestamp,
            'duration': self.duration,
            'size': self.size,
        }
        if self.mode is not None:
            record['mode'] = self.mode
        return record


def process_payload(packet_type: int, data: bytes) -> Any:
    """TEXT -> str, JSON/SENSOR_DATA -> parsed JSON (text on failure), else bytes."""
    if packet_type == PacketType.TEXT:
        return data.decode('utf-8', errors='replace')
    if packet_type in (PacketType.JSON, PacketType.SENSOR_DATA):
        text = data.decode('utf-8', errors='replace')
        _, body = split_mode_prefix(text)
        try:
            return json.loads(body)
        except (ValueError, RecursionError):
            return text
    return bytes(data)


class PacketDispatcher:
    """Stateful only through the reassembly buffer it owns."""

    def __init__(self, reassembly: Optional[ReassemblyBuffer] = None,
                 fec: Optional[FECAdapter] = None,
                 decompress: Callable[[bytes], bytes] = zlib.decompress,
                 clock: Callable[[], float] = time.time):
        self.reassembly = reassembly or ReassemblyBuffer()
        self.fec = fec
        self.decompress = decompress
        self.clock = clock
        self.fec_failures = 0

    def dispatch(self, packet: Packet, started_at: Optional[float] = None) -> Optional[DecodedRecord]:
        """
        Returns a record once a logical message is complete, None while a
        chunked transfer is still pending. Raises EnvelopeError for payloads
        that cannot be interpreted.
        """
        envelope = decode_envelope(packet.payload)
        handler = self._HANDLERS[type(envelope)]
        return handler(self, packet, envelope, started_at)

    def _handle_raw(self, packet, envelope: RawPayload, started_at):
        return self._complete(packet.type, envelope.data, started_at, 0)

    def _handle_single(self, packet, envelope: SingleEnvelope, started_at):
        data, corrected = self._apply_fec(envelope.data, envelope.flags, envelope.fec)
        if envelope.flags & FLAG_COMPRESSED:
            data = self._decompress(data)
        return self._complete(packet.type, data, started_at, corrected)

    def _handle_chunk(self, packet, envelope: ChunkEnvelope, started_at):
        data, corrected = self._apply_fec(envelope.data, envelope.flags, envelope.fec)
        if envelope.is_legacy:
            key = (packet.type, None, envelope.total)
        else:
            key = (packet.type, envelope.transmission_id)

        payload = self.reassembly.add(key, envelope.to_chunk(data))
        if payload is None:
            logger.debug("chunk %d/%d of %s buffered", envelope.sequence + 1,
                         envelope.total, key)
            return None
        if envelope.flags & FLAG_COMPRESSED:
            payload = self._decompress(payload)
        return self._complete(packet.type, payload, started_at, corrected)

    _HANDLERS = {
        RawPayload: _handle_raw,
        SingleEnvelope: _handle_single,
        ChunkEnvelope: _handle_chunk,
    }

    def _apply_fec(self, data: bytes, flags: int, fec_info):
        if not flags & FLAG_FEC_ENABLED or fec_info is None:
            return data, 0
        if self.fec is None:
            logger.warning("packet requests FEC but no adapter is configured")
            return data, -1
        data, corrected = apply_fec(self.fec, data, fec_info)
        if corrected < 0:
            self.fec_failures += 1
        return data, corrected

    def _decompress(self, data: bytes) -> bytes:
        try:
            return self.decompress(data)
        except (zlib.error, ValueError) as e:
            raise EnvelopeError(f"decompression failed: {e}") from e

    def _complete(self, packet_type: int, data: bytes, started_at, corrected: int) -> DecodedRecord:
        now = self.clock()
        processed = process_payload(packet_type, data)
        duration = (now - started_at) * 1000 if started_at is not None else 0.0
        record = DecodedRecord(
            type=packet_type,
            data=processed,
            timestamp=now * 1000,
            duration=round(duration, 2),
            size=len(data),
            mode=detect_backend_mode(processed),
            fec_corrected=corrected,
        )
        logger.info("decoded %s message, %d bytes", record.type_name, record.size)
        return record

    def reset(self):
        self.reassembly.clear()
