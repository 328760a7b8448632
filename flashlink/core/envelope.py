"""
FlashLink Payload Envelope
Tagged JSON envelope carried inside packet payloads.

    raw bytes                                    plain single packet
    {"kind": "single", "flags", "data", "fec"?}  single packet with flags/FEC
    {"kind": "chunk", "id", "sequence", "total", "flags", "data", "fec"?}

`data` is base64. The older untagged chunk shape {"sequence", "total", "data"}
(text data, no transmission id) is still accepted on decode.
"""

import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from core.chunking import Chunk
from core.errors import EnvelopeError

FLAG_COMPRESSED = 0x01
FLAG_FEC_ENABLED = 0x02

# 2-character mode flag optionally prefixed to backend JSON payloads
MODE_PREFIXES = {
    'auth': '01',
    'config': '10',
    'command': '11',
    'legacy': '00',
}
BACKEND_MODES = ('auth', 'config', 'command')


@dataclass(frozen=True)
class RawPayload:
    data: bytes


@dataclass(frozen=True)
class SingleEnvelope:
    data: bytes
    flags: int = 0
    fec: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ChunkEnvelope:
    transmission_id: Optional[str]
    sequence: int
    total: int
    data: bytes
    flags: int = 0
    fec: Optional[Dict[str, Any]] = None

    @property
    def is_legacy(self) -> bool:
        return self.transmission_id is None

    def to_chunk(self, data: Optional[bytes] = None) -> Chunk:
        return Chunk(self.sequence, self.total, self.data if data is None else data)


Envelope = Union[RawPayload, SingleEnvelope, ChunkEnvelope]


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def _unb64(value: Any) -> bytes:
    if not isinstance(value, str):
        raise EnvelopeError("envelope data must be a base64 string")
    try:
        return base64.b64decode(value.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise EnvelopeError(f"bad base64 in envelope: {e}") from e


def _int_field(obj: dict, name: str) -> int:
    value = obj.get(name)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise EnvelopeError(f"envelope field '{name}' must be a non-negative integer")
    return value


def _fec_field(obj: dict) -> Optional[Dict[str, Any]]:
    fec = obj.get('fec')
    if fec is not None and not isinstance(fec, dict):
        raise EnvelopeError("envelope field 'fec' must be an object")
    return fec


def _encode_raw(env: RawPayload) -> bytes:
    return bytes(env.data)


def _encode_single(env: SingleEnvelope) -> bytes:
    obj = {'kind': 'single', 'flags': env.flags, 'data': _b64(env.data)}
    if env.fec is not None:
        obj['fec'] = env.fec
    return json.dumps(obj, separators=(',', ':')).encode('utf-8')


def _encode_chunk(env: ChunkEnvelope) -> bytes:
    if env.is_legacy:
        obj = {'sequence': env.sequence, 'total': env.total,
               'data': env.data.decode('utf-8')}
    else:
        obj = {'kind': 'chunk', 'id': env.transmission_id,
               'sequence': env.sequence, 'total': env.total,
               'flags': env.flags, 'data': _b64(env.data)}
        if env.fec is not None:
            obj['fec'] = env.fec
    return json.dumps(obj, separators=(',', ':')).encode('utf-8')


_ENCODERS = {
    RawPayload: _encode_raw,
    SingleEnvelope: _encode_single,
    ChunkEnvelope: _encode_chunk,
}


def encode_envelope(env: Envelope) -> bytes:
    try:
        encoder = _ENCODERS[type(env)]
    except KeyError:
        raise TypeError(f"not an envelope: {type(env).__name__}") from None
    return encoder(env)


def _decode_single(obj: dict) -> SingleEnvelope:
    return SingleEnvelope(data=_unb64(obj.get('data')),
                          flags=_int_field(obj, 'flags'),
                          fec=_fec_field(obj))


def _decode_chunk(obj: dict) -> ChunkEnvelope:
    tid = obj.get('id')
    if not isinstance(tid, str) or not tid:
        raise EnvelopeError("chunk envelope needs a transmission id")
    sequence = _int_field(obj, 'sequence')
    total = _int_field(obj, 'total')
    if total < 1 or sequence >= total:
        raise EnvelopeError(f"chunk {sequence}/{total} out of range")
    return ChunkEnvelope(transmission_id=tid, sequence=sequence, total=total,
                         data=_unb64(obj.get('data')),
                         flags=_int_field(obj, 'flags'),
                         fec=_fec_field(obj))


_DECODERS = {
    'single': _decode_single,
    'chunk': _decode_chunk,
}


def _decode_untagged(obj: dict, payload: bytes) -> Envelope:
    """Older envelopes without a 'kind' discriminant."""
    if 'sequence' in obj and 'total' in obj and 'data' in obj:
        data = obj['data']
        if not isinstance(data, str):
            data = json.dumps(data)
        sequence = _int_field(obj, 'sequence')
        total = _int_field(obj, 'total')
        if total < 1 or sequence >= total:
            raise EnvelopeError(f"chunk {sequence}/{total} out of range")
        return ChunkEnvelope(None, sequence, total, data.encode('utf-8'))
    if isinstance(obj.get('data'), str) and isinstance(obj.get('fec'), dict):
        return SingleEnvelope(data=obj['data'].encode('utf-8'),
                              flags=FLAG_FEC_ENABLED, fec=obj['fec'])
    return RawPayload(payload)


def decode_envelope(payload: bytes) -> Envelope:
    """
    Interpret a packet payload. Anything that is not a JSON object is raw
    data; a JSON object with a known 'kind' must be well formed or
    EnvelopeError is raised.
    """
    payload = bytes(payload)
    if not payload.lstrip().startswith(b'{'):
        return RawPayload(payload)
    try:
        obj = json.loads(payload.decode('utf-8'))
    except (UnicodeDecodeError, ValueError, RecursionError):
        return RawPayload(payload)
    if not isinstance(obj, dict):
        return RawPayload(payload)

    kind = obj.get('kind')
    decoder = _DECODERS.get(kind) if isinstance(kind, str) else None
    if decoder is None:
        return _decode_untagged(obj, payload)
    return decoder(obj)


# ══════════════════════════════════════════════════════════════
# Backend payloads (auth / config / command)
# ══════════════════════════════════════════════════════════════

def build_backend_payload(mode: str, with_prefix: bool = True, **fields) -> bytes:
    """JSON payload carrying a 'mode' field, optionally behind the 2-char mode flag."""
    if mode not in BACKEND_MODES:
        raise ValueError(f"unknown backend mode '{mode}'")
    body = {'mode': mode}
    body.update(fields)
    body.setdefault('timestamp', int(time.time() * 1000))
    text = json.dumps(body, separators=(',', ':'))
    if with_prefix:
        text = MODE_PREFIXES[mode] + text
    return text.encode('utf-8')


def split_mode_prefix(text: str) -> Tuple[Optional[str], str]:
    """Strip a leading mode flag in front of a JSON object, if present."""
    if len(text) > 2 and text[2:3] == '{':
        for mode, prefix in MODE_PREFIXES.items():
            if text.startswith(prefix):
                return mode, text[2:]
    return None, text


def detect_backend_mode(data: Any) -> Optional[str]:
    """Backend mode of a processed record's data, None for ordinary data."""
    if isinstance(data, dict):
        mode = data.get('mode')
        if mode in BACKEND_MODES:
            return mode
    return None
