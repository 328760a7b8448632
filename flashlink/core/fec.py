"""
FlashLink FEC Adapter
Pluggable forward error correction invoked when a packet carries the
FEC_ENABLED flag. Adapters turn payload bytes into a JSON-serializable
`fec_info` dict and back.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict

from core.reed_solomon import ReedSolomonCodec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FECResult:
    success: bool
    data: bytes
    errors_corrected: int = 0


class FECAdapter:
    """Contract: encode(data) -> fec_info, decode(fec_info) -> FECResult."""

    scheme = 'none'

    def encode(self, data: bytes) -> Dict[str, Any]:
        raise NotImplementedError

    def decode(self, fec_info: Dict[str, Any]) -> FECResult:
        raise NotImplementedError


class ReedSolomonFEC(FECAdapter):
    """
    fec_info = {"scheme": "rs255", "n": 255, "k": 223, "length": L,
                "blocks": [base64 codeword, ...]}
    """

    scheme = 'rs255'

    def __init__(self, n: int = 255, k: int = 223):
        self.codec = ReedSolomonCodec(n=n, k=k)

    def encode(self, data: bytes) -> Dict[str, Any]:
        blocks = self.codec.encode(data)
        return {
            'scheme': self.scheme,
            'n': self.codec.n,
            'k': self.codec.k,
            'length': len(data),
            'blocks': [base64.b64encode(b).decode('ascii') for b in blocks],
        }

    def decode(self, fec_info: Dict[str, Any]) -> FECResult:
        if fec_info.get('scheme') != self.scheme:
            logger.warning("unsupported FEC scheme %r", fec_info.get('scheme'))
            return FECResult(False, b'')
        if fec_info.get('n', self.codec.n) != self.codec.n or \
                fec_info.get('k', self.codec.k) != self.codec.k:
            logger.warning("FEC parameters (%s, %s) do not match codec",
                           fec_info.get('n'), fec_info.get('k'))
            return FECResult(False, b'')

        try:
            blocks = [base64.b64decode(b, validate=True) for b in fec_info.get('blocks', [])]
        except (binascii.Error, TypeError, ValueError):
            logger.warning("FEC blocks are not valid base64")
            return FECResult(False, b'')

        result = self.codec.decode(blocks)
        if result is None:
            return FECResult(False, b'')
        data, corrected = result
        length = fec_info.get('length', len(data))
        if not isinstance(length, int) or length != len(data):
            logger.warning("FEC length %r does not match decoded %d bytes", length, len(data))
            return FECResult(False, b'')
        return FECResult(True, data, corrected)


def apply_fec(adapter: FECAdapter, data: bytes, fec_info: Dict[str, Any]):
    """
    Run the adapter over `fec_info`. On failure the uncorrected `data`
    passes through and errors_corrected is -1.
    """
    result = adapter.decode(fec_info)
    if result.success:
        if result.errors_corrected:
            logger.info("FEC corrected %d symbol errors", result.errors_corrected)
        return result.data, result.errors_corrected
    logger.warning("FEC decoding failed, passing data through uncorrected")
    return data, -1
