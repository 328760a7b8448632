"""
FlashLink Error Taxonomy
Tagged exceptions raised at the codec boundary and caught by the receiver.
"""

from typing import Optional


class FlashLinkError(Exception):
    """Base class for every protocol-level failure."""


class PacketError(FlashLinkError, ValueError):
    """
    Raised by the packet decoder.

    `offset` is the bit index of the start marker the decoder locked on to
    (None when no start marker was found). `fatal` errors discard the frame;
    non-fatal ones mean "keep buffering".
    """

    fatal = True
    reason = 'packet_error'

    def __init__(self, message: str = '', offset: Optional[int] = None):
        super().__init__(message or self.reason)
        self.offset = offset


class StartFrameNotFound(PacketError):
    fatal = False
    reason = 'start_frame_not_found'


class IncompleteFrame(PacketError):
    fatal = False
    reason = 'incomplete_frame'

    def __init__(self, message: str = '', offset: Optional[int] = None,
                 needed_bits: int = 0):
        super().__init__(message, offset)
        self.needed_bits = needed_bits


class InvalidLength(PacketError):
    reason = 'invalid_length'


class InvalidEndFrame(PacketError):
    reason = 'invalid_end_frame'


class ChecksumMismatch(PacketError):
    reason = 'checksum_mismatch'

    def __init__(self, message: str = '', offset: Optional[int] = None,
                 expected: int = 0, actual: int = 0):
        super().__init__(message, offset)
        self.expected = expected
        self.actual = actual


class ParityError(FlashLinkError):
    """Legacy 9-bit unit failed its even-parity check."""

    reason = 'parity_error'

    def __init__(self, unit_index: int):
        super().__init__(f'parity check failed at unit {unit_index}')
        self.unit_index = unit_index


class CapacityError(FlashLinkError):
    """Receive buffer grew past its configured bound."""

    reason = 'capacity_exceeded'


class CalibrationError(FlashLinkError):
    reason = 'calibration_error'


class InsufficientSamples(CalibrationError):
    reason = 'insufficient_samples'


class EnvelopeError(FlashLinkError, ValueError):
    """Packet payload could not be interpreted as a wire envelope."""

    reason = 'malformed_envelope'
