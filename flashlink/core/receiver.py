"""
FlashLink Receiver State Machine
Consumes one brightness sample (or decided bit) per bit period, locks on to
frame boundaries and hands complete messages to the dispatcher.

Two framings are supported:
- legacy: START, 9-bit units (8 data + even parity), END
- packet: full packets decoded by the packet codec
"""

import logging
import time
import zlib
import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, ClassVar, Dict, Optional

from core.calibration import CalibrationEngine
from core.chunking import ReassemblyBuffer
from core.delivery import RecordQueue
from core.dispatch import PacketDispatcher, DecodedRecord, process_payload
from core.errors import FlashLinkError, PacketError, ParityError, CapacityError
from core.fec import FECAdapter
from core.framing import (PacketCodec, PacketType, START_FRAME, END_FRAME,
                          MIN_PACKET_BITS, find_start_frame, packet_bit_length)
from core.parity import UNIT_BITS, check_units

logger = logging.getLogger(__name__)

MARKER_BITS = len(START_FRAME)
_START = bytes(START_FRAME.tolist())
_END = bytes(END_FRAME.tolist())


class ReceiverState(Enum):
    IDLE = 'IDLE'
    CALIBRATING = 'CALIBRATING'
    WAITING_FOR_START = 'WAITING_FOR_START'
    RECEIVING = 'RECEIVING'
    END_DETECTED = 'END_DETECTED'
    PARITY_CHECK = 'PARITY_CHECK'
    SUCCESS = 'SUCCESS'
    ERROR = 'ERROR'


# ══════════════════════════════════════════════════════════════
# State variants: each carries only what is valid in that state
# ══════════════════════════════════════════════════════════════

@dataclass
class Idle:
    state: ClassVar[ReceiverState] = ReceiverState.IDLE


@dataclass
class Calibrating:
    state: ClassVar[ReceiverState] = ReceiverState.CALIBRATING


@dataclass
class WaitingForStart:
    state: ClassVar[ReceiverState] = ReceiverState.WAITING_FOR_START
    window: bytearray = field(default_factory=bytearray)


@dataclass
class Receiving:
    state: ClassVar[ReceiverState] = ReceiverState.RECEIVING
    buffer: bytearray = field(default_factory=bytearray)
    started_at: float = 0.0
    needed_bits: int = MIN_PACKET_BITS


@dataclass
class EndDetected:
    state: ClassVar[ReceiverState] = ReceiverState.END_DETECTED
    units: bytearray = field(default_factory=bytearray)
    started_at: float = 0.0


@dataclass
class ParityCheck:
    state: ClassVar[ReceiverState] = ReceiverState.PARITY_CHECK
    units: bytearray = field(default_factory=bytearray)
    started_at: float = 0.0


@dataclass
class Success:
    state: ClassVar[ReceiverState] = ReceiverState.SUCCESS
    record: Optional[DecodedRecord] = None
    residual: bytearray = field(default_factory=bytearray)


@dataclass
class Error:
    state: ClassVar[ReceiverState] = ReceiverState.ERROR
    reason: str = ''
    detail: str = ''
    residual: bytearray = field(default_factory=bytearray)


class ReceiverSession:
    """
    One reception. Not thread-safe; run one session per receiver.

    Args:
        mode: 'packet' or 'legacy'
        max_buffer_bits: bound on buffered bits; in packet mode it must be
            at least twice the largest frame allowed by max_payload_length
        auto_decode: run the legacy parity check as soon as END is seen
        queue: optional RecordQueue every decoded record is put on
    """

    MODES = ('packet', 'legacy')

    def __init__(self, mode: str = 'packet', threshold: int = 128,
                 calibration: Optional[CalibrationEngine] = None,
                 max_buffer_bits: int = 40960,
                 max_payload_length: int = 2048,
                 auto_decode: bool = True,
                 reassembly: Optional[ReassemblyBuffer] = None,
                 fec: Optional[FECAdapter] = None,
                 decompress: Callable[[bytes], bytes] = zlib.decompress,
                 clock: Callable[[], float] = time.time,
                 queue: Optional[RecordQueue] = None):
        if mode not in self.MODES:
            raise ValueError(f"unknown receiver mode '{mode}'")
        if not 0 <= threshold <= 255:
            raise ValueError("threshold must be within 0..255")
        largest = packet_bit_length(max_payload_length)
        if mode == 'packet' and max_buffer_bits < 2 * largest:
            raise ValueError(
                f"max_buffer_bits={max_buffer_bits} is below twice the largest "
                f"frame ({largest} bits)")

        self.mode = mode
        self.threshold = int(threshold)
        self.calibration = calibration or CalibrationEngine()
        self.max_buffer_bits = max_buffer_bits
        self.auto_decode = auto_decode
        self.clock = clock
        self.queue = queue
        self.codec = PacketCodec(max_length=max_payload_length)
        self.dispatcher = PacketDispatcher(
            reassembly=reassembly or ReassemblyBuffer(clock=clock),
            fec=fec, decompress=decompress, clock=clock)

        self._state = Idle()
        self.last_record: Optional[DecodedRecord] = None
        self.stats: Dict[str, int] = {}
        self._reset_stats()

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> 'ReceiverSession':
        """Build a session from a loaded config (see core.config)."""
        rx = config['receiver']
        cal = config['calibration']
        reasm = config['reassembly']
        clock = kwargs.pop('clock', time.time)
        return cls(
            mode=rx['mode'],
            threshold=cal['default_threshold'],
            calibration=CalibrationEngine(method=cal['method'], margin=cal['margin'],
                                          min_samples=cal['min_samples']),
            max_buffer_bits=rx['max_buffer_bits'],
            max_payload_length=rx['max_payload_length'],
            auto_decode=rx['auto_decode'],
            reassembly=ReassemblyBuffer(timeout_s=reasm['timeout_s'],
                                        max_groups=reasm['max_groups'], clock=clock),
            clock=clock,
            **kwargs)

    # ── state access ─────────────────────────────────────────

    @property
    def state(self) -> ReceiverState:
        return self._state.state

    @property
    def variant(self):
        return self._state

    def _reset_stats(self):
        self.stats = {
            'samples': 0,
            'bits': 0,
            'frames_detected': 0,
            'packets_ok': 0,
            'messages': 0,
            'checksum_errors': 0,
            'framing_errors': 0,
            'parity_errors': 0,
            'dispatch_errors': 0,
            'overflows': 0,
        }

    def buffered_bits(self) -> int:
        s = self._state
        if isinstance(s, WaitingForStart):
            return len(s.window)
        if isinstance(s, Receiving):
            return len(s.buffer)
        if isinstance(s, (Error, Success)):
            return len(s.residual)
        if isinstance(s, (EndDetected, ParityCheck)):
            return len(s.units)
        return 0

    # ── lifecycle ────────────────────────────────────────────

    def start_calibration(self):
        self.calibration.start()
        self._state = Calibrating()

    def add_calibration_sample(self, brightness: float):
        self.calibration.add_sample(brightness)

    def finish_calibration(self) -> int:
        """Raises InsufficientSamples (state unchanged) when no samples were taken."""
        self.threshold = self.calibration.finish()
        self._state = WaitingForStart()
        return self.threshold

    def listen(self):
        """Arm without calibrating, using the current threshold."""
        if isinstance(self._state, Calibrating):
            self.calibration.reset()
        self._state = WaitingForStart()
        logger.info("listening for start marker (threshold %d, %s mode)",
                    self.threshold, self.mode)

    def set_mode(self, mode: str):
        if mode not in self.MODES:
            raise ValueError(f"unknown receiver mode '{mode}'")
        self.mode = mode
        self.reset()

    def reset(self):
        """Safe from any state: clears buffers and pending groups, keeps the threshold."""
        if isinstance(self._state, Calibrating):
            self.calibration.reset()
        self.dispatcher.reset()
        self._state = Idle()

    # ── sample / bit intake ──────────────────────────────────

    def process_sample(self, brightness: float) -> Optional[DecodedRecord]:
        self.stats['samples'] += 1
        if isinstance(self._state, Idle):
            return None
        if isinstance(self._state, Calibrating):
            self.add_calibration_sample(brightness)
            return None
        return self.process_bit(1 if brightness > self.threshold else 0)

    def process_bit(self, bit: int) -> Optional[DecodedRecord]:
        s = self._state
        if isinstance(s, (Idle, Calibrating)):
            return None
        if isinstance(s, (EndDetected, ParityCheck)):
            logger.debug("bit ignored while %s", s.state.value)
            return None

        self.stats['bits'] += 1
        bit = 1 if bit else 0

        if isinstance(s, (Success, Error)):
            self._resume(s.residual)

        if self.mode == 'legacy':
            return self._legacy_bit(bit)
        return self._packet_bit(bit)

    def _resume(self, residual: bytearray):
        """Re-arm from leftover bits, locking on to any start marker they hold."""
        if self.mode == 'packet' and len(residual) >= MARKER_BITS:
            offset = find_start_frame(np.frombuffer(bytes(residual), dtype=np.uint8))
            if offset is not None:
                self.stats['frames_detected'] += 1
                self._state = Receiving(buffer=residual[offset:], started_at=self.clock())
                return
        self._state = WaitingForStart(window=residual[-(MARKER_BITS - 1):])

    def _watch_for_start(self, s: WaitingForStart, bit: int) -> bool:
        s.window.append(bit)
        if len(s.window) > MARKER_BITS:
            del s.window[0]
        return bytes(s.window) == _START

    # ── legacy framing ───────────────────────────────────────

    def _legacy_bit(self, bit: int) -> Optional[DecodedRecord]:
        s = self._state
        if isinstance(s, WaitingForStart):
            if self._watch_for_start(s, bit):
                self.stats['frames_detected'] += 1
                self._state = Receiving(started_at=self.clock())
                logger.info("start frame detected")
            return None

        s.buffer.append(bit)
        n = len(s.buffer)
        if n >= MARKER_BITS and (n - MARKER_BITS) % UNIT_BITS == 0 \
                and bytes(s.buffer[-MARKER_BITS:]) == _END:
            self._state = EndDetected(units=s.buffer[:-MARKER_BITS], started_at=s.started_at)
            logger.info("end frame detected after %d units", (n - MARKER_BITS) // UNIT_BITS)
            if self.auto_decode:
                return self.decode_message()
            return None

        if n > self.max_buffer_bits:
            self.stats['overflows'] += 1
            self._fail(CapacityError(f"legacy frame exceeded {self.max_buffer_bits} bits"))
        return None

    def decode_message(self) -> Optional[DecodedRecord]:
        """Parity-check the units collected before END. Only valid in END_DETECTED."""
        s = self._state
        if not isinstance(s, EndDetected):
            return None
        self._state = ParityCheck(units=s.units, started_at=s.started_at)
        try:
            data = check_units(np.frombuffer(bytes(s.units), dtype=np.uint8))
        except ParityError as e:
            self.stats['parity_errors'] += 1
            self._fail(e)
            return None

        now = self.clock()
        record = DecodedRecord(
            type=PacketType.TEXT,
            data=process_payload(PacketType.TEXT, data),
            timestamp=now * 1000,
            duration=round((now - s.started_at) * 1000, 2),
            size=len(data),
        )
        return self._succeed(record)

    # ── packet framing ───────────────────────────────────────

    def _packet_bit(self, bit: int) -> Optional[DecodedRecord]:
        s = self._state
        if isinstance(s, WaitingForStart):
            if self._watch_for_start(s, bit):
                self.stats['frames_detected'] += 1
                self._state = Receiving(buffer=bytearray(_START), started_at=self.clock())
                logger.info("start frame detected")
            return None

        s.buffer.append(bit)
        if len(s.buffer) > self.max_buffer_bits:
            self._truncate(s)
            return None
        if len(s.buffer) < s.needed_bits:
            return None

        arr = np.frombuffer(bytes(s.buffer), dtype=np.uint8)
        try:
            packet = self.codec.decode(arr)
        except PacketError as e:
            return self._packet_error(s, e)

        # bits past the frame may already hold the next start marker
        leftover = s.buffer[find_start_frame(arr) + packet.bit_length:]
        self.stats['packets_ok'] += 1
        try:
            record = self.dispatcher.dispatch(packet, started_at=s.started_at)
        except FlashLinkError as e:
            self.stats['dispatch_errors'] += 1
            self._fail(e, residual=leftover)
            return None

        if record is None:
            self._resume(leftover)
            return None
        return self._succeed(record, residual=leftover)

    def _packet_error(self, s: Receiving, e: PacketError) -> None:
        if not e.fatal:
            if e.offset is None:
                self._state = WaitingForStart(window=s.buffer[-(MARKER_BITS - 1):])
            else:
                s.needed_bits = getattr(e, 'needed_bits', 0) or s.needed_bits
            return None

        if e.reason == 'checksum_mismatch':
            self.stats['checksum_errors'] += 1
        else:
            self.stats['framing_errors'] += 1
        offset = e.offset or 0
        self._fail(e, residual=s.buffer[offset + 1:])
        return None

    def _truncate(self, s: Receiving):
        keep = self.max_buffer_bits // 2
        self.stats['overflows'] += 1
        logger.warning("receive buffer exceeded %d bits, keeping last %d",
                       self.max_buffer_bits, keep)
        self._resume(s.buffer[-keep:])

    # ── outcomes ─────────────────────────────────────────────

    def _succeed(self, record: DecodedRecord,
                 residual: Optional[bytearray] = None) -> DecodedRecord:
        self.stats['messages'] += 1
        self.last_record = record
        self._state = Success(record=record, residual=residual or bytearray())
        if self.queue is not None:
            self.queue.put(record)
        return record

    def _fail(self, error: FlashLinkError, residual: Optional[bytearray] = None):
        reason = getattr(error, 'reason', type(error).__name__)
        logger.warning("message discarded: %s (%s)", reason, error)
        self._state = Error(reason=reason, detail=str(error),
                            residual=residual if residual is not None else bytearray())

    def get_stats(self) -> dict:
        stats = dict(self.stats)
        stats.update({
            'state': self.state.value,
            'mode': self.mode,
            'threshold': self.threshold,
            'buffered_bits': self.buffered_bits(),
            'pending_groups': len(self.dispatcher.reassembly),
            'fec_failures': self.dispatcher.fec_failures,
        })
        if isinstance(self._state, Error):
            stats['last_error'] = self._state.reason
        return stats
