"""
Test suite for the FlashLink protocol stack.
One section per core module, run with pytest.
"""

import sys
import os
import base64
import json
import zlib

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import numpy as np
import pytest

from core.bits import to_bits, from_bits, bytes_to_bits, bits_to_bytes, as_bit_array
from core.framing import (CRC16, PacketCodec, PacketType, Packet, encode_packet,
                          decode_packet, type_name, START_FRAME, END_FRAME,
                          MIN_PACKET_BITS, packet_bit_length)
from core.errors import (StartFrameNotFound, IncompleteFrame, InvalidLength,
                         InvalidEndFrame, ChecksumMismatch, ParityError,
                         CalibrationError, InsufficientSamples, EnvelopeError)
from core.parity import encode_legacy_message, check_units, encode_byte
from core.chunking import Chunk, chunk_payload, reassemble, ReassemblyBuffer
from core.envelope import (RawPayload, SingleEnvelope, ChunkEnvelope,
                           FLAG_COMPRESSED, FLAG_FEC_ENABLED, encode_envelope,
                           decode_envelope, build_backend_payload, split_mode_prefix)
from core.reed_solomon import ReedSolomonCodec
from core.fec import ReedSolomonFEC, FECResult, apply_fec
from core.calibration import CalibrationEngine, CalibrationState
from core.dispatch import PacketDispatcher, process_payload
from core.delivery import RecordQueue
from core.receiver import ReceiverSession, ReceiverState
from core.encoder import Encoder, encode_data
from core.modulation import FlashSchedule, ThresholdDemodulator, transmission_duration_ms
from core.channel import OpticalChannel
from core.config import load_config
from core.metrics import (parity_bit_error_rate, brightness_snr, packet_confidence,
                          bit_error_rate, aggregate_metrics)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def feed_bits(session, bits):
    records = []
    for b in bits:
        record = session.process_bit(int(b))
        if record is not None:
            records.append(record)
    return records


# ══════════════════════════════════════════════════════════════
# 1. Bit/Byte Converter
# ══════════════════════════════════════════════════════════════

def test_to_bits_fixed_width_msb_first():
    assert np.array_equal(to_bits(5, 8), [0, 0, 0, 0, 0, 1, 0, 1])
    assert np.array_equal(to_bits(0, 4), [0, 0, 0, 0])


def test_from_bits_inverts_to_bits():
    for value, width in [(0, 1), (1, 1), (200, 8), (0xBEEF, 16), (2 ** 24 - 1, 24)]:
        assert from_bits(to_bits(value, width)) == value


def test_to_bits_rejects_values_that_do_not_fit():
    with pytest.raises(ValueError):
        to_bits(256, 8)
    with pytest.raises(ValueError):
        to_bits(-1, 8)


def test_bytes_bits_big_endian():
    bits = bytes_to_bits(b'\x80\x01')
    assert bits.tolist() == [1, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 1]
    assert bits_to_bytes(bits) == b'\x80\x01'
    assert bits_to_bytes('0110100001101001') == b'hi'


def test_bits_to_bytes_requires_whole_bytes():
    with pytest.raises(ValueError):
        bits_to_bytes([1, 0, 1])


def test_bit_string_validation():
    with pytest.raises(ValueError):
        as_bit_array('0102')


# ══════════════════════════════════════════════════════════════
# 2. Checksum Engine
# ══════════════════════════════════════════════════════════════

def test_crc16_ccitt_check_value():
    assert CRC16.compute(b'123456789') == 0x29B1


def test_crc16_empty_is_initial_register():
    assert CRC16.compute(b'') == 0xFFFF


def test_crc16_verify():
    crc = CRC16.compute(b'flash')
    assert CRC16.verify(b'flash', crc)
    assert not CRC16.verify(b'flasH', crc)


# ══════════════════════════════════════════════════════════════
# 3. Packet Codec
# ══════════════════════════════════════════════════════════════

def test_hi_text_packet_layout():
    bits = encode_packet(PacketType.TEXT, b'hi')
    assert len(bits) == 72
    assert np.array_equal(bits[:8], START_FRAME)
    assert from_bits(bits[8:16]) == 1
    assert from_bits(bits[16:32]) == 2
    assert bits_to_bytes(bits[32:48]) == b'hi'
    assert from_bits(bits[48:64]) == CRC16.compute(b'hi')
    assert np.array_equal(bits[64:72], END_FRAME)


def test_encode_decode_roundtrip_across_types():
    for ptype in PacketType:
        payload = bytes(range(ptype.value * 7))
        packet = decode_packet(encode_packet(ptype, payload))
        assert packet.type == ptype
        assert packet.payload == payload
        assert packet.checksum == CRC16.compute(payload)
        assert packet.type_name == ptype.name


def test_total_bits_is_56_plus_8_per_byte():
    for n in (0, 1, 10, 300):
        assert len(encode_packet(1, b'x' * n)) == 56 + 8 * n == packet_bit_length(n)
    assert MIN_PACKET_BITS == 56


def test_encode_is_deterministic():
    assert np.array_equal(encode_packet(3, b'abc'), encode_packet(3, b'abc'))


def test_encode_rejects_oversized_payload_and_type():
    with pytest.raises(ValueError):
        encode_packet(1, b'\x00' * 0x10000)
    with pytest.raises(ValueError):
        encode_packet(256, b'')


def test_decode_skips_leading_noise():
    noise = np.array([0, 1, 0, 0, 1, 1, 0], dtype=int)
    packet = decode_packet(np.concatenate([noise, encode_packet(2, b'{}')]))
    assert packet.payload == b'{}'


def test_decode_without_start_marker():
    with pytest.raises(StartFrameNotFound) as exc:
        decode_packet(np.zeros(100, dtype=int))
    assert exc.value.offset is None
    assert not exc.value.fatal


def test_decode_truncated_frames_are_incomplete():
    bits = encode_packet(1, b'hi')
    for n in range(len(bits)):
        with pytest.raises((IncompleteFrame, StartFrameNotFound)):
            decode_packet(bits[:n])


def test_incomplete_reports_needed_bits():
    bits = encode_packet(1, b'hello')
    with pytest.raises(IncompleteFrame) as exc:
        decode_packet(bits[:40])
    assert exc.value.needed_bits == len(bits)
    assert exc.value.offset == 0


def test_single_bit_flip_in_payload_or_crc_is_checksum_mismatch():
    bits = encode_packet(1, b'hi')
    for i in range(32, 64):
        corrupted = bits.copy()
        corrupted[i] ^= 1
        with pytest.raises(ChecksumMismatch) as exc:
            decode_packet(corrupted)
        assert exc.value.fatal


def test_bad_end_marker():
    bits = encode_packet(1, b'hi')
    bits[-1] = 1
    with pytest.raises(InvalidEndFrame):
        decode_packet(bits)


def test_declared_length_above_limit():
    bits = encode_packet(1, b'x' * 40)
    with pytest.raises(InvalidLength):
        PacketCodec(max_length=32).decode(bits)


def test_packet_to_bits_matches_codec():
    packet = Packet(type=4, payload=b'{"t":1}', checksum=CRC16.compute(b'{"t":1}'))
    assert np.array_equal(packet.to_bits(), encode_packet(4, b'{"t":1}'))
    assert packet.bit_length == len(packet.to_bits())


def test_type_names():
    assert type_name(1) == 'TEXT'
    assert type_name(9) == 'QUANTUM_KEY'
    assert type_name(42) == 'UNKNOWN'


# ══════════════════════════════════════════════════════════════
# 4. Legacy parity framing
# ══════════════════════════════════════════════════════════════

def test_parity_unit_is_even():
    for byte in (0x00, 0x01, 0x68, 0xFF):
        unit = encode_byte(byte)
        assert len(unit) == 9
        assert int(np.sum(unit)) % 2 == 0


def test_legacy_message_layout():
    bits = encode_legacy_message('hi')
    assert len(bits) == 8 + 2 * 9 + 8
    assert check_units(bits[8:-8]) == b'hi'


def test_parity_failure_reports_unit():
    bits = encode_legacy_message('abc')[8:-8]
    bits[9 + 8] ^= 1
    with pytest.raises(ParityError) as exc:
        check_units(bits)
    assert exc.value.unit_index == 1


# ══════════════════════════════════════════════════════════════
# 5. Chunk Manager
# ══════════════════════════════════════════════════════════════

def test_600_bytes_split_256_256_88():
    chunks = chunk_payload(b'z' * 600, 256)
    assert [len(c.data) for c in chunks] == [256, 256, 88]
    assert [c.sequence for c in chunks] == [0, 1, 2]
    assert all(c.total == 3 for c in chunks)


def test_empty_payload_gives_one_empty_chunk():
    assert chunk_payload(b'', 256) == [Chunk(0, 1, b'')]


def test_chunk_size_must_be_positive():
    with pytest.raises(ValueError):
        chunk_payload(b'abc', 0)


def test_reassemble_any_order():
    payload = bytes(range(256)) * 3
    chunks = chunk_payload(payload, 100)
    rng = np.random.default_rng(7)
    for _ in range(5):
        order = rng.permutation(len(chunks))
        assert reassemble([chunks[i] for i in order]) == payload


def test_reassemble_incomplete_cases():
    chunks = chunk_payload(b'abcdefghij', 4)
    assert reassemble([]) is None
    assert reassemble(chunks[:2]) is None                              # missing
    assert reassemble([chunks[0], chunks[0], chunks[1]]) is None       # duplicate
    assert reassemble([chunks[0], chunks[1], Chunk(2, 4, b'ij')]) is None  # totals disagree


def test_reassembly_buffer_completes_and_discards_group():
    buf = ReassemblyBuffer(clock=FakeClock())
    chunks = chunk_payload(b'hello world', 4)
    assert buf.add('k', chunks[2]) is None
    assert buf.add('k', chunks[0]) is None
    assert 'k' in buf
    assert buf.add('k', chunks[1]) == b'hello world'
    assert len(buf) == 0


def test_reassembly_buffer_expires_idle_groups():
    clock = FakeClock()
    buf = ReassemblyBuffer(timeout_s=10, clock=clock)
    buf.add('a', Chunk(0, 2, b'x'))
    clock.now += 11
    assert buf.expire() == 1
    assert len(buf) == 0
    # a late chunk starts a fresh group instead of completing the stale one
    assert buf.add('a', Chunk(1, 2, b'y')) is None


def test_reassembly_buffer_evicts_oldest_group():
    buf = ReassemblyBuffer(max_groups=2, clock=FakeClock())
    for key in ('a', 'b', 'c'):
        buf.add(key, Chunk(0, 2, b'x'))
    assert 'a' not in buf and 'b' in buf and 'c' in buf
    assert buf.get_stats()['evicted'] == 1


# ══════════════════════════════════════════════════════════════
# 6. Envelope
# ══════════════════════════════════════════════════════════════

def test_plain_bytes_are_raw():
    assert decode_envelope(b'hello') == RawPayload(b'hello')
    assert decode_envelope(b'{"temp": 21}') == RawPayload(b'{"temp": 21}')


def test_single_and_chunk_envelopes_roundtrip():
    single = SingleEnvelope(b'\x00\xff', FLAG_COMPRESSED)
    chunk = ChunkEnvelope('a1b2c3d4', 1, 3, b'data', FLAG_FEC_ENABLED, {'scheme': 'rs255'})
    assert decode_envelope(encode_envelope(single)) == single
    assert decode_envelope(encode_envelope(chunk)) == chunk


def test_untagged_chunk_shape_is_accepted():
    env = decode_envelope(b'{"sequence": 0, "total": 2, "data": "ab"}')
    assert isinstance(env, ChunkEnvelope)
    assert env.is_legacy
    assert env.to_chunk() == Chunk(0, 2, b'ab')


def test_malformed_tagged_envelope():
    with pytest.raises(EnvelopeError):
        decode_envelope(b'{"kind": "chunk", "sequence": 0, "total": 1, "flags": 0, "data": ""}')
    with pytest.raises(EnvelopeError):
        decode_envelope(b'{"kind": "single", "flags": 0, "data": "***"}')


def test_backend_payload_prefix():
    payload = build_backend_payload('auth', token='abc')
    assert payload.startswith(b'01{')
    mode, body = split_mode_prefix(payload.decode())
    assert mode == 'auth'
    assert json.loads(body)['token'] == 'abc'
    with pytest.raises(ValueError):
        build_backend_payload('reboot')


# ══════════════════════════════════════════════════════════════
# 7. Reed-Solomon + FEC Adapter
# ══════════════════════════════════════════════════════════════

def test_rs_block_lengths():
    rs = ReedSolomonCodec()
    blocks = rs.encode(b'a' * 300)
    assert [len(b) for b in blocks] == [255, 77 + 32]


def test_rs_corrects_symbol_errors():
    rs = ReedSolomonCodec()
    data = bytes((i * 37) % 256 for i in range(200))
    block = bytearray(rs.encode_block(data))
    for pos in (0, 17, 99, 150, 231):
        block[pos] ^= 0x5A
    decoded, corrected = rs.decode_block(bytes(block))
    assert decoded == data
    assert corrected == 5


def test_rs_uncorrectable_returns_none():
    rs = ReedSolomonCodec()
    block = bytearray(rs.encode_block(b'x' * 223))
    for pos in range(0, 34 * 7, 7):
        block[pos] ^= 0xFF
    assert rs.decode_block(bytes(block)) is None


def test_fec_adapter_roundtrip_with_correction():
    fec = ReedSolomonFEC()
    info = fec.encode(b'sensor frame ' * 10)
    assert info['scheme'] == 'rs255'
    block = bytearray(base64.b64decode(info['blocks'][0]))
    block[3] ^= 1
    info['blocks'][0] = base64.b64encode(bytes(block)).decode()
    result = fec.decode(info)
    assert result.success
    assert result.data == b'sensor frame ' * 10
    assert result.errors_corrected == 1


def test_fec_failure_passes_data_through():
    class Broken(ReedSolomonFEC):
        def decode(self, fec_info):
            return FECResult(False, b'')

    data, corrected = apply_fec(Broken(), b'raw', {'scheme': 'rs255'})
    assert data == b'raw'
    assert corrected == -1


# ══════════════════════════════════════════════════════════════
# 8. Calibration Engine
# ══════════════════════════════════════════════════════════════

def test_mean_margin_threshold():
    cal = CalibrationEngine()
    cal.start()
    for s in (10, 20, 30):
        cal.add_sample(s)
    assert cal.finish() == 70
    assert cal.state == CalibrationState.CALIBRATED


def test_midpoint_and_percentile_methods():
    cal = CalibrationEngine(method='midpoint')
    assert cal.compute_threshold([10, 250]) == 130
    cal = CalibrationEngine(method='percentile')
    assert cal.compute_threshold([0] * 50 + [200] * 50) == 100


def test_threshold_is_clamped():
    cal = CalibrationEngine()
    cal.start()
    cal.add_sample(250)
    assert cal.finish() == 255


def test_finish_without_samples_leaves_state():
    cal = CalibrationEngine()
    cal.start()
    with pytest.raises(InsufficientSamples):
        cal.finish()
    assert cal.state == CalibrationState.CALIBRATING
    assert cal.threshold == 128


def test_sample_outside_calibration_or_range():
    cal = CalibrationEngine()
    with pytest.raises(CalibrationError):
        cal.add_sample(10)
    cal.start()
    with pytest.raises(ValueError):
        cal.add_sample(300)
    with pytest.raises(ValueError):
        cal.add_sample(float('nan'))


# ══════════════════════════════════════════════════════════════
# 9. Dispatch
# ══════════════════════════════════════════════════════════════

def test_type_processing():
    assert process_payload(PacketType.TEXT, b'hi') == 'hi'
    assert process_payload(PacketType.JSON, b'{"a": 1}') == {'a': 1}
    assert process_payload(PacketType.SENSOR_DATA, b'not json') == 'not json'
    assert process_payload(PacketType.IMAGE, b'\x89PNG') == b'\x89PNG'
    assert process_payload(200, b'\x01') == b'\x01'


def test_dispatch_compressed_single():
    dispatcher = PacketDispatcher()
    payload = encode_envelope(SingleEnvelope(zlib.compress(b'abc' * 50), FLAG_COMPRESSED))
    record = dispatcher.dispatch(Packet(1, payload, CRC16.compute(payload)))
    assert record.data == 'abc' * 50
    assert record.size == 150


def test_dispatch_backend_mode():
    payload = build_backend_payload('config', configId='cfg-7', deviceId='dev-1')
    record = PacketDispatcher().dispatch(Packet(PacketType.JSON, payload, 0))
    assert record.mode == 'config'
    assert record.data['configId'] == 'cfg-7'
    assert record.to_dict()['mode'] == 'config'


def test_record_dict_shape():
    record = PacketDispatcher(clock=lambda: 5.0).dispatch(
        Packet(PacketType.FILE, b'\x00\x01', 0), started_at=4.5)
    d = record.to_dict()
    assert set(d) == {'type', 'data', 'timestamp', 'duration', 'size'}
    assert d['type'] == 'FILE'
    assert d['data'] == 'AAE='
    assert d['timestamp'] == 5000.0
    assert d['duration'] == 500.0


# ══════════════════════════════════════════════════════════════
# 10. Delivery queue
# ══════════════════════════════════════════════════════════════

def _record(n):
    return PacketDispatcher().dispatch(Packet(1, str(n).encode(), 0))


def test_queue_drops_oldest_when_full():
    q = RecordQueue(maxsize=2)
    for n in range(3):
        q.put(_record(n))
    assert [r.data for r in q.drain()] == ['1', '2']
    assert q.get_stats()['dropped'] == 1


def test_queue_worker_delivers():
    q = RecordQueue()
    seen = []
    q.start(seen.append)
    for n in range(3):
        q.put(_record(n))
    q.join()
    q.stop()
    assert [r.data for r in seen] == ['0', '1', '2']


# ══════════════════════════════════════════════════════════════
# 11. Receiver State Machine
# ══════════════════════════════════════════════════════════════

def test_packet_mode_receives_hi():
    rx = ReceiverSession()
    rx.listen()
    records = feed_bits(rx, encode_packet(PacketType.TEXT, b'hi'))
    assert len(records) == 1
    assert records[0].data == 'hi'
    assert records[0].type_name == 'TEXT'
    assert rx.state == ReceiverState.SUCCESS


def test_default_session_holds_two_maximal_frames():
    rx = ReceiverSession()
    assert rx.max_buffer_bits >= 2 * packet_bit_length(rx.codec.max_length)
    from_config = ReceiverSession.from_config(load_config())
    assert from_config.max_buffer_bits == rx.max_buffer_bits
    assert from_config.codec.max_length == rx.codec.max_length


def test_start_marker_moves_to_receiving():
    for mode in ('packet', 'legacy'):
        rx = ReceiverSession(mode=mode)
        rx.listen()
        feed_bits(rx, [0, 0, 1, 0])
        assert rx.state == ReceiverState.WAITING_FOR_START
        feed_bits(rx, [1] * 7)
        assert rx.state == ReceiverState.WAITING_FOR_START
        rx.process_bit(1)
        assert rx.state == ReceiverState.RECEIVING


def test_legacy_mode_success():
    rx = ReceiverSession(mode='legacy')
    rx.listen()
    records = feed_bits(rx, encode_legacy_message('hi'))
    assert [r.data for r in records] == ['hi']
    assert rx.state == ReceiverState.SUCCESS


def test_legacy_mode_parity_error():
    bits = encode_legacy_message('hi')
    bits[8 + 8] ^= 1        # parity bit of the first unit
    rx = ReceiverSession(mode='legacy')
    rx.listen()
    assert feed_bits(rx, bits) == []
    assert rx.state == ReceiverState.ERROR
    assert rx.get_stats()['parity_errors'] == 1


def test_legacy_manual_decode():
    rx = ReceiverSession(mode='legacy', auto_decode=False)
    rx.listen()
    feed_bits(rx, encode_legacy_message('ok'))
    assert rx.state == ReceiverState.END_DETECTED
    assert rx.decode_message().data == 'ok'


def test_samples_are_sliced_against_threshold():
    rx = ReceiverSession()
    rx.start_calibration()
    for _ in range(10):
        rx.process_sample(20)
    assert rx.finish_calibration() == 70
    assert rx.state == ReceiverState.WAITING_FOR_START
    levels = np.where(encode_packet(1, b'hi') == 1, 200, 30)
    records = [r for r in map(rx.process_sample, levels) if r is not None]
    assert records[0].data == 'hi'


def test_finish_calibration_without_samples():
    rx = ReceiverSession()
    rx.start_calibration()
    with pytest.raises(InsufficientSamples):
        rx.finish_calibration()
    assert rx.state == ReceiverState.CALIBRATING


def test_samples_ignored_when_idle():
    rx = ReceiverSession()
    assert rx.process_sample(255) is None
    assert rx.state == ReceiverState.IDLE


def test_crc_error_then_recovery():
    good = encode_packet(1, b'hi')
    bad = good.copy()
    bad[40] ^= 1
    rx = ReceiverSession()
    rx.listen()
    assert feed_bits(rx, bad) == []
    assert rx.state == ReceiverState.ERROR
    assert rx.get_stats()['checksum_errors'] == 1
    records = feed_bits(rx, np.concatenate([np.zeros(64, dtype=int), good]))
    assert [r.data for r in records] == ['hi']


def test_chunked_transfer_through_receiver():
    encoder = Encoder(max_chunk_size=256)
    packets = encoder.encode_data('a' * 600, PacketType.TEXT)
    assert len(packets) == 3
    rx = ReceiverSession()
    rx.listen()
    records = feed_bits(rx, Encoder.to_bit_stream(packets, gap_bits=16))
    assert len(records) == 1
    assert records[0].data == 'a' * 600
    assert rx.get_stats()['pending_groups'] == 0


def test_reset_from_any_state():
    rx = ReceiverSession()
    rx.reset()
    assert rx.state == ReceiverState.IDLE
    rx.start_calibration()
    rx.reset()
    assert rx.state == ReceiverState.IDLE

    rx.threshold = 90
    rx.listen()
    packets = Encoder(max_chunk_size=4).encode_data('abcdefgh')
    feed_bits(rx, packets[0][:20])
    assert rx.state == ReceiverState.RECEIVING
    rx.reset()
    assert rx.state == ReceiverState.IDLE
    assert rx.buffered_bits() == 0
    assert rx.threshold == 90

    rx.listen()
    feed_bits(rx, packets[0])
    assert rx.get_stats()['pending_groups'] == 1
    rx.reset()
    assert rx.get_stats()['pending_groups'] == 0


def test_records_are_queued():
    q = RecordQueue()
    rx = ReceiverSession(queue=q)
    rx.listen()
    feed_bits(rx, encode_packet(1, b'queued'))
    assert [r.data for r in q.drain()] == ['queued']


# ══════════════════════════════════════════════════════════════
# 12. Encoder
# ══════════════════════════════════════════════════════════════

def test_encode_data_small_text_is_plain_packet():
    packets = encode_data('hi')
    assert len(packets) == 1
    assert np.array_equal(packets[0], encode_packet(PacketType.TEXT, b'hi'))


def test_encode_json_object():
    packets = encode_data({'temp': 21.5}, PacketType.SENSOR_DATA)
    packet = decode_packet(packets[0])
    assert packet.type == PacketType.SENSOR_DATA
    assert json.loads(packet.payload) == {'temp': 21.5}


def test_one_transmission_id_per_message():
    ids = iter(['first', 'second'])
    encoder = Encoder(max_chunk_size=4, id_factory=lambda: next(ids))
    envs = [decode_envelope(decode_packet(p).payload) for p in encoder.encode_data('abcdefghij')]
    assert {e.transmission_id for e in envs} == {'first'}


def test_compress_auto_skips_small_payloads():
    encoder = Encoder()
    env = decode_envelope(decode_packet(encoder.encode_data('hi', compress='auto')[0]).payload)
    assert isinstance(env, RawPayload)
    env = decode_envelope(decode_packet(encoder.encode_data('la' * 200, compress='auto')[0]).payload)
    assert isinstance(env, SingleEnvelope)
    assert env.flags & FLAG_COMPRESSED


# ══════════════════════════════════════════════════════════════
# 13. Modulation, channel, metrics
# ══════════════════════════════════════════════════════════════

def test_flash_schedule():
    sched = FlashSchedule()
    assert sched.schedule([1, 0, 1]) == [(0, 255), (100, 0), (200, 255)]
    assert sched.duration_ms([1, 0, 1]) == 300
    assert transmission_duration_ms(encode_packet(1, b'hi')) == 7200


def test_channel_samples_slice_back_to_bits():
    bits = np.array([1, 0, 1, 1, 0, 0, 1, 0] * 8)
    channel = OpticalChannel(lighting='dark_room', seed=3)
    samples, metrics = channel.transmit(FlashSchedule().levels(bits))
    assert samples.min() >= 0 and samples.max() <= 255
    assert np.array_equal(ThresholdDemodulator(128).demodulate(samples), bits)
    assert metrics['burst_errors'] == 0


def test_metrics():
    units = np.concatenate([encode_byte(0x41), encode_byte(0x42)])
    units[0] ^= 1
    assert parity_bit_error_rate(units, 18) == 0.5
    assert brightness_snr([0, 255]) == pytest.approx(255 / 128.5)
    assert brightness_snr([5]) == 0.0
    assert packet_confidence(0, 0) == 100.0
    assert packet_confidence(3, 4) == 75.0
    assert bit_error_rate([1, 0, 1, 1], [1, 1, 1, 1]) == 0.25
    history = [{'timestamp': 0, 'ber': 0.1, 'snr': 2, 'confidence': 50},
               {'timestamp': 900, 'ber': 0.3, 'snr': 4, 'confidence': 100}]
    agg = aggregate_metrics(history, window_ms=500, now_ms=1000)
    assert agg['total_transmissions'] == 1
    assert agg['average_ber'] == pytest.approx(0.3)


def test_channel_rejects_bad_parameters():
    channel = OpticalChannel(seed=1)
    bad = [{'noise_std': 'x'}, {'p_gb': 2}, {'warp': 1},
           {'lighting': 'moon'}, {'contrast': True}, {'ambient': float('nan')}]
    for params in bad:
        with pytest.raises(ValueError):
            channel.set_parameters(**params)
    assert channel.get_state_dict()['noise_std'] == 8.0

    channel.set_parameters(lighting='sunlight', noise_std=5)
    assert channel.lighting == 'sunlight'
    assert channel.noise_std == 5.0
    assert channel.ambient == 140.0


if __name__ == '__main__':
    sys.exit(pytest.main([__file__, '-v']))
