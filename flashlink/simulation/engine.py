"""
FlashLink End-to-End Simulation Engine
Runs the complete screen-to-camera pipeline:
Data -> Encode -> Flash schedule -> Optical channel -> Calibrate -> Receive -> Record
"""

import copy
import logging
import time
import numpy as np
from typing import Any, Dict, List, Optional

from core.channel import OpticalChannel
from core.config import load_config
from core.delivery import RecordQueue
from core.dispatch import process_payload
from core.encoder import Encoder, serialize
from core.fec import ReedSolomonFEC
from core.framing import PacketType, type_name
from core.metrics import bit_error_rate, brightness_snr, packet_confidence
from core.modulation import FlashSchedule
from core.receiver import ReceiverSession

logger = logging.getLogger(__name__)

IDLE_BITS = 8


class SimulationEngine:
    """
    Wires encoder, flash schedule, channel and receiver together.
    Decoded records are also put on `self.records` for delivery.
    """

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or load_config()
        link = self.config['link']
        self.fec = ReedSolomonFEC()
        self.encoder = Encoder(max_chunk_size=link['max_chunk_size'], fec=self.fec)
        self.schedule = FlashSchedule(bit_duration_ms=link['bit_duration_ms'])
        self.channel = OpticalChannel(**self.config['channel'])
        self.records = RecordQueue(maxsize=self.config['receiver']['queue_size'])

        self.last_result = None
        self.transmission_count = 0
        self.metrics_history: List[Dict] = []

    def new_session(self, mode: Optional[str] = None) -> ReceiverSession:
        cfg = self.config
        if mode is not None and mode != cfg['receiver']['mode']:
            cfg = copy.deepcopy(cfg)
            cfg['receiver']['mode'] = mode
        return ReceiverSession.from_config(cfg, fec=self.fec, queue=self.records)

    def encode(self, data: Any, data_type: int = PacketType.TEXT, mode: str = 'packet',
               compress=None, fec: Optional[bool] = None) -> np.ndarray:
        """Bit stream for one message (no lead-in)."""
        link = self.config['link']
        if mode == 'legacy':
            return Encoder.encode_legacy(serialize(data, data_type))
        packets = self.encoder.encode_data(
            data, data_type,
            compress=link['compress'] if compress is None else compress,
            fec=link['fec'] if fec is None else fec)
        return Encoder.to_bit_stream(packets, gap_bits=link['gap_bits'])

    def run_transmission(self, message: Any, data_type: int = PacketType.TEXT,
                         mode: str = 'packet', compress=None, fec: Optional[bool] = None,
                         channel_params: Optional[Dict] = None) -> Dict:
        """
        Run full end-to-end transmission simulation.

        The screen stays dark for the calibration window, then a few idle
        bits, then the message.
        """
        start_time = time.time()
        if channel_params:
            self.channel.set_parameters(**channel_params)
        self.transmission_count += 1

        # 1. Encode
        data_bits = self.encode(message, data_type, mode, compress, fec)
        n_cal = self.config['calibration']['samples']
        tx_bits = np.concatenate([np.zeros(n_cal + IDLE_BITS, dtype=int), data_bits,
                                  np.zeros(IDLE_BITS, dtype=int)])

        # 2. Flash schedule -> channel
        levels = self.schedule.levels(tx_bits)
        samples, channel_metrics = self.channel.transmit(levels)

        # 3. Calibrate on the dark window, then receive
        session = self.new_session(mode)
        session.start_calibration()
        for s in samples[:n_cal]:
            session.process_sample(s)
        threshold = session.finish_calibration()

        records = []
        for s in samples[n_cal:]:
            record = session.process_sample(s)
            if record is not None:
                records.append(record)

        # 4. Compare
        rx_bits = (samples[n_cal:] > threshold).astype(int)
        ber = bit_error_rate(tx_bits[n_cal:], rx_bits)
        expected_type = PacketType.TEXT if mode == 'legacy' else int(data_type)
        expected = process_payload(expected_type, serialize(message, data_type))
        decoded = records[-1].data if records else None
        stats = session.get_stats()
        attempted = stats['packets_ok'] + stats['checksum_errors'] + stats['framing_errors']
        confidence = packet_confidence(stats['packets_ok'], attempted)
        snr = brightness_snr(samples)

        now_ms = time.time() * 1000
        self.metrics_history.append({'timestamp': now_ms, 'ber': ber, 'snr': snr,
                                     'confidence': confidence})

        result = {
            'success': decoded == expected,
            'transmission_id': self.transmission_count,
            'mode': mode,
            'type': type_name(int(data_type)),
            'decoded': records[-1].to_dict()['data'] if records else None,
            'records': len(records),
            'threshold': threshold,
            'ber': f'{ber:.2e}',
            'ber_float': ber,
            'bit_errors': int(round(ber * len(rx_bits))),
            'total_bits': int(len(data_bits)),
            'duration_ms': self.schedule.duration_ms(tx_bits),
            'snr': round(snr, 2),
            'packet_confidence': round(confidence, 1),
            'receiver': stats,
            'channel': channel_metrics,
            'channel_quality': self.channel.get_quality_label(),
            'elapsed_ms': round((time.time() - start_time) * 1000, 2),
            'waveforms': {
                'tx': levels[:200].tolist(),
                'rx': samples[:200].tolist(),
            },
        }
        logger.info("transmission %d: %s, ber %.2e", self.transmission_count,
                    'ok' if result['success'] else 'failed', ber)
        self.last_result = result
        return result

    def run_ber_sweep(self, message: str = "Hello", lightings: Optional[List[str]] = None,
                      trials: int = 3) -> Dict:
        """Average BER and success rate per lighting condition."""
        if lightings is None:
            lightings = list(OpticalChannel.LIGHTING)
        original = self.channel.lighting

        results = []
        for lighting in lightings:
            self.channel.set_parameters(lighting=lighting)
            runs = [self.run_transmission(message) for _ in range(trials)]
            avg_ber = float(np.mean([r['ber_float'] for r in runs]))
            results.append({
                'lighting': lighting,
                'avg_ber': avg_ber,
                'ber_log': float(np.log10(max(avg_ber, 1e-7))),
                'success_rate': sum(r['success'] for r in runs) / trials,
            })

        self.channel.set_parameters(lighting=original)
        return {'sweep_results': results, 'message': message}

    def get_system_status(self) -> Dict:
        return {
            'channel': self.channel.get_state_dict(),
            'receiver_mode': self.config['receiver']['mode'],
            'calibration_method': self.config['calibration']['method'],
            'bit_duration_ms': self.config['link']['bit_duration_ms'],
            'max_chunk_size': self.config['link']['max_chunk_size'],
            'transmissions': self.transmission_count,
            'record_queue': self.records.get_stats(),
        }
