"""
FlashLink HTTP Service
Flask application exposing the encoder, the receiver and the simulator.
"""

import base64
import logging
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flask import Flask, request, jsonify
from core.bits import as_bit_array, bits_to_string
from core.config import load_config
from core.encoder import Encoder
from core.errors import FlashLinkError
from core.framing import PacketType
from core.modulation import transmission_duration_ms
from simulation.engine import SimulationEngine

logger = logging.getLogger(__name__)

app = Flask(__name__)
config = load_config()
engine = SimulationEngine(config)


def _packet_type(value) -> int:
    """Accept a tag number or a type name such as 'JSON'."""
    if isinstance(value, str):
        try:
            return PacketType[value.upper()]
        except KeyError:
            raise ValueError(f"unknown data type '{value}'") from None
    value = int(value)
    if not 0 <= value <= 0xFF:
        raise ValueError("data type must fit in 8 bits")
    return value


def _payload(data: dict):
    if 'data_b64' in data:
        return base64.b64decode(data['data_b64'])
    return data.get('data', '')


@app.errorhandler(ValueError)
def bad_request(e):
    return jsonify({'error': str(e)}), 400


@app.route('/api/encode', methods=['POST'])
def encode():
    """Encode data into packet bit strings."""
    data = request.get_json(silent=True) or {}
    data_type = _packet_type(data.get('type', PacketType.TEXT))
    mode = data.get('mode', 'packet')

    if mode == 'legacy':
        bits = Encoder.encode_legacy(_payload(data))
        packets = [bits]
    else:
        packets = engine.encoder.encode_data(
            _payload(data), data_type,
            compress=data.get('compress', config['link']['compress']),
            fec=bool(data.get('fec', config['link']['fec'])))
        bits = Encoder.to_bit_stream(packets, gap_bits=config['link']['gap_bits'])

    return jsonify({
        'packets': [bits_to_string(p) for p in packets],
        'total_bits': int(len(bits)),
        'duration_ms': transmission_duration_ms(bits, config['link']['bit_duration_ms']),
    })


@app.route('/api/decode', methods=['POST'])
def decode():
    """Run a fresh receiver over bits or brightness samples."""
    data = request.get_json(silent=True) or {}
    session = engine.new_session(data.get('mode'))
    decoded = []

    try:
        if 'samples' in data:
            samples = data['samples']
            cal = data.get('calibration_samples', 0)
            if cal:
                session.start_calibration()
                for s in samples[:cal]:
                    session.process_sample(float(s))
                session.finish_calibration()
            else:
                session.listen()
            stream = (session.process_sample(float(s)) for s in samples[cal:])
        else:
            session.listen()
            bits = as_bit_array(str(data.get('bits', '')))
            stream = (session.process_bit(int(b)) for b in bits)

        for record in stream:
            if record is not None:
                decoded.append(record.to_dict())
    except FlashLinkError as e:
        logger.warning("decode request failed: %s", e)
        return jsonify({'error': str(e), 'receiver': session.get_stats()}), 422

    return jsonify({'records': decoded, 'receiver': session.get_stats()})


@app.route('/api/transmit', methods=['POST'])
def transmit():
    """Run a transmission simulation."""
    data = request.get_json(silent=True) or {}
    message = data.get('message', 'Hello from FlashLink!')
    channel_params = {}
    for key in ('lighting', 'ambient', 'contrast', 'noise_std', 'p_gb', 'p_bg'):
        if key in data:
            channel_params[key] = data[key]

    result = engine.run_transmission(
        message,
        data_type=_packet_type(data.get('type', PacketType.TEXT)),
        mode=data.get('mode', 'packet'),
        compress=data.get('compress'),
        fec=data.get('fec'),
        channel_params=channel_params or None)
    return jsonify(result)


@app.route('/api/ber_sweep', methods=['POST'])
def ber_sweep():
    """Run BER vs lighting sweep."""
    data = request.get_json(silent=True) or {}
    result = engine.run_ber_sweep(data.get('message', 'Hello'), data.get('lightings'),
                                  int(data.get('trials', 3)))
    return jsonify(result)


@app.route('/api/records', methods=['GET'])
def records():
    """Drain records decoded by simulated receivers."""
    return jsonify([r.to_dict() for r in engine.records.drain()])


@app.route('/api/status', methods=['GET'])
def status():
    return jsonify(engine.get_system_status())


@app.route('/api/channel', methods=['POST'])
def update_channel():
    """Update channel parameters."""
    data = request.get_json(silent=True) or {}
    engine.channel.set_parameters(**data)
    return jsonify(engine.channel.get_state_dict())


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    server = config['server']
    port = int(os.environ.get('FLASHLINK_PORT', server['port']))
    print("\n" + "="*60)
    print("  FlashLink Screen-to-Camera Link Simulator")
    print(f"  API: http://{server['host']}:{port}/api/status")
    print("="*60 + "\n")
    app.run(host=server['host'], port=port, debug=server['debug'])
