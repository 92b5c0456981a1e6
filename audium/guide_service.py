#!/usr/bin/env python3
"""
Guide Service: runs the audio guide end to end.

Loads the exhibit config, picks a beacon source (BLE or simulated visitor)
and an audio output (system player or dry-run log), starts a session and
runs until Ctrl+C. Optionally serves the status API.
"""

import argparse
import threading
import time

from .audio_output import RecordingAudioOutput, SubprocessAudioOutput
from .config import load_config
from .errors import ConfigurationError
from .guide_engine import GuideEngine
from .logging_config import setup_logging


def build_source(config, simulate: bool, seed=None):
    if simulate:
        from .beacon_simulator import SimulatedBeaconSource
        return SimulatedBeaconSource(
            config.profiles,
            interval=config.scanner.scan_interval,
            region_exit_seconds=config.scanner.region_exit_seconds,
            seed=seed,
        )
    from .ble_scanner import BleakBeaconSource
    return BleakBeaconSource(config.scanner, config.profiles.keys())


def serve_api(engine, host: str, port: int) -> threading.Thread:
    import uvicorn
    from .status_api import create_app

    app = create_app(engine)
    thread = threading.Thread(
        target=uvicorn.run, args=(app,), kwargs={"host": host, "port": port, "log_level": "warning"},
        name="audium-api", daemon=True,
    )
    thread.start()
    return thread


def main(argv=None):
    parser = argparse.ArgumentParser(description="Audium beacon audio guide")
    parser.add_argument('--config', default=None, help='Guide config JSON. If omitted, uses the built-in exhibit.')
    parser.add_argument('--simulate', action='store_true', help='Use a simulated visitor instead of Bluetooth')
    parser.add_argument('--seed', type=int, default=None, help='Random seed for --simulate')
    parser.add_argument('--dry-run', action='store_true', help='Log audio commands instead of playing them')
    parser.add_argument('--api-host', default='127.0.0.1', help='Status API bind address')
    parser.add_argument('--api-port', type=int, default=None, help='Serve the status API on this port')
    parser.add_argument('--log-dir', default=None, help='Log directory (default: $AUDIUM_LOG_DIR or ./logs)')
    parser.add_argument('--duration', type=float, default=None, help='Stop after this many seconds')
    args = parser.parse_args(argv)

    logger = setup_logging(args.log_dir)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(str(e), "CONFIG")
        return 2

    if args.dry_run:
        audio = RecordingAudioOutput()
    else:
        audio = SubprocessAudioOutput(config.audio.audio_dir, config.audio.player)

    engine = GuideEngine(config, audio)
    source = build_source(config, args.simulate, args.seed)

    engine.start()
    if args.api_port:
        serve_api(engine, args.api_host, args.api_port)
        logger.info(f"Status API on http://{args.api_host}:{args.api_port}/api/status", "API")

    engine.start_session()
    source.start(engine)

    deadline = time.monotonic() + args.duration if args.duration else None
    try:
        logger.info("Guide running. Ctrl+C to stop.", "ENGINE")
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Stopping guide...", "ENGINE")
        source.stop()
        engine.stop_session()
        engine.stop()
        audio.stop_all()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
