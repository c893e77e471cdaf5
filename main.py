#!/usr/bin/env python3
"""
NFC Lock
========
Opens a door for MIFARE DESFire cards whose stored secret matches the
member database.

Usage:
    python main.py [configuration.json]

Requirements:
    pip install -e .
"""

import logging
import sys
import threading


def check_dependencies():
    """Check that required dependencies are installed."""
    missing = []

    try:
        import smartcard
    except ImportError:
        missing.append("pyscard")

    try:
        from Crypto.Cipher import AES
    except ImportError:
        missing.append("pycryptodome")

    try:
        import gpiozero
    except ImportError:
        missing.append("gpiozero")

    if missing:
        print("=" * 60)
        print("  NFC Lock - Missing Dependencies")
        print("=" * 60)
        print()
        for pkg in missing:
            print(f"    - {pkg}")
        print()
        print("  Install them with:")
        print(f"    pip install {' '.join(missing)}")
        print()
        print("=" * 60)
        sys.exit(1)


def main():
    """Application entry point."""
    check_dependencies()

    from nfclock.config import DEFAULT_CONFIG_FILE, Configuration
    from nfclock.database import MemberDatabase
    from nfclock.door import Door
    from nfclock.events import LogEventSink
    from nfclock.hardware import SensorMonitor, solenoid_output
    from nfclock.lock import AccessController, NfcLock

    config_file = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_CONFIG_FILE
    config = Configuration(config_file).load()

    logging.basicConfig(
        level=getattr(logging, str(config.get("log_level")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    database = MemberDatabase(config.get("database"))
    database.load()

    events = LogEventSink()
    output = solenoid_output(config.get("hardware", "gpio", "solenoid"))
    sensors = SensorMonitor(
        power_pin=config.get("hardware", "gpio", "sensor_power"),
        state_pin=config.get("hardware", "gpio", "sensor_state"),
        interval=config.get("hardware", "interval"),
        on_power=lambda value: events.publish({"type": "power", "value": value}),
        on_state=lambda value: events.publish({"type": "door_state", "value": value}),
    )

    controller = AccessController(
        database,
        Door(config.get("hardware", "duration"), output=output),
        events,
        application=config.get("desfire", "application"),
        key_number=config.get("desfire", "key_number"),
        file_number=config.get("desfire", "file"),
        secret_length=config.get("desfire", "secret_length"),
    )
    lock = NfcLock(controller, timeout=config.get("reader", "timeout"))
    lock.start()
    sensors.start()

    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Shutting down")
    finally:
        sensors.stop()
        lock.stop()
        if output is not None:
            output.close()


if __name__ == "__main__":
    main()
