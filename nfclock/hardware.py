"""
GPIO wiring for the door hardware.
Drives the solenoid through gpiozero and polls the power and door state
sensor inputs for changes.
"""

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

# Try to import gpiozero
try:
    from gpiozero import DigitalInputDevice, OutputDevice
    GPIOZERO_AVAILABLE = True
except ImportError:
    GPIOZERO_AVAILABLE = False

DEFAULT_INTERVAL = 0.5

SensorCallback = Callable[[bool], None]


def _require_gpiozero():
    if not GPIOZERO_AVAILABLE:
        raise RuntimeError("gpiozero not installed")


class SolenoidOutput:
    """Solenoid on one GPIO pin; call with True to energize, False to release."""

    def __init__(self, pin: int, device_factory=None):
        if device_factory is None:
            _require_gpiozero()
            device_factory = OutputDevice
        self.pin = pin
        self._device = device_factory(pin, initial_value=False)

    def __call__(self, energized: bool):
        if energized:
            self._device.on()
        else:
            self._device.off()

    def close(self):
        self._device.close()


def solenoid_output(pin: Optional[int], device_factory=None) -> Optional[SolenoidOutput]:
    """Output for the configured solenoid pin, or None when no pin is set."""
    if pin is None:
        logger.warning("No GPIO configured for solenoid output")
        return None
    return SolenoidOutput(pin, device_factory)


class _Sensor:
    def __init__(self, name: str, device, callback: Optional[SensorCallback]):
        self.name = name
        self.device = device
        self.callback = callback
        self.previous = True


class SensorMonitor:
    """
    Polls the power and door state inputs every interval seconds and calls
    the matching callback with the new level whenever one changes. Inputs
    start out assumed high. A sensor without a pin is skipped.
    """

    def __init__(self, power_pin: Optional[int] = None, state_pin: Optional[int] = None,
                 interval: float = DEFAULT_INTERVAL,
                 on_power: Optional[SensorCallback] = None,
                 on_state: Optional[SensorCallback] = None,
                 device_factory=None):
        if interval <= 0:
            raise ValueError("sensor poll interval must be positive")
        self.interval = interval
        self._sensors: List[_Sensor] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        for name, pin, callback in (("power", power_pin, on_power),
                                    ("state", state_pin, on_state)):
            if pin is None:
                logger.warning("No GPIO configured for %s sensor input", name)
                continue
            if device_factory is None:
                _require_gpiozero()
                device_factory = DigitalInputDevice
            self._sensors.append(_Sensor(name, device_factory(pin), callback))

    def poll(self):
        """Read every sensor once and report changes."""
        for sensor in self._sensors:
            value = bool(sensor.device.value)
            if value == sensor.previous:
                continue
            sensor.previous = value
            logger.info("Sensor %s changed to %s", sensor.name, value)
            if sensor.callback:
                sensor.callback(value)

    def _run(self):
        while not self._stop.wait(self.interval):
            self.poll()

    def start(self):
        if not self._sensors or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sensors", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        for sensor in self._sensors:
            sensor.device.close()
