"""
Door actuator.
Energizes the solenoid output for a fixed duration, then releases it.
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_DURATION = 3.0


class Door:
    """
    Solenoid driven through an output callable taking True/False.
    Without an output the door only logs what it would do.
    """

    def __init__(self, duration: float = DEFAULT_DURATION,
                 output: Optional[Callable[[bool], None]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        if duration <= 0:
            raise ValueError("door open duration must be positive")
        self.duration = duration
        self._output = output
        self._sleep = sleep
        self._lock = threading.Lock()

    def _set(self, energized: bool):
        if self._output is None:
            logger.info("Solenoid %s (no output configured)", "on" if energized else "off")
            return
        self._output(energized)

    def open_door(self):
        """Energize the solenoid for the configured duration."""
        with self._lock:
            self._set(True)
            try:
                self._sleep(self.duration)
            finally:
                self._set(False)
