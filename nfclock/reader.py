"""
PC/SC reader access.
Provides the byte-pipe transport a DESFireSession talks through, and
reader/card monitoring built on pyscard observers.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, List, Optional

from .exceptions import TransportError, TransportTimeout

logger = logging.getLogger(__name__)

# Try to import pyscard
try:
    from smartcard.System import readers as list_readers
    from smartcard.CardMonitoring import CardMonitor, CardObserver
    from smartcard.ReaderMonitoring import ReaderMonitor, ReaderObserver
    from smartcard.Exceptions import CardConnectionException, NoCardException
    PYSCARD_AVAILABLE = True
except ImportError:
    PYSCARD_AVAILABLE = False

DEFAULT_TIMEOUT = 2.0


class PCSCTransport:
    """
    Transport over a pyscard card connection.

    transmit() returns the response data followed by SW1 SW2, which is the
    raw DESFire framing [payload..., 0x91, status]. Each round-trip runs on
    a worker thread so it can be bounded by the timeout.
    """

    def __init__(self, connection, timeout: float = DEFAULT_TIMEOUT):
        self._connection = connection
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pcsc")

    def _exchange(self, data: bytes) -> bytes:
        response, sw1, sw2 = self._connection.transmit(list(data))
        return bytes(response) + bytes([sw1, sw2])

    def transmit(self, data: bytes, max_response_length: int) -> bytes:
        """Send raw APDU bytes and get the raw response."""
        future = self._executor.submit(self._exchange, bytes(data))
        try:
            raw = future.result(timeout=self.timeout)
        except FutureTimeout as e:
            raise TransportTimeout(f"no answer within {self.timeout}s") from e
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"transmit failed: {e}") from e

        if len(raw) - 2 > max_response_length:
            logger.warning("Response of %d bytes exceeds expected %d",
                           len(raw) - 2, max_response_length)
        return raw

    def close(self):
        """Disconnect from the card."""
        self._executor.shutdown(wait=False)
        try:
            self._connection.disconnect()
        except Exception as e:
            logger.debug("Disconnect failed: %s", e)


def connect_card(card, timeout: float = DEFAULT_TIMEOUT) -> PCSCTransport:
    """Connect to a card reported by the card monitor."""
    if not PYSCARD_AVAILABLE:
        raise TransportError("pyscard not installed")
    try:
        connection = card.createConnection()
        connection.connect()
    except NoCardException as e:
        raise TransportError(f"{card.reader}: no card present") from e
    except CardConnectionException as e:
        raise TransportError(f"{card.reader}: connection failed: {e}") from e
    return PCSCTransport(connection, timeout)


class ReaderManager:
    """Manages smart card readers and card monitoring."""

    def __init__(self):
        self._card_monitor = None
        self._reader_monitor = None
        self._card_observer = None
        self._reader_observer = None
        self._monitoring = False

    @property
    def is_available(self) -> bool:
        """Check if pyscard is available."""
        return PYSCARD_AVAILABLE

    def list_readers(self) -> List[str]:
        """Names of the available readers."""
        if not PYSCARD_AVAILABLE:
            return []
        return [str(r) for r in list_readers()]

    def start_monitoring(self,
                         on_readers_changed: Optional[Callable] = None,
                         on_card_inserted: Optional[Callable] = None,
                         on_card_removed: Optional[Callable] = None):
        """Start monitoring for reader and card changes."""
        if not PYSCARD_AVAILABLE:
            raise RuntimeError("pyscard not installed")
        if self._monitoring:
            return

        self._card_monitor = CardMonitor()
        self._card_observer = _CardObserverCallback(
            on_inserted=on_card_inserted,
            on_removed=on_card_removed,
        )
        self._card_monitor.addObserver(self._card_observer)

        self._reader_monitor = ReaderMonitor()
        self._reader_observer = _ReaderObserverCallback(on_changed=on_readers_changed)
        self._reader_monitor.addObserver(self._reader_observer)

        self._monitoring = True

    def stop_monitoring(self):
        """Stop monitoring."""
        if self._card_monitor:
            self._card_monitor.deleteObserver(self._card_observer)
            self._card_monitor = None
        if self._reader_monitor:
            self._reader_monitor.deleteObserver(self._reader_observer)
            self._reader_monitor = None
        self._monitoring = False


# ─── Internal Observer Callbacks ────────────────────────────────────────────

class _CardObserverCallback(CardObserver if PYSCARD_AVAILABLE else object):
    """Card insertion/removal observer."""

    def __init__(self, on_inserted=None, on_removed=None):
        if PYSCARD_AVAILABLE:
            super().__init__()
        self._on_inserted = on_inserted
        self._on_removed = on_removed

    def update(self, observable, actions):
        added_cards, removed_cards = actions
        for card in added_cards:
            if self._on_inserted:
                self._on_inserted(card)
        for card in removed_cards:
            if self._on_removed:
                self._on_removed(card)


class _ReaderObserverCallback(ReaderObserver if PYSCARD_AVAILABLE else object):
    """Reader addition/removal observer."""

    def __init__(self, on_changed=None):
        if PYSCARD_AVAILABLE:
            super().__init__()
        self._on_changed = on_changed

    def update(self, observable, actions):
        added_readers, removed_readers = actions
        if self._on_changed:
            self._on_changed(added_readers, removed_readers)
