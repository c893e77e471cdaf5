"""
Access control.
Decides whether a presented DESFire card opens the door, and wires card
readers to one DESFireSession each.
"""

import hmac
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional, Union

from .atr import ATRInfo
from .crypto import KeyType
from .database import MemberDatabase
from .desfire import CommMode, DESFireSession
from .door import Door
from .events import EventSink, LogEventSink
from .exceptions import DESFireError
from .reader import DEFAULT_TIMEOUT, ReaderManager, connect_card

logger = logging.getLogger(__name__)

KEY_LENGTH = 16


def parse_aid(value: Union[int, str]) -> int:
    """Application identifiers may be configured as int or hex string."""
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


class AccessController:
    """
    Checks a card against the member database.

    A member's secret holds the AES application key followed by the
    content expected in the secret file of that application.
    """

    def __init__(self, database: MemberDatabase, door: Door,
                 events: Optional[EventSink] = None,
                 application: Union[int, str] = 0x000591,
                 key_number: int = 0, file_number: int = 1, secret_length: int = 16):
        self.database = database
        self.door = door
        self.events = events or LogEventSink()
        self.application = parse_aid(application)
        self.key_number = key_number
        self.file_number = file_number
        self.secret_length = secret_length

    def _deny(self, reason: str, member: Optional[Dict] = None, **extra):
        event = {"type": "denied", "reason": reason}
        if member:
            event["owner"] = member.get("owner")
            event["name"] = member.get("name")
        event.update(extra)
        self.events.publish(event)

    def check_card(self, session: DESFireSession) -> bool:
        """Authenticate the card and open the door if its secret matches."""
        try:
            uid = session.get_version().uid_hex
            member = self.database.get().get(uid)
            if member is None:
                logger.warning("UID %s not found in database", uid)
                self._deny("identifier not in database")
                return False

            data = bytes.fromhex(member["secret"])
            key = data[:KEY_LENGTH]
            secret = data[KEY_LENGTH:KEY_LENGTH + self.secret_length]

            session.select_application(self.application)
            session.authenticate(self.key_number, key, KeyType.AES)
            on_card = session.read_data(self.file_number, 0, self.secret_length,
                                        CommMode.ENCRYPTED)
        except DESFireError as e:
            logger.error("Failed to authenticate card: %s", e)
            self._deny("error", error=str(e))
            return False
        except (KeyError, ValueError) as e:
            logger.error("Invalid database entry: %s", e)
            self._deny("invalid database entry")
            return False

        if len(secret) != self.secret_length or not hmac.compare_digest(on_card, secret):
            logger.warning("Secret on card %s is invalid", uid)
            self._deny("invalid secret", member)
            return False

        logger.info("Found valid DESFire key, owner is '%s'. Opening door...", member.get("owner"))
        self.door.open_door()
        self.events.publish({
            "type": "access",
            "reason": "valid key",
            "owner": member.get("owner"),
            "name": member.get("name"),
        })
        return True


class NfcLock:
    """
    Runs an AccessController for every DESFire card presented to any reader.

    Card checks run on one worker thread per reader, so the monitor thread
    stays free to deliver card-removed notifications while a check is in
    flight.
    """

    def __init__(self, controller: AccessController, timeout: float = DEFAULT_TIMEOUT,
                 manager: Optional[ReaderManager] = None):
        self.controller = controller
        self.timeout = timeout
        self.manager = manager or ReaderManager()
        self._sessions: Dict[str, DESFireSession] = {}
        self._workers: Dict[str, ThreadPoolExecutor] = {}
        self._lock = threading.Lock()

    @property
    def events(self) -> EventSink:
        return self.controller.events

    def start(self):
        for name in self.manager.list_readers():
            logger.info("Reader attached: %s", name)
        self.manager.start_monitoring(
            on_readers_changed=self._on_readers_changed,
            on_card_inserted=self._on_card_inserted,
            on_card_removed=self._on_card_removed,
        )

    def stop(self):
        self.manager.stop_monitoring()
        with self._lock:
            sessions = list(self._sessions.values())
            workers = list(self._workers.values())
            self._sessions.clear()
            self._workers.clear()
        for session in sessions:
            session.close()
        for worker in workers:
            worker.shutdown(wait=True)

    def _worker(self, reader: str) -> ThreadPoolExecutor:
        with self._lock:
            worker = self._workers.get(reader)
            if worker is None:
                worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nfclock")
                self._workers[reader] = worker
            return worker

    def _on_readers_changed(self, added, removed):
        for reader in added:
            logger.info("Reader attached: %s", reader)
            self.events.publish({"type": "reader_attached", "name": str(reader)})
        for reader in removed:
            logger.info("Reader removed: %s", reader)
            self.events.publish({"type": "reader_detached", "name": str(reader)})
            with self._lock:
                worker = self._workers.pop(str(reader), None)
            if worker is not None:
                worker.shutdown(wait=False)

    def _on_card_inserted(self, card) -> Optional[Future]:
        atr = ATRInfo(card.atr)
        if not atr.is_desfire:
            logger.info("%s: ignoring %s", card.reader, atr)
            return None
        future = self._worker(str(card.reader)).submit(self._check_card, card)
        future.add_done_callback(self._report_failure)
        return future

    def _check_card(self, card):
        reader = str(card.reader)
        try:
            transport = connect_card(card, self.timeout)
        except DESFireError as e:
            logger.error("%s: %s", reader, e)
            return

        session = DESFireSession(transport)
        with self._lock:
            self._sessions[reader] = session
        logger.info("%s: DESFire card attached", reader)
        try:
            self.controller.check_card(session)
        finally:
            transport.close()

    @staticmethod
    def _report_failure(future: Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Card check failed", exc_info=error)

    def _on_card_removed(self, card):
        with self._lock:
            session = self._sessions.pop(str(card.reader), None)
        if session is not None:
            session.close()
        logger.info("%s: card removed", card.reader)
