import threading

import pytest

from nfclock import reader
from nfclock.exceptions import TransportError, TransportTimeout
from nfclock.reader import PCSCTransport, ReaderManager, connect_card


class FakeConnection:
    def __init__(self, response=(), sw=(0x91, 0x00), error=None, block=None):
        self.response = list(response)
        self.sw = sw
        self.error = error
        self.block = block
        self.sent = []
        self.disconnected = False

    def transmit(self, apdu):
        self.sent.append(apdu)
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        return self.response, self.sw[0], self.sw[1]

    def disconnect(self):
        self.disconnected = True


def test_transmit_appends_status_words():
    connection = FakeConnection(response=[0x01, 0x02], sw=(0x91, 0xAF))
    transport = PCSCTransport(connection, timeout=1.0)
    try:
        assert transport.transmit(b"\x90\x60\x00\x00\x00", 40) == b"\x01\x02\x91\xaf"
        assert connection.sent == [[0x90, 0x60, 0x00, 0x00, 0x00]]
    finally:
        transport.close()
    assert connection.disconnected


def test_transmit_failure_becomes_transport_error():
    transport = PCSCTransport(FakeConnection(error=OSError("card removed")), timeout=1.0)
    try:
        with pytest.raises(TransportError, match="card removed"):
            transport.transmit(b"\x90\x60\x00\x00\x00", 40)
    finally:
        transport.close()


def test_transmit_timeout():
    release = threading.Event()
    transport = PCSCTransport(FakeConnection(block=release), timeout=0.05)
    try:
        with pytest.raises(TransportTimeout):
            transport.transmit(b"\x90\x60\x00\x00\x00", 40)
    finally:
        release.set()
        transport.close()


def test_connect_card_without_pyscard(monkeypatch):
    monkeypatch.setattr(reader, "PYSCARD_AVAILABLE", False)
    with pytest.raises(TransportError):
        connect_card(object())


def test_reader_manager_without_pyscard(monkeypatch):
    monkeypatch.setattr(reader, "PYSCARD_AVAILABLE", False)
    manager = ReaderManager()
    assert not manager.is_available
    assert manager.list_readers() == []
    with pytest.raises(RuntimeError):
        manager.start_monitoring()


def test_card_observer_dispatches_each_card():
    inserted, removed = [], []
    observer = reader._CardObserverCallback(on_inserted=inserted.append,
                                            on_removed=removed.append)
    observer.update(None, (["card a", "card b"], ["card c"]))
    assert inserted == ["card a", "card b"]
    assert removed == ["card c"]


def test_reader_observer_dispatches_changes():
    changes = []
    observer = reader._ReaderObserverCallback(
        on_changed=lambda added, removed: changes.append((added, removed)))
    observer.update(None, (["Reader 1"], []))
    assert changes == [(["Reader 1"], [])]
