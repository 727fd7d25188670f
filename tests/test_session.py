import pytest

from conftest import make_device, no_sleep

from thermalbridge.core.acquirer import InterfaceAcquirer
from thermalbridge.core.errors import DeviceDetached, DeviceOpenFailed, NotConnected, TransferFailed
from thermalbridge.core.models import SessionState
from thermalbridge.usb.host import ERROR_IO, ERROR_NO_DEVICE


def _connect(session, host, device):
    assert session.begin_connect()
    handle = session.open(device)
    claimed = InterfaceAcquirer(host, sleep=no_sleep).claim(device, handle)
    session.attach(device, handle, claimed)
    host.calls.clear()
    return handle


@pytest.fixture
def transitions(session):
    seen = []
    session.add_listener(lambda state, reason: seen.append(state))
    return seen


def test_send_requires_a_connection(session, host):
    with pytest.raises(NotConnected) as exc_info:
        session.send(b"hello", 1000)
    assert str(exc_info.value) == "Printer not connected"
    assert "bulk" not in host.call_names()


def test_connected_session_sends_to_bulk_out(session, host, printer_device, transitions):
    _connect(session, host, printer_device)
    assert session.is_connected()
    assert session.state is SessionState.CONNECTED
    assert transitions == [SessionState.CONNECTED]
    assert session.send(b"abc", 5000) == 3
    assert host.calls == [("bulk", 0x02, b"abc", 5000)]


def test_disconnect_is_idempotent(session, host, printer_device, transitions):
    handle = _connect(session, host, printer_device)
    assert session.disconnect() is True
    assert session.disconnect() is False
    assert host.call_names() == ["release", "close"]
    assert handle.closed
    assert session.device is None
    assert session.claimed is None
    assert transitions == [SessionState.CONNECTED, SessionState.DISCONNECTED]


def test_disconnect_without_connection_touches_nothing(session, host):
    assert session.disconnect() is False
    assert host.calls == []


def test_open_failure(session, host, printer_device):
    host.open_fails = True
    session.begin_connect()
    with pytest.raises(DeviceOpenFailed):
        session.open(printer_device)


def test_detach_of_the_connected_device(session, host, printer_device, transitions):
    handle = _connect(session, host, printer_device)
    assert session.handle_detach(printer_device) is True
    assert not session.is_connected()
    assert handle.closed
    assert transitions[-1] is SessionState.DISCONNECTED
    with pytest.raises(NotConnected):
        session.send(b"x", 1000)


def test_detach_of_another_device_is_ignored(session, host, printer_device):
    _connect(session, host, printer_device)
    other = make_device(vendor_id=0x04B8, name="/dev/bus/usb/002/007")
    assert session.handle_detach(other) is False
    assert session.is_connected()


def test_detach_while_connecting_fails_the_attach(session, host, printer_device):
    session.begin_connect()
    handle = session.open(printer_device)
    claimed = InterfaceAcquirer(host, sleep=no_sleep).claim(printer_device, handle)
    session.handle_detach(printer_device)
    with pytest.raises(DeviceDetached):
        session.attach(printer_device, handle, claimed)
    assert not session.is_connected()
    assert handle.closed


def test_transfer_error_keeps_the_session(session, host, printer_device):
    _connect(session, host, printer_device)
    host.bulk_results = [ERROR_IO]
    with pytest.raises(TransferFailed) as exc_info:
        session.send(b"x", 1000)
    assert exc_info.value.code == ERROR_IO
    assert str(exc_info.value) == "bulkTransfer failed: -1"
    assert session.is_connected()


def test_no_device_error_tears_the_session_down(session, host, printer_device, transitions):
    handle = _connect(session, host, printer_device)
    host.bulk_results = [ERROR_NO_DEVICE]
    with pytest.raises(TransferFailed):
        session.send(b"x", 1000)
    assert not session.is_connected()
    assert handle.closed
    assert transitions[-1] is SessionState.DISCONNECTED


def test_connect_gate_rejects_a_second_connect(session):
    assert session.begin_connect() is True
    assert session.begin_connect() is False
    session.abort_connect()
    assert session.state is SessionState.DISCONNECTED
    assert session.begin_connect() is True


def test_disconnect_during_connect_cancels_it(session, host, printer_device):
    session.begin_connect()
    handle = session.open(printer_device)
    claimed = InterfaceAcquirer(host, sleep=no_sleep).claim(printer_device, handle)
    session.disconnect()
    with pytest.raises(NotConnected):
        session.attach(printer_device, handle, claimed)


def test_unrelated_detach_while_nothing_is_held(session, host, printer_device):
    session.begin_connect()
    mouse = make_device(vendor_id=0x045E, name="/dev/bus/usb/003/004")
    assert session.handle_detach(mouse) is False
    assert session.handle_detach(None) is False
    session.open(printer_device)
    assert "open" in host.call_names()


def test_detach_fails_one_attempt_only(session, host, printer_device):
    session.begin_connect()
    handle = session.open(printer_device)
    claimed = InterfaceAcquirer(host, sleep=no_sleep).claim(printer_device, handle)
    session.handle_detach(printer_device)
    with pytest.raises(DeviceDetached):
        session.attach(printer_device, handle, claimed)

    session.release()
    handle = session.open(printer_device)
    claimed = InterfaceAcquirer(host, sleep=no_sleep).claim(printer_device, handle)
    session.attach(printer_device, handle, claimed)
    assert session.is_connected()


def test_cancel_outlives_release(session, host, printer_device):
    session.begin_connect()
    session.disconnect()
    session.release()
    with pytest.raises(NotConnected):
        session.open(printer_device)
    assert "open" not in host.call_names()
