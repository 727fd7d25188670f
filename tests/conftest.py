from typing import List, Optional

import pytest

from thermalbridge.app.config import BridgeSettings
from thermalbridge.app.service import PrinterService
from thermalbridge.core.models import (
    DeviceDescriptor,
    TRANSFER_BULK,
    TRANSFER_INTERRUPT,
    UsbEndpointInfo,
    UsbInterfaceInfo,
)
from thermalbridge.core.session import ConnectionSession
from thermalbridge.usb.host import HostEvent, HostEventKind, UsbHost


def make_device(vendor_id: int = 0x0B1B, product_id: int = 0x0E03, interface_class: int = 7,
                name: Optional[str] = None, endpoints=None, interfaces=None) -> DeviceDescriptor:
    if interfaces is None:
        if endpoints is None:
            endpoints = (
                UsbEndpointInfo(address=0x02, transfer_type=TRANSFER_BULK),
                UsbEndpointInfo(address=0x81, transfer_type=TRANSFER_BULK),
            )
        interfaces = (UsbInterfaceInfo(number=0, interface_class=interface_class, endpoints=tuple(endpoints)),)
    return DeviceDescriptor(
        vendor_id=vendor_id,
        product_id=product_id,
        device_name=name or f"/dev/bus/usb/001/{vendor_id % 250:03d}",
        serial_number="SN123",
        interfaces=tuple(interfaces),
    )


def hid_device(vendor_id: int = 0x046D, product_id: int = 0xC52B, name: str = "/dev/bus/usb/001/009") -> DeviceDescriptor:
    """A keyboard-like device: interrupt endpoints only."""
    return make_device(
        vendor_id=vendor_id,
        product_id=product_id,
        name=name,
        interfaces=(UsbInterfaceInfo(
            number=0,
            interface_class=3,
            endpoints=(UsbEndpointInfo(address=0x81, transfer_type=TRANSFER_INTERRUPT),),
        ),),
    )


class FakeHandle:
    def __init__(self, device: DeviceDescriptor):
        self.device = device
        self.closed = False


class FakeUsbHost(UsbHost):
    """In-memory host with scripted results and a call log."""

    def __init__(self, devices=None):
        super().__init__()
        self.devices: List[DeviceDescriptor] = list(devices or [])
        self.permitted = True
        self.answer_permission: Optional[bool] = True  # None: never answer
        self.open_fails = False
        self.claim_results: List[bool] = []
        self.claim_default = True
        self.control_result = 0
        self.bulk_results: List[int] = []
        self.calls: List[tuple] = []
        self.written: List[bytes] = []
        self.handles: List[FakeHandle] = []

    def list_devices(self):
        self.calls.append(("list",))
        return list(self.devices)

    def has_permission(self, device):
        return self.permitted

    def request_permission(self, device):
        self.calls.append(("request_permission", device.key))
        if self.answer_permission is None:
            return
        self.permitted = self.answer_permission
        kind = HostEventKind.PERMISSION_GRANTED if self.answer_permission else HostEventKind.PERMISSION_DENIED
        self.emit(HostEvent(kind, device))

    def open(self, device):
        self.calls.append(("open", device.key))
        if self.open_fails:
            return None
        handle = FakeHandle(device)
        self.handles.append(handle)
        return handle

    def close(self, handle):
        self.calls.append(("close",))
        handle.closed = True

    def control_transfer(self, handle, request_type, request, value, index, data=None, length=0, timeout_ms=1000):
        self.calls.append(("control", request_type, request, value, index))
        return self.control_result

    def bulk_transfer(self, handle, endpoint, data, length=None, timeout_ms=1000):
        self.calls.append(("bulk", endpoint, bytes(data), timeout_ms))
        result = self.bulk_results.pop(0) if self.bulk_results else len(data)
        if result >= 0:
            self.written.append(bytes(data))
        return result

    def claim_interface(self, handle, interface, force=True):
        self.calls.append(("claim", interface, force))
        if self.claim_results:
            return self.claim_results.pop(0)
        return self.claim_default

    def release_interface(self, handle, interface):
        self.calls.append(("release", interface))
        return True

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def printer_device():
    return make_device()


@pytest.fixture
def host(printer_device):
    return FakeUsbHost([printer_device])


@pytest.fixture
def session(host):
    return ConnectionSession(host)


@pytest.fixture
def settings():
    return BridgeSettings(max_attempts=3, retry_base_delay_ms=500, permission_timeout=0.5)


@pytest.fixture
def service(host, settings):
    svc = PrinterService(host, settings, sleep=no_sleep)
    yield svc
    svc.close()


@pytest.fixture
def connected_service(service, host):
    result = service.connect()
    assert result["success"], result
    host.calls.clear()
    host.written.clear()
    return service
