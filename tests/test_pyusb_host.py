import pytest

usb_core = pytest.importorskip("usb.core")
import usb.util  # noqa: E402

from thermalbridge.usb.host import (  # noqa: E402
    ERROR_IO,
    ERROR_NO_DEVICE,
    HostEventKind,
    USB_RECIP_DEVICE,
    USB_RECIP_INTERFACE,
    USB_REQUEST_SET_CONFIGURATION,
    USB_REQUEST_SET_INTERFACE,
)
from thermalbridge.usb.pyusb_host import HotplugMonitor, PyUsbHandle, PyUsbHost, describe_device  # noqa: E402


class FakeEndpoint:
    def __init__(self, address, attributes=0x02):
        self.bEndpointAddress = address
        self.bmAttributes = attributes
        self.wMaxPacketSize = 64


class FakeInterface(list):
    def __init__(self, number, cls, endpoints, alt=0):
        super().__init__(endpoints)
        self.bInterfaceNumber = number
        self.bInterfaceClass = cls
        self.bInterfaceSubClass = 1
        self.bAlternateSetting = alt


class FakeRawDevice(list):
    """Looks enough like usb.core.Device for descriptor walking and I/O."""

    def __init__(self, vid=0x0B1B, pid=0x0E03, bus=1, address=5, interfaces=None):
        interfaces = interfaces if interfaces is not None else [
            FakeInterface(0, 7, [FakeEndpoint(0x02), FakeEndpoint(0x81)]),
        ]
        super().__init__([interfaces])
        self.idVendor = vid
        self.idProduct = pid
        self.bus = bus
        self.address = address
        self.iSerialNumber = 0
        self.iManufacturer = 0
        self.iProduct = 0
        self.kernel_driver = True
        self.calls = []
        self.write_error = None

    def set_configuration(self, value):
        self.calls.append(("set_configuration", value))

    def set_interface_altsetting(self, interface, alternate_setting):
        self.calls.append(("set_interface_altsetting", interface, alternate_setting))

    def ctrl_transfer(self, request_type, request, value, index, payload, timeout):
        self.calls.append(("ctrl_transfer", request_type, request, value, index))
        return 0

    def write(self, endpoint, data, timeout):
        if self.write_error is not None:
            raise self.write_error
        self.calls.append(("write", endpoint, bytes(data), timeout))
        return len(data)

    def is_kernel_driver_active(self, interface):
        return self.kernel_driver

    def detach_kernel_driver(self, interface):
        self.kernel_driver = False
        self.calls.append(("detach_kernel_driver", interface))

    def attach_kernel_driver(self, interface):
        self.kernel_driver = True
        self.calls.append(("attach_kernel_driver", interface))


@pytest.fixture
def pyusb_host():
    host = PyUsbHost(hotplug_interval=0, read_strings=False)
    yield host
    host.shutdown()


def _handle(dev):
    return PyUsbHandle(dev, describe_device(dev, read_strings=False))


def test_describe_device():
    dev = FakeRawDevice(interfaces=[
        FakeInterface(0, 7, [FakeEndpoint(0x01), FakeEndpoint(0x82)]),
        FakeInterface(0, 7, [FakeEndpoint(0x03)], alt=1),
        FakeInterface(1, 3, [FakeEndpoint(0x83, attributes=0x03)]),
    ])
    descriptor = describe_device(dev, read_strings=False)
    assert descriptor.vendor_id == 0x0B1B
    assert descriptor.device_name == "/dev/bus/usb/001/005"
    assert descriptor.serial_number is None
    assert [i.number for i in descriptor.interfaces] == [0, 1]
    first = descriptor.interfaces[0]
    assert [ep.address for ep in first.endpoints] == [0x01, 0x82]
    assert first.endpoints[0].is_bulk_out
    assert not descriptor.interfaces[1].endpoints[0].is_bulk_in


def test_standard_requests_go_through_pyusb(pyusb_host):
    dev = FakeRawDevice()
    handle = _handle(dev)
    assert pyusb_host.control_transfer(handle, USB_RECIP_DEVICE, USB_REQUEST_SET_CONFIGURATION, 1, 0) == 0
    assert pyusb_host.control_transfer(handle, USB_RECIP_INTERFACE, USB_REQUEST_SET_INTERFACE, 0, 2) == 0
    assert dev.calls == [("set_configuration", 1), ("set_interface_altsetting", 2, 0)]


def test_bulk_transfer_maps_usb_errors(pyusb_host):
    dev = FakeRawDevice()
    handle = _handle(dev)
    assert pyusb_host.bulk_transfer(handle, 0x02, b"\x1b@", 2, 3000) == 2
    dev.write_error = usb_core.USBError("No such device", error_code=ERROR_NO_DEVICE)
    assert pyusb_host.bulk_transfer(handle, 0x02, b"x") == ERROR_NO_DEVICE
    dev.write_error = usb_core.USBError("Input/Output Error")
    assert pyusb_host.bulk_transfer(handle, 0x02, b"x") == ERROR_IO


def test_claim_detaches_and_release_reattaches_kernel_driver(pyusb_host, monkeypatch):
    claimed = []
    monkeypatch.setattr(usb.util, "claim_interface", lambda dev, intf: claimed.append(intf))
    monkeypatch.setattr(usb.util, "release_interface", lambda dev, intf: claimed.remove(intf))
    dev = FakeRawDevice()
    handle = _handle(dev)
    assert pyusb_host.claim_interface(handle, 0, True) is True
    assert claimed == [0]
    assert handle.detached == {0}
    assert pyusb_host.release_interface(handle, 0) is True
    assert claimed == []
    assert dev.calls == [("detach_kernel_driver", 0), ("attach_kernel_driver", 0)]


def test_failed_claim_returns_false(pyusb_host, monkeypatch):
    def busy(dev, intf):
        raise usb_core.USBError("Resource busy", error_code=-6)
    monkeypatch.setattr(usb.util, "claim_interface", busy)
    assert pyusb_host.claim_interface(_handle(FakeRawDevice()), 0, False) is False


def test_hotplug_monitor_reports_changes(pyusb_host, monkeypatch):
    printer = FakeRawDevice()
    keyboard = FakeRawDevice(vid=0x046D, pid=0xC52B, address=9)
    bus = {"/dev/bus/usb/001/009": keyboard}
    monkeypatch.setattr(pyusb_host, "enumerate_raw", lambda: dict(bus))
    events = []
    pyusb_host.add_listener(events.append)

    monitor = HotplugMonitor(pyusb_host, interval=60)
    monitor.poll_once()
    assert events == []

    bus["/dev/bus/usb/001/005"] = printer
    monitor.poll_once()
    assert [(e.kind, e.device.vendor_id) for e in events] == [(HostEventKind.DEVICE_ATTACHED, 0x0B1B)]

    del bus["/dev/bus/usb/001/005"]
    monitor.poll_once()
    assert events[-1].kind is HostEventKind.DEVICE_DETACHED
    assert events[-1].device.device_name == "/dev/bus/usb/001/005"
