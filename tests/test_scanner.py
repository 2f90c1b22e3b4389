import threading

import can
import pytest

from canopen_pp.errors import TransportError
from canopen_pp.scanner import DeviceRecord, DeviceScanner
from canopen_pp.sdo_master import SdoMaster

from .conftest import FakeBus, SimulatedDrive

FAST = {"per_node_timeout": 0.01, "inter_probe_delay": 0.0}


def _scanner(*drives, stop_event=None):
    bus = FakeBus(*drives)
    master = SdoMaster(bus, timeout=0.05, poll_slice=0.002, stop_event=stop_event)
    return bus, DeviceScanner(master)


def test_single_motor_found():
    bus, scanner = _scanner(SimulatedDrive(node_id=3, device_type=0x00020192))
    found = list(scanner.scan(1, 5, **FAST))
    assert found == [DeviceRecord(3, 0x00020192)]
    assert found[0].profile == 0x0192
    assert [m.arbitration_id for m in bus.sent] == [0x601, 0x602, 0x603, 0x604, 0x605]


def test_non_motor_device_type_excluded():
    _, scanner = _scanner(
        SimulatedDrive(node_id=1, device_type=0x00000191),
        SimulatedDrive(node_id=2, device_type=0x00020195),
    )
    assert [r.node_id for r in scanner.scan(1, 3, **FAST)] == [2]


def test_scan_is_lazy_and_restartable():
    bus, scanner = _scanner(SimulatedDrive(node_id=2))
    scan = scanner.scan(1, 3, **FAST)
    assert bus.sent == []
    first = list(scan)
    second = list(scan)
    assert first == second == [DeviceRecord(2, 0x00020192)]
    assert len(bus.sent) == 6


def test_empty_scan_is_not_an_error():
    _, scanner = _scanner()
    assert list(scanner.scan(1, 3, **FAST)) == []


def test_stop_flag_ends_scan():
    stop = threading.Event()
    stop.set()
    bus, scanner = _scanner(SimulatedDrive(node_id=1), stop_event=stop)
    assert list(scanner.scan(1, 10, **FAST)) == []
    assert bus.sent == []


@pytest.mark.parametrize("first, last", [(0, 5), (1, 128), (6, 5)])
def test_bad_range(first, last):
    _, scanner = _scanner()
    with pytest.raises(ValueError):
        scanner.scan(first, last)


def test_find_motor_and_default():
    _, scanner = _scanner(SimulatedDrive(node_id=4))
    assert scanner.find_motor(1, 5, default=2, **FAST).value == 4
    _, empty = _scanner()
    assert empty.find_motor(1, 3, default=2, **FAST).value == 2


def test_read_node_info():
    drive = SimulatedDrive(node_id=2)
    drive.enable()
    drive.objects[(0x6061, 0)] = 1
    _, scanner = _scanner(drive)
    info = scanner.read_node_info(2, timeout=0.05)
    assert info.responded and info.is_motor
    assert info.device_type == 0x00020192
    assert info.vendor_id == 0x5A65726F
    assert info.vendor_name == "ZeroErr Control"
    assert info.serial_number == 0xCAFE
    assert info.control_word == 0x0F
    assert info.status_word & 0x6F == 0x27
    assert info.missing == []


def test_read_node_info_partial():
    drive = SimulatedDrive(node_id=2)
    drive.aborts[(0x1018, 4)] = 0x06020000
    _, scanner = _scanner(drive)
    info = scanner.read_node_info(2, timeout=0.05)
    assert info.responded
    assert info.serial_number is None
    assert info.missing == ["serial_number"]


def test_read_node_info_silent_node():
    _, scanner = _scanner()
    info = scanner.read_node_info(9, timeout=0.01)
    assert not info.responded
    assert not info.is_motor
    assert info.vendor_name == "unknown"
    assert "device_type" in info.missing and "operation_mode" in info.missing


def test_dead_channel_ends_scan_with_error():
    bus, scanner = _scanner(SimulatedDrive(node_id=3))
    bus.send_error = can.CanOperationError("bus off")
    scan = scanner.scan(1, 5, **FAST)
    assert list(scan) == []
    assert isinstance(scan.error, TransportError)
    assert bus.attempts == 1


def test_scan_error_cleared_on_next_iteration():
    bus, scanner = _scanner(SimulatedDrive(node_id=3))
    scan = scanner.scan(1, 5, **FAST)
    bus.send_error = can.CanOperationError("bus off")
    list(scan)
    bus.send_error = None
    assert [r.node_id for r in scan] == [3]
    assert scan.error is None


def test_silent_nodes_are_skipped_not_errors():
    drive = SimulatedDrive(node_id=4)
    drive.aborts[(0x1000, 0)] = 0x06020000
    _, scanner = _scanner(drive, SimulatedDrive(node_id=5))
    scan = scanner.scan(1, 5, **FAST)
    assert [r.node_id for r in scan] == [5]
    assert scan.error is None


def test_find_motor_reports_dead_channel():
    bus, scanner = _scanner(SimulatedDrive(node_id=3))
    bus.send_error = can.CanOperationError("bus off")
    result = scanner.find_motor(1, 5, default=2, **FAST)
    assert isinstance(result.error, TransportError)
    assert result.value is None


def test_read_node_info_dead_channel():
    bus, scanner = _scanner(SimulatedDrive(node_id=2))
    bus.send_error = can.CanOperationError("bus off")
    info = scanner.read_node_info(2, timeout=0.05)
    assert isinstance(info.error, TransportError)
    assert not info.responded
    assert len(info.missing) == 9
    assert bus.attempts == 1
