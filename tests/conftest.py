from __future__ import annotations

import collections
import struct
import time
from typing import Callable, Iterable, List, Optional

import can
import pytest

from canopen_pp.motor_controller import PPConfig
from canopen_pp.sdo_master import SdoMaster

SDO_HEADER = struct.Struct("<BHB")


def sdo_frame(node_id: int, command: int, index: int, subindex: int, value: int = 0) -> can.Message:
    data = SDO_HEADER.pack(command, index, subindex) + struct.pack("<I", value & 0xFFFFFFFF)
    return can.Message(arbitration_id=0x580 + node_id, data=data, is_extended_id=False)


class FakeBus:
    """In-memory stand-in for a python-can bus; devices answer synchronously."""

    def __init__(self, *devices) -> None:
        self.devices = list(devices)
        self.sent: List[can.Message] = []
        self.attempts = 0
        self.rx: collections.deque = collections.deque()
        self.replies: List[can.Message] = []
        self.send_error: Optional[Exception] = None
        self.recv_error: Optional[Exception] = None

    def send(self, msg: can.Message, timeout: Optional[float] = None) -> None:
        self.attempts += 1
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(msg)
        self.rx.extend(self.replies)
        self.replies.clear()
        for device in self.devices:
            self.rx.extend(device(msg))

    def recv(self, timeout: Optional[float] = None) -> Optional[can.Message]:
        if self.recv_error is not None:
            raise self.recv_error
        if self.rx:
            return self.rx.popleft()
        if timeout:
            time.sleep(timeout)
        return None

    def inject(self, msg: can.Message) -> None:
        """Frame already waiting in the receive queue."""
        self.rx.append(msg)

    def respond(self, *msgs: can.Message) -> None:
        """Frames delivered right after the next send."""
        self.replies.extend(msgs)

    def shutdown(self) -> None:
        pass

    def requests(self, node_id: int) -> List[bytes]:
        return [bytes(m.data) for m in self.sent if m.arbitration_id == 0x600 + node_id]


class SimulatedDrive:
    """Minimal CiA402 drive answering expedited SDO requests."""

    def __init__(self, node_id: int = 2, device_type: int = 0x00020192, position: int = 0) -> None:
        self.node_id = node_id
        self.objects = {
            (0x1000, 0): device_type,
            (0x1001, 0): 0,
            (0x1018, 1): 0x5A65726F,
            (0x1018, 2): 0x00001234,
            (0x1018, 3): 0x00010005,
            (0x1018, 4): 0x0000CAFE,
            (0x6040, 0): 0,
            (0x6060, 0): 0,
            (0x6061, 0): 0,
            (0x6064, 0): position & 0xFFFFFFFF,
            (0x607A, 0): 0,
            (0x6081, 0): 0,
            (0x6083, 0): 0,
            (0x6084, 0): 0,
        }
        self.state = 0x40
        self.ack = False
        self.ack_delay = 0
        self.never_ack = False
        self.sticky_ack = False
        self.frozen_state = False
        self.on_controlword: Optional[Callable[[int], None]] = None
        self.aborts: dict = {}
        self.muted: list = []
        self.writes: list = []
        self._arming = False
        self._countdown = 0

    # ---- knobs ----
    def mute(self, index: int, subindex: int = 0, value: Optional[int] = None) -> None:
        self.muted.append((index, subindex, value))

    def enable(self) -> None:
        self.state = 0x27
        self.objects[(0x6040, 0)] = 0x0F

    def controlword_writes(self) -> List[int]:
        return [value for index, _, value in self.writes if index == 0x6040]

    @property
    def position(self) -> int:
        value = self.objects[(0x6064, 0)]
        return value - (1 << 32) if value & 0x80000000 else value

    # ---- protocol ----
    def __call__(self, msg: can.Message) -> Iterable[can.Message]:
        if msg.arbitration_id != 0x600 + self.node_id:
            return []
        data = bytes(msg.data)
        command, index, subindex = SDO_HEADER.unpack_from(data)
        (value,) = struct.unpack_from("<I", data, 4)
        key = (index, subindex)
        is_write = command & 0xE0 == 0x20
        if is_write:
            size = 4 - ((command >> 2) & 0x3)
            value &= (1 << (8 * size)) - 1
        for m_index, m_sub, m_value in self.muted:
            if (m_index, m_sub) == key and (m_value is None or (is_write and m_value == value)):
                return []
        if key in self.aborts:
            return [sdo_frame(self.node_id, 0x80, index, subindex, self.aborts[key])]
        if command == 0x40:
            if key == (0x6041, 0):
                return [sdo_frame(self.node_id, 0x4B, index, subindex, self._statusword())]
            if key not in self.objects:
                return [sdo_frame(self.node_id, 0x80, index, subindex, 0x06020000)]
            return [sdo_frame(self.node_id, 0x43, index, subindex, self.objects[key])]
        if is_write:
            self.writes.append((index, subindex, value))
            self._store(key, value)
            return [sdo_frame(self.node_id, 0x60, index, subindex, 0)]
        return []

    def _store(self, key, value: int) -> None:
        self.objects[key] = value
        if key == (0x6060, 0):
            self.objects[(0x6061, 0)] = value
        elif key == (0x6040, 0):
            self._controlword(value)

    def _controlword(self, value: int) -> None:
        if self.on_controlword is not None:
            self.on_controlword(value)
        if not self.frozen_state:
            self._power_state(value)

        if value & 0x10:
            if not self.ack and not self._arming and self.state == 0x27 and not self.never_ack:
                self._arming = True
                self._countdown = self.ack_delay
        else:
            self._arming = False
            if not self.sticky_ack:
                self.ack = False

    def _power_state(self, value: int) -> None:
        if value & 0x80:
            self.state = 0x40
        elif value & 0x0F == 0x0F:
            self.state = 0x27
        elif value & 0x0F == 0x07:
            self.state = 0x23
        elif value & 0x0F == 0x06:
            self.state = 0x21
        elif value & 0x07 == 0x02:
            self.state = 0x07

    def _statusword(self) -> int:
        if self._arming:
            if self._countdown > 0:
                self._countdown -= 1
            else:
                self._arming = False
                self.ack = True
                self.objects[(0x6064, 0)] = self.objects[(0x607A, 0)]
        status = self.state | 0x0210
        if self.ack:
            status |= 0x1000
        if not self._arming:
            status |= 0x0400
        return status


@pytest.fixture
def drive() -> SimulatedDrive:
    return SimulatedDrive(node_id=2)


@pytest.fixture
def bus(drive: SimulatedDrive) -> FakeBus:
    return FakeBus(drive)


@pytest.fixture
def master(bus: FakeBus) -> SdoMaster:
    return SdoMaster(bus, timeout=0.05, poll_slice=0.005)


@pytest.fixture
def fast_config() -> PPConfig:
    return PPConfig(
        node_id=2,
        eds_path=None,
        poll_interval_s=0.005,
        poll_retries=10,
        settle_s=0.0,
        step_delay_s=0.0,
        fault_reset_delay_s=0.0,
        state_timeout_s=0.1,
    )
