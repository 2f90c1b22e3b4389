"""CANopen 电机节点扫描：逐个节点读取 0x1000 设备类型并与 CiA402 白名单比对。"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterator, Optional

from . import cia402
from .errors import Result, TransportError
from .polling import settle
from .sdo_master import SdoMaster, check_node_id

log = logging.getLogger(__name__)

QUICK_TIMEOUT_S = 0.2
DETAIL_TIMEOUT_S = 1.0
INTER_PROBE_DELAY_S = 0.05


@dataclass(frozen=True, slots=True)
class DeviceRecord:
    node_id: int
    device_type: int

    @property
    def profile(self) -> int:
        """Device profile number (low 16 bits), 0x0192 = CiA402."""
        return self.device_type & 0xFFFF


@dataclass(slots=True)
class NodeInfo:
    node_id: int
    device_type: Optional[int] = None
    error_register: Optional[int] = None
    vendor_id: Optional[int] = None
    product_code: Optional[int] = None
    revision: Optional[int] = None
    serial_number: Optional[int] = None
    control_word: Optional[int] = None
    status_word: Optional[int] = None
    operation_mode: Optional[int] = None
    missing: list[str] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def responded(self) -> bool:
        return self.device_type is not None

    @property
    def is_motor(self) -> bool:
        return self.device_type is not None and (self.device_type & 0xFFFF) in (0x92, 0x0192)

    @property
    def vendor_name(self) -> str:
        if self.vendor_id is None:
            return "unknown"
        return cia402.VENDOR_NAMES.get(self.vendor_id, "unknown")


class DeviceScan:
    """Lazy probe over an id range; every iteration probes the bus again.

    A transport failure ends the iteration and is kept in ``error``.
    """

    def __init__(
        self,
        scanner: "DeviceScanner",
        first: int,
        last: int,
        per_node_timeout: float,
        inter_probe_delay: float,
    ) -> None:
        self._scanner = scanner
        self.first = first
        self.last = last
        self.per_node_timeout = per_node_timeout
        self.inter_probe_delay = inter_probe_delay
        self.error: Optional[BaseException] = None

    def __iter__(self) -> Iterator[DeviceRecord]:
        master = self._scanner.master
        stop_event = master.stop_event
        self.error = None
        for node_id in range(self.first, self.last + 1):
            if stop_event is not None and stop_event.is_set():
                log.info("Scan interrupted before node %d", node_id)
                return
            result = self._scanner.probe(node_id, self.per_node_timeout)
            if not result.ok:
                self.error = result.error
                log.error("Scan aborted at node %d: %s", node_id, result.error)
                return
            if result.value is not None:
                yield result.value
            if node_id < self.last and not settle(self.inter_probe_delay, stop_event):
                log.info("Scan interrupted after node %d", node_id)
                return


class DeviceScanner:
    def __init__(
        self,
        master: SdoMaster,
        motor_types: FrozenSet[int] = cia402.MOTOR_DEVICE_TYPES,
    ) -> None:
        self.master = master
        self.motor_types = motor_types

    def probe(self, node_id: int, timeout: float = QUICK_TIMEOUT_S) -> Result[Optional[DeviceRecord]]:
        """Identity read of one node; a record only for whitelisted motor types.

        A silent or aborting node gives an empty result, a transport failure
        an error.
        """
        result = self.master.read(node_id, cia402.DEVICE_TYPE, 0, timeout=timeout)
        if isinstance(result.error, TransportError):
            return Result.failure(result.error)
        if not result.ok:
            log.debug("Node 0x%02X: no identity response (%s)", node_id, result.error)
            return Result.success(None)
        device_type = int(result.value or 0)
        if device_type not in self.motor_types:
            log.info("Node 0x%02X: device type 0x%08X is not a CiA402 motor", node_id, device_type)
            return Result.success(None)
        log.info("Node 0x%02X: CiA402 motor found (0x%08X)", node_id, device_type)
        return Result.success(DeviceRecord(node_id, device_type))

    def scan(
        self,
        first: int = 1,
        last: int = 20,
        *,
        per_node_timeout: float = QUICK_TIMEOUT_S,
        inter_probe_delay: float = INTER_PROBE_DELAY_S,
    ) -> DeviceScan:
        check_node_id(first)
        check_node_id(last)
        if first > last:
            raise ValueError(f"empty scan range {first}..{last}")
        return DeviceScan(self, first, last, per_node_timeout, inter_probe_delay)

    def find_motor(self, first: int = 1, last: int = 20, default: Optional[int] = None,
                   **kwargs) -> Result[Optional[int]]:
        """First motor node in the range, or ``default`` when none answers."""
        scan = self.scan(first, last, **kwargs)
        for record in scan:
            return Result.success(record.node_id)
        if scan.error is not None:
            return Result.failure(scan.error)
        log.warning("No motor found in %d..%d, using default node id %s", first, last, default)
        return Result.success(default)

    def read_node_info(self, node_id: int, timeout: float = DETAIL_TIMEOUT_S) -> NodeInfo:
        """Read identity and CiA402 state objects; each read may fail on its own."""
        info = NodeInfo(node_id)
        fields = (
            ("device_type", cia402.DEVICE_TYPE, 0),
            ("error_register", cia402.ERROR_REGISTER, 0),
            ("vendor_id", cia402.IDENTITY_OBJECT, cia402.VENDOR_ID),
            ("product_code", cia402.IDENTITY_OBJECT, cia402.PRODUCT_CODE),
            ("revision", cia402.IDENTITY_OBJECT, cia402.REVISION_NUMBER),
            ("serial_number", cia402.IDENTITY_OBJECT, cia402.SERIAL_NUMBER),
            ("control_word", cia402.CONTROLWORD, 0),
            ("status_word", cia402.STATUSWORD, 0),
            ("operation_mode", cia402.MODES_OF_OPERATION, 0),
        )
        masks = {"error_register": 0xFF, "control_word": 0xFFFF, "status_word": 0xFFFF,
                 "operation_mode": 0xFF}
        for position, (name, index, subindex) in enumerate(fields):
            result = self.master.read(node_id, index, subindex, timeout=timeout)
            if isinstance(result.error, TransportError):
                log.error("Node 0x%02X: node info read aborted: %s", node_id, result.error)
                info.error = result.error
                info.missing.extend(f[0] for f in fields[position:])
                break
            if result.ok:
                setattr(info, name, int(result.value or 0) & masks.get(name, 0xFFFFFFFF))
            else:
                info.missing.append(name)
                log.debug("Node 0x%02X: %s (0x%04X:%d) unavailable: %s",
                          node_id, name, index, subindex, result.error)
            if name == "device_type" and not result.ok:
                # 设备无响应时其余对象不再读取
                info.missing.extend(f[0] for f in fields[1:])
                break
        return info
