"""SDO 加速传输主站：单帧请求/响应，按 COB-ID 关联响应并解码。

每次 read/write 都是一次完整的阻塞事务：先丢弃总线上残留的旧帧，发送请求帧后以 10 ms 为粒度轮询总线，
直到收到匹配的响应、设备返回中止码或超过请求期限。主站内部不做重试。
"""

from __future__ import annotations

import enum
import logging
import struct
import threading
import time
from dataclasses import dataclass
from typing import Optional

import can
from canopen.sdo import constants as sdo_const

from . import cia402
from .errors import Cancelled, ResponseTimeout, Result, SdoAbortedError, TransportError
from .od_catalog import ObjectDictionaryCatalog
from .polling import poll_until

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 1.0
DEFAULT_POLL_SLICE_S = 0.01

_RESPONSE_MASK = 0xE0
_VALUE = struct.Struct("<I")
_DRAIN_LIMIT = 256


class Direction(enum.Enum):
    READ = "read"
    WRITE = "write"


def download_command(width: int) -> int:
    """Command byte of an expedited, size-specified download.

    1 -> 0x2F, 2 -> 0x2B, 4 (and any other width) -> 0x23.
    """
    if width not in (1, 2):
        width = 4
    unused = 4 - width
    return sdo_const.REQUEST_DOWNLOAD | (unused << 2) | sdo_const.EXPEDITED | sdo_const.SIZE_SPECIFIED


def check_node_id(node_id: int) -> None:
    if not cia402.MIN_NODE_ID <= node_id <= cia402.MAX_NODE_ID:
        raise ValueError(f"节点编号超出范围 1..0x7F: {node_id}")


@dataclass(slots=True)
class SdoTransaction:
    """One request/response exchange; lives only for the duration of a call."""

    node_id: int
    index: int
    subindex: int
    direction: Direction
    payload: bytes = b""
    deadline: float = 0.0

    @property
    def request_id(self) -> int:
        return cia402.SDO_REQUEST_BASE + self.node_id

    @property
    def response_id(self) -> int:
        return cia402.SDO_RESPONSE_BASE + self.node_id

    def request_data(self) -> bytes:
        if self.direction is Direction.WRITE:
            command = download_command(len(self.payload))
            body = self.payload.ljust(4, b"\x00")
        else:
            command = sdo_const.REQUEST_UPLOAD
            body = bytes(4)
        return sdo_const.SDO_STRUCT.pack(command, self.index, self.subindex) + body

    def request_frame(self) -> can.Message:
        return can.Message(
            arbitration_id=self.request_id,
            data=self.request_data(),
            is_extended_id=False,
        )

    def decode(self, msg: can.Message) -> Optional[Result[int]]:
        """Result for a matching response frame, None for anything else."""
        if msg.arbitration_id != self.response_id or msg.is_extended_id:
            return None
        if getattr(msg, "is_error_frame", False) or getattr(msg, "is_remote_frame", False):
            return None
        data = bytes(msg.data)
        if len(data) < 8:
            return None
        command, index, subindex = sdo_const.SDO_STRUCT.unpack_from(data)
        (value,) = _VALUE.unpack_from(data, 4)
        kind = command & _RESPONSE_MASK

        if (index, subindex) != (self.index, self.subindex):
            return None
        if kind == sdo_const.RESPONSE_ABORTED:
            return Result.failure(SdoAbortedError(value))
        if kind == sdo_const.RESPONSE_UPLOAD and self.direction is Direction.READ:
            return Result.success(value)
        if kind == sdo_const.RESPONSE_DOWNLOAD and self.direction is Direction.WRITE:
            return Result.success(None)
        return None


class SdoMaster:
    """Expedited SDO client bound to one CAN channel.

    The node id is passed on every call; the master keeps no per-node state.
    Only one transaction is in flight at a time.
    """

    def __init__(
        self,
        bus: can.BusABC,
        catalog: Optional[ObjectDictionaryCatalog] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_S,
        poll_slice: float = DEFAULT_POLL_SLICE_S,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.bus = bus
        self.catalog = catalog if catalog is not None else ObjectDictionaryCatalog()
        self.timeout = timeout
        self.poll_slice = poll_slice
        self.stop_event = stop_event

    # ---------------- 公共接口 -----------------
    def write(
        self,
        node_id: int,
        index: int,
        subindex: int,
        value: int,
        *,
        timeout: Optional[float] = None,
    ) -> Result[None]:
        check_node_id(node_id)
        width = self.catalog.width_of(index, subindex)
        size = width if width in (1, 2) else 4
        payload = (int(value) & ((1 << (8 * size)) - 1)).to_bytes(size, "little")
        log.debug(
            "Node 0x%02X: SDO write 0x%04X:%02X = 0x%08X (%d bytes)",
            node_id,
            index,
            subindex,
            int(value) & 0xFFFFFFFF,
            size,
        )
        txn = SdoTransaction(node_id, index, subindex, Direction.WRITE, payload)
        result = self._transfer(txn, timeout)
        if result.ok:
            return Result.success(None)
        return Result.failure(result.error)  # type: ignore[arg-type]

    def read(
        self,
        node_id: int,
        index: int,
        subindex: int = 0,
        *,
        timeout: Optional[float] = None,
    ) -> Result[int]:
        check_node_id(node_id)
        log.debug("Node 0x%02X: SDO read 0x%04X:%02X", node_id, index, subindex)
        txn = SdoTransaction(node_id, index, subindex, Direction.READ)
        result = self._transfer(txn, timeout)
        if result.ok:
            log.debug(
                "Node 0x%02X: SDO read 0x%04X:%02X -> 0x%08X",
                node_id,
                index,
                subindex,
                result.value,
            )
        return result

    def read_signed(self, node_id: int, index: int, subindex: int = 0, *, bits: int = 32,
                    timeout: Optional[float] = None) -> Result[int]:
        result = self.read(node_id, index, subindex, timeout=timeout)
        if not result.ok:
            return result
        return Result.success(cia402.to_signed(result.value or 0, bits))

    # ---------------- 事务处理 -----------------
    def _drain(self, txn: SdoTransaction) -> Optional[TransportError]:
        """Drop frames left over from earlier requests before a new one goes out."""
        for _ in range(_DRAIN_LIMIT):
            try:
                msg = self.bus.recv(timeout=0)
            except can.CanError as exc:
                log.error("Node 0x%02X: receive failed: %s", txn.node_id, exc)
                return TransportError(f"receive failed: {exc}")
            if msg is None:
                break
            log.debug("Node 0x%02X: discarded pending frame 0x%03X", txn.node_id, msg.arbitration_id)
        return None

    def _transfer(self, txn: SdoTransaction, timeout: Optional[float]) -> Result[int]:
        if self.stop_event is not None and self.stop_event.is_set():
            return Result.failure(Cancelled(
                f"Node 0x{txn.node_id:02X}: SDO 0x{txn.index:04X}:{txn.subindex:02X} not sent, stop requested"
            ))
        error = self._drain(txn)
        if error is not None:
            return Result.failure(error)

        limit = self.timeout if timeout is None else timeout
        txn.deadline = time.monotonic() + limit
        try:
            self.bus.send(txn.request_frame())
        except can.CanError as exc:
            log.error("Node 0x%02X: SDO request 0x%04X:%02X send failed: %s",
                      txn.node_id, txn.index, txn.subindex, exc)
            return Result.failure(TransportError(f"send failed: {exc}"))

        def receive(remaining: float) -> Optional[Result[int]]:
            try:
                msg = self.bus.recv(timeout=min(self.poll_slice, remaining))
            except can.CanError as exc:
                return Result.failure(TransportError(f"receive failed: {exc}"))
            if msg is None:
                return None
            return txn.decode(msg)

        outcome = poll_until(receive, limit, stop_event=self.stop_event)
        if outcome.value is not None:
            result = outcome.value
            if isinstance(result.error, SdoAbortedError):
                log.warning(
                    "Node 0x%02X: SDO %s 0x%04X:%02X aborted (%s)",
                    txn.node_id,
                    txn.direction.value,
                    txn.index,
                    txn.subindex,
                    result.error,
                )
            return result
        if outcome.cancelled:
            return Result.failure(Cancelled(
                f"Node 0x{txn.node_id:02X}: SDO 0x{txn.index:04X}:{txn.subindex:02X} cancelled"
            ))
        log.debug("Node 0x%02X: SDO 0x%04X:%02X response timeout",
                  txn.node_id, txn.index, txn.subindex)
        return Result.failure(ResponseTimeout(
            f"Node 0x{txn.node_id:02X}: no SDO response for 0x{txn.index:04X}:{txn.subindex:02X}"
        ))
