"""NMT 网络管理：启动/停止/复位命令，只发送不等待应答。"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Optional

import can
from canopen.nmt import NMT_COMMANDS

from . import cia402
from .errors import Cancelled, Result, TransportError
from .polling import settle

log = logging.getLogger(__name__)


class LifecycleCommand(enum.IntEnum):
    START = NMT_COMMANDS["OPERATIONAL"]
    STOP = NMT_COMMANDS["STOPPED"]
    PRE_OPERATIONAL = NMT_COMMANDS["PRE-OPERATIONAL"]
    RESET = NMT_COMMANDS["RESET"]
    RESET_COMMUNICATION = NMT_COMMANDS["RESET COMMUNICATION"]


@dataclass(slots=True)
class StartupDelays:
    """Fixed settle times the drive firmware needs after each command."""

    after_stop_s: float = 0.2
    after_reset_s: float = 1.0
    after_start_s: float = 1.0
    after_check_s: float = 0.5


class NetworkController:
    def __init__(
        self,
        bus: can.BusABC,
        *,
        delays: Optional[StartupDelays] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.bus = bus
        self.delays = delays or StartupDelays()
        self.stop_event = stop_event

    def send_lifecycle(self, command: LifecycleCommand, target: int = cia402.BROADCAST) -> Result[None]:
        if target != cia402.BROADCAST and not cia402.MIN_NODE_ID <= target <= cia402.MAX_NODE_ID:
            raise ValueError(f"NMT target out of range: {target}")
        command = LifecycleCommand(command)
        msg = can.Message(
            arbitration_id=cia402.NMT_COB_ID,
            data=bytes([command.value, target]),
            is_extended_id=False,
        )
        try:
            self.bus.send(msg)
        except can.CanError as exc:
            log.error("NMT %s -> 0x%02X send failed: %s", command.name, target, exc)
            return Result.failure(TransportError(f"NMT send failed: {exc}"))
        log.debug("NMT %s -> 0x%02X", command.name, target)
        return Result.success()

    def startup(self, node_id: int = cia402.BROADCAST) -> Result[None]:
        """Stop -> Reset communication -> Start, with a settle delay after each."""
        log.info("Node 0x%02X: NMT startup sequence", node_id)
        steps = (
            (LifecycleCommand.STOP, self.delays.after_stop_s),
            (LifecycleCommand.RESET_COMMUNICATION, self.delays.after_reset_s),
            (LifecycleCommand.START, self.delays.after_start_s),
        )
        for command, delay in steps:
            result = self.send_lifecycle(command, node_id)
            if not result.ok:
                return result
            if not settle(delay, self.stop_event):
                return Result.failure(Cancelled("NMT startup interrupted"))
        return Result.success()

    def check_connection(self) -> Result[None]:
        """Broadcast Start; a failed send means the channel is unusable."""
        result = self.send_lifecycle(LifecycleCommand.START, cia402.BROADCAST)
        if not result.ok:
            return result
        if not settle(self.delays.after_check_s, self.stop_event):
            return Result.failure(Cancelled("connection check interrupted"))
        log.info("CAN connection normal")
        return Result.success()
