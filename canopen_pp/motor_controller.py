"""基于 SDO 的 CiA-402 轮廓位置（PP）模式控制器。

封装驱动初始化、402 状态机使能、轮廓参数设置以及“立即更新”方式的目标位置下发
握手（控制字 bit4 / 状态字 bit12），全部通过 :class:`SdoMaster` 完成，不使用 PDO。
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from . import cia402
from .cia402 import ControlCommand
from .errors import Cancelled, RangeError, ResponseTimeout, Result, SdoAbortedError, TransportError
from .polling import poll_until, settle
from .sdo_master import SdoMaster, check_node_id

log = logging.getLogger(__name__)

PROFILE_STEP = 100
PROFILE_FLOOR = 100
DEFAULT_EDS_PATH = "ZeroErr Driver_V1.5.eds"


@dataclass(slots=True)
class PPConfig:
    """驱动初始化及运动握手使用的配置项。"""

    node_id: int = 2
    eds_path: Optional[str] = DEFAULT_EDS_PATH
    encoder_resolution: int = 524_288
    max_revolutions: int = 2
    profile_velocity: int = 5566
    profile_acceleration: int = 5566
    profile_deceleration: int = 5566
    poll_interval_s: float = 0.1
    poll_retries: int = 50
    state_poll_backoff: float = 2.0
    state_poll_max_interval_s: float = 0.2
    settle_s: float = 1.0
    step_delay_s: float = 0.5
    fault_reset_delay_s: float = 0.3
    min_motion_counts: int = 100
    clear_setpoint_on_timeout: bool = True
    confirm_state: bool = True
    state_timeout_s: float = 2.0

    @property
    def position_limit(self) -> int:
        return self.encoder_resolution * self.max_revolutions

    @property
    def handshake_timeout_s(self) -> float:
        return self.poll_retries * self.poll_interval_s


class MotionPhase(enum.Enum):
    IDLE = "idle"
    PARAMETERS_SENT = "parameters_sent"
    COMMAND_ASSERTED = "command_asserted"
    AWAITING_ACK = "awaiting_ack"
    ACK_RECEIVED = "ack_received"
    COMMAND_CLEARED = "command_cleared"
    AWAITING_READY = "awaiting_ready"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class MotionCommand:
    """One PP move; profile fields left as None keep the current profile."""

    target_position: int
    profile_velocity: Optional[int] = None
    profile_acceleration: Optional[int] = None
    profile_deceleration: Optional[int] = None


@dataclass(slots=True)
class MotionResult:
    command: MotionCommand
    phase: MotionPhase = MotionPhase.IDLE
    start_position: Optional[int] = None
    end_position: Optional[int] = None
    delta: Optional[int] = None
    ready_confirmed: bool = False
    warnings: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None
    history: List[MotionPhase] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.phase is MotionPhase.COMPLETE


@dataclass(frozen=True, slots=True)
class MotionStatus:
    status_word: int
    position: Optional[int]

    @property
    def target_reached(self) -> bool:
        return bool(self.status_word & cia402.SW_TARGET_REACHED)

    @property
    def fault(self) -> bool:
        return bool(self.status_word & cia402.StatusWord.FAULT)

    @property
    def flags(self) -> List[str]:
        return cia402.describe_status(self.status_word)


class ProfilePositionController:
    """CiA-402 轮廓位置模式的高层控制器封装（仅 SDO）。"""

    def __init__(
        self,
        master: SdoMaster,
        config: PPConfig,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        check_node_id(config.node_id)
        self.master = master
        self.cfg = config
        self.stop_event = stop_event if stop_event is not None else master.stop_event
        self.phase = MotionPhase.IDLE
        self.last_result: Optional[MotionResult] = None
        self._applied_profile: Optional[tuple[int, int, int]] = None

    # ---------------- 单位换算 -----------------
    def angle_to_counts(self, angle_deg: float) -> int:
        return int(angle_deg / 360.0 * self.cfg.encoder_resolution)

    def counts_to_angle(self, counts: int) -> float:
        return counts / self.cfg.encoder_resolution * 360.0

    def counts_to_turns(self, counts: int) -> float:
        return counts / self.cfg.encoder_resolution

    @property
    def position_limit(self) -> int:
        return self.cfg.position_limit

    # ---------------- SDO 访问 -----------------
    def _read(self, index: int, subindex: int = 0) -> Result[int]:
        return self.master.read(self.cfg.node_id, index, subindex)

    def _write(self, index: int, value: int, subindex: int = 0) -> Result[None]:
        return self.master.write(self.cfg.node_id, index, subindex, value)

    def _write_controlword(self, value: int) -> Result[None]:
        return self._write(cia402.CONTROLWORD, value & 0xFFFF)

    def get_statusword(self) -> Result[int]:
        result = self._read(cia402.STATUSWORD)
        if not result.ok:
            return result
        return Result.success(int(result.value or 0) & 0xFFFF)

    def get_position_counts(self) -> Result[int]:
        return self.master.read_signed(self.cfg.node_id, cia402.POSITION_ACTUAL_VALUE)

    def status(self) -> Result[MotionStatus]:
        status = self.get_statusword()
        if not status.ok:
            return Result.failure(status.error)  # type: ignore[arg-type]
        position = self.get_position_counts()
        return Result.success(MotionStatus(int(status.value or 0), position.value if position.ok else None))

    # ---------------- 驱动初始化流程 -----------------
    def initialise(self) -> Result[None]:
        """PP 模式、轮廓参数、清故障，然后依次 Shutdown / Switch On / Enable Operation。"""
        nid = self.cfg.node_id
        log.info("Node 0x%02X: initialising PP mode", nid)

        result = self._write(cia402.MODES_OF_OPERATION, cia402.OperationMode.PROFILE_POSITION)
        if not result.ok:
            log.error("Node 0x%02X: set profile position mode failed (%s)", nid, result.error)
            return result
        display = self._read(cia402.MODES_OF_OPERATION_DISPLAY)
        if not display.ok or (int(display.value or 0) & 0xFF) != cia402.OperationMode.PROFILE_POSITION:
            log.warning("Node 0x%02X: PP mode not confirmed", nid)

        result = self.set_profile(
            self.cfg.profile_velocity,
            self.cfg.profile_acceleration,
            self.cfg.profile_deceleration,
        )
        if not result.ok:
            return result

        result = self.clear_faults()
        if not result.ok:
            return result
        return self.enable_operation()

    def set_profile(self, velocity: int, acceleration: int, deceleration: int) -> Result[None]:
        for index, value in (
            (cia402.PROFILE_VELOCITY, velocity),
            (cia402.PROFILE_ACCELERATION, acceleration),
            (cia402.PROFILE_DECELERATION, deceleration),
        ):
            result = self._write(index, value)
            if not result.ok:
                log.error("Node 0x%02X: write profile 0x%04X failed (%s)", self.cfg.node_id, index, result.error)
                self._applied_profile = None
                return result
        self.cfg.profile_velocity = velocity
        self.cfg.profile_acceleration = acceleration
        self.cfg.profile_deceleration = deceleration
        self._applied_profile = (velocity, acceleration, deceleration)
        log.info(
            "Node 0x%02X: profile v=%d a=%d d=%d",
            self.cfg.node_id,
            velocity,
            acceleration,
            deceleration,
        )
        return Result.success()

    def adjust_profile(self, name: str, delta: int = PROFILE_STEP) -> Result[int]:
        """Step one profile parameter ('v', 'a' or 'd'); never below 100."""
        attrs = {"v": "profile_velocity", "a": "profile_acceleration", "d": "profile_deceleration"}
        if name not in attrs:
            raise ValueError(f"unknown profile parameter: {name!r}")
        values = {key: getattr(self.cfg, attr) for key, attr in attrs.items()}
        new_value = values[name] + delta
        if new_value < PROFILE_FLOOR:
            return Result.failure(RangeError(f"{attrs[name]} cannot be less than {PROFILE_FLOOR}"))
        values[name] = new_value
        result = self.set_profile(values["v"], values["a"], values["d"])
        if not result.ok:
            return Result.failure(result.error)  # type: ignore[arg-type]
        return Result.success(new_value)

    # ---------------- 402 状态机操作 -----------------
    def clear_faults(self) -> Result[None]:
        log.info("Node 0x%02X: clearing fault", self.cfg.node_id)
        result = self._write_controlword(ControlCommand.FAULT_RESET)
        if result.ok and not settle(self.cfg.fault_reset_delay_s, self.stop_event):
            return Result.failure(Cancelled("fault reset interrupted"))
        return result

    def _power_command(self, command: ControlCommand) -> Result[None]:
        nid = self.cfg.node_id
        result = self._write_controlword(command)
        if not result.ok:
            log.error("Node 0x%02X: control word 0x%02X (%s) failed: %s", nid, command, command.name, result.error)
            return result
        expected = cia402.EXPECTED_STATE.get(command)
        if self.cfg.confirm_state and expected is not None:
            reached = self._wait_status(
                lambda status: status & cia402.SW_STATE_MASK == expected,
                self.cfg.state_timeout_s,
                backoff=self.cfg.state_poll_backoff,
                max_interval=self.cfg.state_poll_max_interval_s,
                what=expected.name,
            )
            if not reached.ok:
                return Result.failure(reached.error)  # type: ignore[arg-type]
        if not settle(self.cfg.step_delay_s, self.stop_event):
            return Result.failure(Cancelled(f"{command.name} interrupted"))
        return Result.success()

    def enable_operation(self) -> Result[None]:
        """Shutdown -> Switch On -> Enable Operation; stops at the first failure."""
        log.info("Node 0x%02X: enable operation", self.cfg.node_id)
        for command in (ControlCommand.SHUTDOWN, ControlCommand.SWITCH_ON, ControlCommand.ENABLE_OPERATION):
            result = self._power_command(command)
            if not result.ok:
                return result
        return Result.success()

    def disable_operation(self) -> Result[None]:
        log.info("Node 0x%02X: disable operation", self.cfg.node_id)
        for command in (ControlCommand.SWITCH_ON, ControlCommand.SHUTDOWN):
            result = self._write_controlword(command)
            if not result.ok:
                return result
            if not settle(self.cfg.step_delay_s, self.stop_event):
                return Result.failure(Cancelled(f"{command.name} interrupted"))
        return Result.success()

    def quick_stop(self) -> Result[None]:
        log.info("Node 0x%02X: quick stop", self.cfg.node_id)
        return self._power_command(ControlCommand.QUICK_STOP)

    def stop(self) -> Result[None]:
        """Shutdown control word; used on exit and by the stop command."""
        log.info("Node 0x%02X: stop motor (shutdown)", self.cfg.node_id)
        return self._write_controlword(ControlCommand.SHUTDOWN)

    def _wait_status(self, predicate: Callable[[int], bool], timeout: float, *,
                     interval: Optional[float] = None, backoff: float = 1.0,
                     max_interval: Optional[float] = None, what: str = "status") -> Result[int]:
        last_abort: Optional[SdoAbortedError] = None

        def probe(_remaining: float) -> Optional[Result[int]]:
            nonlocal last_abort
            result = self.get_statusword()
            if not result.ok:
                # 超时或中止码视为未就绪，继续轮询；传输错误直接返回
                if isinstance(result.error, TransportError):
                    return result
                if isinstance(result.error, SdoAbortedError):
                    last_abort = result.error
                return None
            last_abort = None
            if predicate(int(result.value or 0)):
                return result
            return None

        outcome = poll_until(
            probe,
            timeout,
            self.cfg.poll_interval_s if interval is None else interval,
            backoff=backoff,
            max_interval=max_interval,
            stop_event=self.stop_event,
        )
        if outcome.value is not None:
            return outcome.value
        if outcome.cancelled:
            return Result.failure(Cancelled(f"Node 0x{self.cfg.node_id:02X}: wait for {what} cancelled"))
        if last_abort is not None:
            # 最后一次读取返回中止码时上报该中止码
            log.warning("Node 0x%02X: status wait for %s ended with abort (%s)",
                        self.cfg.node_id, what, last_abort)
            return Result.failure(last_abort)
        return Result.failure(ResponseTimeout(
            f"Node 0x{self.cfg.node_id:02X}: status wait for {what} timed out"
        ))

    # ---------------- 运动控制接口 -----------------
    def _enter(self, run: MotionResult, phase: MotionPhase) -> None:
        self.phase = phase
        run.phase = phase
        run.history.append(phase)
        log.debug("Node 0x%02X: motion phase -> %s", self.cfg.node_id, phase.value)

    def _fail(self, run: MotionResult, error: BaseException) -> MotionResult:
        run.error = error
        self._enter(run, MotionPhase.FAILED)
        log.error("Node 0x%02X: move to %d failed: %s", self.cfg.node_id, run.command.target_position, error)
        self.last_result = run
        return run

    def _apply_profile(self, command: MotionCommand) -> Result[None]:
        wanted = (
            command.profile_velocity if command.profile_velocity is not None else self.cfg.profile_velocity,
            command.profile_acceleration if command.profile_acceleration is not None else self.cfg.profile_acceleration,
            command.profile_deceleration if command.profile_deceleration is not None else self.cfg.profile_deceleration,
        )
        if wanted == self._applied_profile:
            return Result.success()
        return self.set_profile(*wanted)

    def move(self, command: Union[MotionCommand, int]) -> MotionResult:
        """Execute one move with the immediate-update set-point handshake."""
        if not isinstance(command, MotionCommand):
            command = MotionCommand(int(command))
        nid = self.cfg.node_id
        run = MotionResult(command=command)
        self._enter(run, MotionPhase.IDLE)

        target = command.target_position
        limit = self.position_limit
        if not -limit <= target <= limit:
            return self._fail(run, RangeError(
                f"target position {target} outside ±{limit} "
                f"({self.cfg.max_revolutions} revolutions)"
            ))
        log.info("Node 0x%02X: move to %d (%.2f turns)", nid, target, self.counts_to_turns(target))

        start = self.get_position_counts()
        if start.ok:
            run.start_position = start.value
        else:
            run.warnings.append(f"start position unavailable: {start.error}")

        applied = self._apply_profile(command)
        if not applied.ok:
            return self._fail(run, applied.error)  # type: ignore[arg-type]

        # 1. 目标位置
        result = self._write(cia402.TARGET_POSITION, target)
        if not result.ok:
            return self._fail(run, result.error)  # type: ignore[arg-type]
        self._enter(run, MotionPhase.PARAMETERS_SENT)

        # 2. 控制字 bit4=1（新设定点）
        current = self._read(cia402.CONTROLWORD)
        if not current.ok:
            return self._fail(run, current.error)  # type: ignore[arg-type]
        asserted = (int(current.value or 0) & 0xFFFF) | cia402.CW_NEW_SET_POINT
        released = asserted & ~cia402.CW_NEW_SET_POINT & 0xFFFF
        result = self._write_controlword(asserted)
        if not result.ok:
            return self._fail(run, result.error)  # type: ignore[arg-type]
        self._enter(run, MotionPhase.COMMAND_ASSERTED)

        # 3. 等待状态字 bit12=1（设定点已接收）
        self._enter(run, MotionPhase.AWAITING_ACK)
        ack = self._wait_status(
            lambda status: bool(status & cia402.SW_SET_POINT_ACK),
            self.cfg.handshake_timeout_s,
            what="set-point acknowledge",
        )
        if not ack.ok:
            if self.cfg.clear_setpoint_on_timeout:
                cleared = self._write_controlword(released)
                if not cleared.ok:
                    run.warnings.append(f"new set-point bit left asserted: {cleared.error}")
            return self._fail(run, ack.error)  # type: ignore[arg-type]
        self._enter(run, MotionPhase.ACK_RECEIVED)

        # 4. 控制字 bit4=0（释放设定点）
        result = self._write_controlword(released)
        if not result.ok:
            return self._fail(run, result.error)  # type: ignore[arg-type]
        self._enter(run, MotionPhase.COMMAND_CLEARED)

        # 5. 等待状态字 bit12=0（可接收新指令）
        self._enter(run, MotionPhase.AWAITING_READY)
        ready = self._wait_status(
            lambda status: not status & cia402.SW_SET_POINT_ACK,
            self.cfg.handshake_timeout_s,
            what="set-point ready",
        )
        if ready.ok:
            run.ready_confirmed = True
        elif isinstance(ready.error, ResponseTimeout):
            run.warnings.append("device not confirmed ready for a new set-point")
            log.warning("Node 0x%02X: status bit12 did not clear", nid)
        else:
            return self._fail(run, ready.error)  # type: ignore[arg-type]

        # 6. 回读位置并计算变化量
        settle(self.cfg.settle_s, self.stop_event)
        end = self.get_position_counts()
        if end.ok:
            run.end_position = end.value
            if run.start_position is not None:
                run.delta = int(end.value or 0) - run.start_position
                if abs(run.delta) < self.cfg.min_motion_counts:
                    run.warnings.append(
                        f"position change {run.delta} below {self.cfg.min_motion_counts} counts, "
                        "motor may not have moved"
                    )
        else:
            run.warnings.append(f"end position unavailable: {end.error}")

        self._enter(run, MotionPhase.COMPLETE)
        for warning in run.warnings:
            log.warning("Node 0x%02X: %s", nid, warning)
        log.info("Node 0x%02X: move complete, delta=%s", nid, run.delta)
        self.last_result = run
        return run

    def move_to_angle(self, angle_deg: float) -> MotionResult:
        return self.move(MotionCommand(self.angle_to_counts(angle_deg)))
