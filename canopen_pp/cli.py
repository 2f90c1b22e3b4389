"""命令行入口：节点扫描、节点信息、单次命令执行与交互控制台。

``exec`` 与 ``console`` 共用同一个 :func:`interpret_command`。
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

import can

from . import cia402
from .motor_controller import DEFAULT_EDS_PATH, MotionCommand, PPConfig, ProfilePositionController
from .nmt import NetworkController
from .od_catalog import ObjectDictionaryCatalog
from .scanner import DeviceScanner
from .sdo_master import SdoMaster

log = logging.getLogger(__name__)

DEFAULT_NODE_ID = 2

HELP_TEXT = """\
p <position>   - move to target position (counts)
r <degrees>    - move to target angle
v <velocity>   - set profile velocity
a <accel>      - set profile acceleration
d <decel>      - set profile deceleration
+v / -v        - profile velocity +/-100 (also +a/-a, +d/-d)
s              - stop motor (shutdown)
x              - quick stop
on / off       - enable / disable operation
i              - show status word and position
h              - this help
q              - exit"""


class _InterruptHandler:
    """SIGINT: abort waits while busy, leave the prompt while idle."""

    def __init__(self, stop_event: threading.Event) -> None:
        self.stop_event = stop_event
        self.idle = False

    def __call__(self, signum, frame) -> None:
        if self.idle:
            raise KeyboardInterrupt
        self.stop_event.set()


@dataclass
class BusConfig:
    interface: str = "socketcan"
    channel: str = "can0"
    bitrate: int = 1_000_000


@dataclass
class Session:
    controller: ProfilePositionController
    echo: Callable[[str], None] = print
    target_position: int = 0
    running: bool = True
    history: list[str] = field(default_factory=list)


def _parse_int(text: str) -> int:
    return int(text, 0)


def _report_move(session: Session, result) -> None:
    ctl = session.controller
    if result.ok:
        session.echo(
            f"move complete: position {result.end_position} "
            f"(delta {result.delta}, {ctl.counts_to_turns(result.delta or 0):.3f} turns)"
        )
    else:
        session.echo(f"move failed in phase {result.phase.value}: {result.error}")
    for warning in result.warnings:
        session.echo(f"warning: {warning}")


def interpret_command(line: str, session: Session) -> bool:
    """Run one console command; returns False once the session should end."""
    text = line.strip()
    if not text:
        return session.running
    session.history.append(text)
    ctl = session.controller
    cmd, _, arg = text.partition(" ")
    arg = arg.strip()

    try:
        if cmd == "p":
            if not arg:
                session.echo(f"current target position: {session.target_position}")
            else:
                session.target_position = _parse_int(arg)
                _report_move(session, ctl.move(MotionCommand(session.target_position)))
        elif cmd == "r":
            if not arg:
                session.echo(f"current target angle: {ctl.counts_to_angle(session.target_position):.2f} deg")
            else:
                result = ctl.move_to_angle(float(arg))
                session.target_position = result.command.target_position
                _report_move(session, result)
        elif cmd in ("v", "a", "d"):
            attr = {"v": "profile_velocity", "a": "profile_acceleration", "d": "profile_deceleration"}[cmd]
            value = _parse_int(arg) if arg else 0
            if value > 0:
                values = {
                    "profile_velocity": ctl.cfg.profile_velocity,
                    "profile_acceleration": ctl.cfg.profile_acceleration,
                    "profile_deceleration": ctl.cfg.profile_deceleration,
                }
                values[attr] = value
                result = ctl.set_profile(
                    values["profile_velocity"],
                    values["profile_acceleration"],
                    values["profile_deceleration"],
                )
                session.echo(f"{attr} = {value}" if result.ok else f"{attr} not set: {result.error}")
            else:
                session.echo(f"current {attr}: {getattr(ctl.cfg, attr)}")
        elif len(cmd) == 2 and cmd[0] in "+-" and cmd[1] in "vad":
            delta = 100 if cmd[0] == "+" else -100
            result = ctl.adjust_profile(cmd[1], delta)
            session.echo(f"{cmd[1]} -> {result.value}" if result.ok else str(result.error))
        elif cmd == "s":
            result = ctl.stop()
            session.echo("motor stopped" if result.ok else f"stop failed: {result.error}")
        elif cmd == "x":
            result = ctl.quick_stop()
            session.echo("quick stop active" if result.ok else f"quick stop failed: {result.error}")
        elif cmd in ("on", "off"):
            result = ctl.enable_operation() if cmd == "on" else ctl.disable_operation()
            state = "enabled" if cmd == "on" else "disabled"
            session.echo(f"operation {state}" if result.ok else f"operation not {state}: {result.error}")
        elif cmd == "i":
            result = ctl.status()
            if result.ok:
                status = result.value
                session.echo(
                    f"status word 0x{status.status_word:04X} [{' '.join(status.flags)}] "
                    f"position {status.position} target {session.target_position}"
                )
            else:
                session.echo(f"status read failed: {result.error}")
        elif cmd in ("h", "?"):
            session.echo(HELP_TEXT)
        elif cmd == "q":
            session.running = False
        else:
            session.echo(f"unknown command: {cmd}")
    except ValueError as exc:
        session.echo(f"invalid argument: {exc}")
    return session.running


def run_commands(commands: Iterable[str], session: Session) -> None:
    for line in commands:
        if not interpret_command(line, session):
            break


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="canopen-pp", description="CANopen SDO profile position tool")
    parser.add_argument("--interface", default="socketcan", help="python-can interface (default: socketcan)")
    parser.add_argument("--channel", default="can0", help="CAN channel (default: can0)")
    parser.add_argument("--bitrate", type=int, default=1_000_000, help="CAN bitrate (default: 1_000_000)")
    parser.add_argument("--eds", default=DEFAULT_EDS_PATH, help="EDS file used for object sizes")
    parser.add_argument("--timeout", type=float, default=1.0, help="SDO response timeout in seconds")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="probe node ids for CiA402 motors")
    scan.add_argument("--first", type=int, default=1)
    scan.add_argument("--last", type=int, default=20)
    scan.add_argument("--probe-timeout", type=float, default=0.1)

    info = sub.add_parser("info", help="read identity and state objects of one node")
    info.add_argument("node", type=_parse_int)

    for name, help_text in (("exec", "run console commands once"), ("console", "interactive control")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--node", type=_parse_int, default=None, help="motor node id (default: auto-detect)")
        p.add_argument("--skip-init", action="store_true", help="skip NMT startup and PP initialisation")
        if name == "exec":
            p.add_argument("lines", nargs="+", help='commands, e.g. "p 100000" "v 6000"')
    return parser.parse_args(argv)


def _cmd_scan(args: argparse.Namespace, scanner: DeviceScanner) -> int:
    scan = scanner.scan(args.first, args.last, per_node_timeout=args.probe_timeout, inter_probe_delay=0.01)
    found = list(scan)
    if scan.error is not None:
        log.error("Scan failed: %s", scan.error)
        return 1
    for record in found:
        print(f"node {record.node_id}: CiA402 motor (device type 0x{record.device_type:08X})")
    print(f"found {len(found)} motor device(s)")
    return 0 if found else 2


def _cmd_info(args: argparse.Namespace, scanner: DeviceScanner) -> int:
    info = scanner.read_node_info(args.node)
    if info.error is not None:
        log.error("Node 0x%02X: %s", args.node, info.error)
        return 1
    if not info.responded:
        print(f"node {args.node}: no response")
        return 2
    print(f"node {info.node_id}: device type 0x{info.device_type:08X} ({'motor' if info.is_motor else 'other'})")
    for name in ("error_register", "vendor_id", "product_code", "revision", "serial_number", "control_word"):
        value = getattr(info, name)
        print(f"  {name}: {'n/a' if value is None else f'0x{value:08X}'}")
    print(f"  vendor: {info.vendor_name}")
    if info.status_word is not None:
        print(f"  status_word: 0x{info.status_word:04X} {' '.join(cia402.describe_status(info.status_word))}")
    if info.operation_mode is not None:
        print(f"  operation_mode: {cia402.mode_name(info.operation_mode)}")
    return 0


def _cmd_control(args: argparse.Namespace, bus: can.BusABC, master: SdoMaster,
                 scanner: DeviceScanner, interrupt: _InterruptHandler) -> int:
    stop_event = interrupt.stop_event
    node_id = args.node
    if node_id is None:
        found = scanner.find_motor(1, 20, default=DEFAULT_NODE_ID)
        if not found.ok:
            log.error("Motor detection failed: %s", found.error)
            return 1
        node_id = found.value
    controller = ProfilePositionController(master, PPConfig(node_id=node_id, eds_path=args.eds), stop_event)

    if not args.skip_init:
        nmt = NetworkController(bus, stop_event=stop_event)
        result = nmt.check_connection()
        if result.ok:
            result = nmt.startup(node_id)
        if result.ok:
            result = controller.initialise()
        if not result.ok:
            log.error("Node 0x%02X: initialisation failed: %s", node_id, result.error)
            return 1

    session = Session(controller)
    try:
        if args.command == "exec":
            run_commands(args.lines, session)
        else:
            session.echo(HELP_TEXT)
            while session.running and not stop_event.is_set():
                interrupt.idle = True
                try:
                    line = input(">>> ")
                except (EOFError, KeyboardInterrupt):
                    break
                finally:
                    interrupt.idle = False
                interpret_command(line, session)
    finally:
        # 退出前安全停止
        stop_event.clear()
        controller.stop()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    stop_event = threading.Event()
    interrupt = _InterruptHandler(stop_event)
    signal.signal(signal.SIGINT, interrupt)

    bus_cfg = BusConfig(args.interface, args.channel, args.bitrate)
    try:
        bus = can.Bus(interface=bus_cfg.interface, channel=bus_cfg.channel, bitrate=bus_cfg.bitrate)
    except (can.CanError, OSError, ValueError) as exc:
        log.error("打开 CAN 接口失败: %s", exc)
        return 1

    try:
        catalog = ObjectDictionaryCatalog.from_eds(args.eds)
        master = SdoMaster(bus, catalog, timeout=args.timeout, stop_event=stop_event)
        scanner = DeviceScanner(master)
        if args.command == "scan":
            return _cmd_scan(args, scanner)
        if args.command == "info":
            return _cmd_info(args, scanner)
        return _cmd_control(args, bus, master, scanner, interrupt)
    finally:
        bus.shutdown()


if __name__ == "__main__":
    sys.exit(main())
