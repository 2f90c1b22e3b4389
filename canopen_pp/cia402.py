"""CiA301 / CiA402 object indices, bit masks and code tables used by the master."""

from __future__ import annotations

from enum import IntEnum, IntFlag

# ---------------- COB-ID 基址 -----------------
NMT_COB_ID = 0x000
SDO_REQUEST_BASE = 0x600   # client -> server
SDO_RESPONSE_BASE = 0x580  # server -> client

MIN_NODE_ID = 1
MAX_NODE_ID = 0x7F
BROADCAST = 0

# ---------------- CiA301 -----------------
DEVICE_TYPE = 0x1000
ERROR_REGISTER = 0x1001
IDENTITY_OBJECT = 0x1018
VENDOR_ID = 1
PRODUCT_CODE = 2
REVISION_NUMBER = 3
SERIAL_NUMBER = 4

# ---------------- CiA402 -----------------
CONTROLWORD = 0x6040
STATUSWORD = 0x6041
MODES_OF_OPERATION = 0x6060
MODES_OF_OPERATION_DISPLAY = 0x6061
POSITION_ACTUAL_VALUE = 0x6064
TARGET_POSITION = 0x607A
PROFILE_VELOCITY = 0x6081
PROFILE_ACCELERATION = 0x6083
PROFILE_DECELERATION = 0x6084

# Control word bits
CW_NEW_SET_POINT = 0x0010
CW_FAULT_RESET = 0x0080

# Status word bits
SW_SET_POINT_ACK = 0x1000
SW_TARGET_REACHED = 0x0400
SW_STATE_MASK = 0x006F

# 0x1000 设备类型：CiA402 电机驱动器
MOTOR_DEVICE_TYPES = frozenset({0x00020192, 0x00020193, 0x00020194, 0x00020195})

VENDOR_NAMES = {
    0x5A65726F: "ZeroErr Control",
}


class ControlCommand(IntEnum):
    """Control word values driving the CiA402 power state machine."""

    SHUTDOWN = 0x06
    SWITCH_ON = 0x07
    ENABLE_OPERATION = 0x0F
    QUICK_STOP = 0x02
    FAULT_RESET = 0x80


class DriveState(IntEnum):
    """Status word patterns (under ``SW_STATE_MASK``) for the power states."""

    SWITCH_ON_DISABLED = 0x40
    READY_TO_SWITCH_ON = 0x21
    SWITCHED_ON = 0x23
    OPERATION_ENABLED = 0x27
    QUICK_STOP_ACTIVE = 0x07


# state reached after each power-state command
EXPECTED_STATE = {
    ControlCommand.SHUTDOWN: DriveState.READY_TO_SWITCH_ON,
    ControlCommand.SWITCH_ON: DriveState.SWITCHED_ON,
    ControlCommand.ENABLE_OPERATION: DriveState.OPERATION_ENABLED,
    ControlCommand.QUICK_STOP: DriveState.QUICK_STOP_ACTIVE,
}


class StatusWord(IntFlag):
    READY_TO_SWITCH_ON = 0x0001
    SWITCHED_ON = 0x0002
    OPERATION_ENABLED = 0x0004
    FAULT = 0x0008
    VOLTAGE_ENABLED = 0x0010
    QUICK_STOP = 0x0020
    SWITCH_ON_DISABLED = 0x0040
    WARNING = 0x0080
    MANUFACTURER_SPECIFIC = 0x0100
    REMOTE = 0x0200
    TARGET_REACHED = 0x0400
    INTERNAL_LIMIT = 0x0800
    SET_POINT_ACK = 0x1000


class OperationMode(IntEnum):
    NO_MODE = 0
    PROFILE_POSITION = 1
    VELOCITY = 2
    PROFILE_VELOCITY = 3
    PROFILE_TORQUE = 4
    HOMING = 6
    INTERPOLATED_POSITION = 7
    CYCLIC_SYNC_POSITION = 8
    CYCLIC_SYNC_VELOCITY = 9
    CYCLIC_SYNC_TORQUE = 10


def describe_status(status: int) -> list[str]:
    """Names of the status word bits that are set, lowest bit first."""
    return [flag.name for flag in StatusWord if status & flag]


def mode_name(mode: int) -> str:
    try:
        return OperationMode(mode).name
    except ValueError:
        return f"UNKNOWN({mode})"


def to_signed(value: int, bits: int = 32) -> int:
    value &= (1 << bits) - 1
    if value & (1 << (bits - 1)):
        return value - (1 << bits)
    return value
