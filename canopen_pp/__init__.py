"""
canopen_pp

CANopen SDO master and CiA402 profile position control over python-can.

Expedited SDO transfers, NMT lifecycle commands, CiA402 motor discovery and
the immediate-update set-point handshake, all synchronous and SDO only.
"""

from .errors import Cancelled, RangeError, ResponseTimeout, Result, SdoAbortedError, TransportError
from .motor_controller import MotionCommand, MotionPhase, MotionResult, PPConfig, ProfilePositionController
from .nmt import LifecycleCommand, NetworkController
from .od_catalog import ObjectDictionaryCatalog
from .scanner import DeviceRecord, DeviceScanner, NodeInfo
from .sdo_master import SdoMaster

__all__ = [
    "Cancelled",
    "DeviceRecord",
    "DeviceScanner",
    "LifecycleCommand",
    "MotionCommand",
    "MotionPhase",
    "MotionResult",
    "NetworkController",
    "NodeInfo",
    "ObjectDictionaryCatalog",
    "PPConfig",
    "ProfilePositionController",
    "RangeError",
    "ResponseTimeout",
    "Result",
    "SdoAbortedError",
    "SdoMaster",
    "TransportError",
]

__version__ = "0.1.0"
