# -*- coding: utf-8 -*-
"""SMC100 串口客户端：拼 ASCII 命令 + 读一行应答 + 定位置截取数值。

线协议（SMC100 用户手册 p.22-70）：
    发送  <地址><两字母命令>[参数][?]\\r\\n     例如 1PR0.050000\\r\\n、1TP?\\r\\n
    应答  <地址><命令><数值>\\r\\n               例如 1TP12.34567\\r\\n

要点：
1) 应答里数值前面没有分隔符，只能按固定偏移截取（偏移 3，长度看字段），
   截取前先去掉 \\r \\n。这个截法很“脆”，但和设备一一对应，不要随便改。
2) 本模块不做重试，重试策略在 motion.py。
3) 读应答超时不抛异常，返回已经读到的内容（可能是空串），由调用方判断。
"""

from __future__ import annotations

import re
import threading
import time
from enum import Enum
from typing import Callable, Optional

import serial


DEFAULT_BAUDRATE = 57600
DEFAULT_ADDRESS = "1"
DEFAULT_READ_TIMEOUT_S = 0.02

TERMINATOR = "\r\n"
QUERY_SUFFIX = "?"

# 应答里数值的固定截取位置
FIELD_OFFSET = 3
POSITION_FIELD_LENGTH = 6
VELOCITY_FIELD_LENGTH = 2
ACCELERATION_FIELD_LENGTH = 2
LIMIT_FIELD_LENGTH = 2
# TS 应答：1TS + 4 位错误码 + 2 位状态码
STATUS_CODE_OFFSET = 7
STATUS_CODE_LENGTH = 2
# TE 应答：1TE + 1 位错误字符
ERROR_CHAR_OFFSET = 3


class StageConnectionError(ConnectionError):
    """串口打不开。启动阶段致命。"""


class StageProtocolError(ValueError):
    """应答太短或截出来的不是数字。"""


class ParamKind(Enum):
    NONE = "none"
    INT = "int"
    FLOAT = "float"


class Command(Enum):
    """命令库：两字母命令码 + 参数类型。"""

    ACCELERATION = ("AC", ParamKind.FLOAT)
    BACKLASH_COMP = ("BA", ParamKind.FLOAT)
    HYSTERESIS_COMP = ("BH", ParamKind.FLOAT)
    DRIVER_VOLTAGE = ("DV", ParamKind.FLOAT)
    KD_LOW_PASS_CUTOFF = ("FD", ParamKind.FLOAT)
    FOLLOWING_ERROR_LIMIT = ("FE", ParamKind.FLOAT)
    FRICTION_COMP = ("FF", ParamKind.FLOAT)
    HOME_SEARCH_TYPE = ("HT", ParamKind.INT)
    STAGE_IDENTIFIER = ("ID", ParamKind.FLOAT)
    LEAVE_JOGGING = ("JD", ParamKind.NONE)
    KEYPAD_ENABLE = ("JM", ParamKind.INT)
    JERK_TIME = ("JR", ParamKind.FLOAT)
    DERIVATIVE_GAIN = ("KD", ParamKind.FLOAT)
    INTEGRAL_GAIN = ("KI", ParamKind.FLOAT)
    PROPORTIONAL_GAIN = ("KP", ParamKind.FLOAT)
    VELOCITY_FEED_FORWARD = ("KV", ParamKind.FLOAT)
    ENABLE = ("MM", ParamKind.INT)
    HOME_SEARCH_VELOCITY = ("OH", ParamKind.FLOAT)
    HOME_SEARCH = ("OR", ParamKind.NONE)
    HOME_SEARCH_TIMEOUT = ("OT", ParamKind.FLOAT)
    MOVE_ABS = ("PA", ParamKind.FLOAT)
    MOVE_REL = ("PR", ParamKind.FLOAT)
    MOVE_ESTIMATE = ("PT", ParamKind.FLOAT)
    CONFIGURE = ("PW", ParamKind.INT)
    ANALOG_INPUT = ("RA", ParamKind.NONE)
    TTL_INPUT = ("RB", ParamKind.NONE)
    RESET = ("RS", ParamKind.NONE)
    RS485_ADDRESS = ("SA", ParamKind.INT)
    TTL_OUTPUT = ("SB", ParamKind.INT)
    CONTROL_LOOP_STATE = ("SC", ParamKind.INT)
    NEGATIVE_SOFTWARE_LIMIT = ("SL", ParamKind.FLOAT)
    POSITIVE_SOFTWARE_LIMIT = ("SR", ParamKind.FLOAT)
    STOP_MOTION = ("ST", ParamKind.NONE)
    ENCODER_INCREMENT = ("SU", ParamKind.FLOAT)
    COMMAND_ERROR_STRING = ("TB", ParamKind.NONE)
    LAST_COMMAND_ERROR = ("TE", ParamKind.NONE)
    POSITION_AS_SET = ("TH", ParamKind.NONE)
    POSITION_REAL = ("TP", ParamKind.NONE)
    ERROR_STATUS = ("TS", ParamKind.NONE)
    VELOCITY = ("VA", ParamKind.FLOAT)
    BASE_VELOCITY = ("VB", ParamKind.FLOAT)
    REVISION_INFO = ("VE", ParamKind.NONE)
    ALL_CONFIG = ("ZT", ParamKind.NONE)
    ESP_STAGE_CONFIG = ("ZX", ParamKind.NONE)

    def __init__(self, code: str, kind: ParamKind):
        self.code = code
        self.kind = kind


class StageState(Enum):
    NO_REFERENCE = "No Reference"
    CONFIG = "Configuration"
    HOMING = "Homing"
    MOVING = "Moving"
    READY = "Ready"
    DISABLED = "Disabled"
    JOGGING = "Jogging"
    ERROR = "Error"
    UNKNOWN = "Unknown"


# 控制器状态码（手册 p.65）
STATUS_CODES = {
    "0A": StageState.NO_REFERENCE,  # from reset
    "0B": StageState.NO_REFERENCE,  # from homing
    "0C": StageState.NO_REFERENCE,  # from configuration
    "0D": StageState.NO_REFERENCE,  # from disable
    "0E": StageState.NO_REFERENCE,  # from moving
    "0F": StageState.NO_REFERENCE,  # from ready
    "10": StageState.NO_REFERENCE,  # ESP stage error
    "11": StageState.NO_REFERENCE,  # from jogging
    "14": StageState.CONFIG,
    "1E": StageState.HOMING,        # RS-232-C
    "1F": StageState.HOMING,        # SMC-RC
    "28": StageState.MOVING,
    "32": StageState.READY,         # from homing
    "33": StageState.READY,         # from moving
    "34": StageState.READY,         # from disable
    "35": StageState.READY,         # from jogging
    "3C": StageState.DISABLED,      # from ready
    "3D": StageState.DISABLED,      # from moving
    "3E": StageState.DISABLED,      # from jogging
    "46": StageState.JOGGING,       # from ready
    "47": StageState.JOGGING,       # from disable
}

READY = StageState.READY.value

# TE 命令返回的错误字符（手册 p.61）
ERROR_MESSAGES = {
    "@": "No Error Encountered",
    "A": "Unknown message",
    "B": "Incorrect address",
    "C": "Parameter missing",
    "D": "Command not allowed",
    "E": "Already homing",
    "F": "ESP stage unknown",
    "G": "Displacement out of limits",
    "H": "Not allowed in NOT REFERENCED",
    "I": "Not allowed in CONFIGURATION",
    "J": "Not allowed in DISABLED",
    "K": "Not allowed in READY",
    "L": "Not allowed in HOMING",
    "M": "Not allowed in MOVING",
    "N": "Out of soft limits",
    "S": "Communication time out",
    "U": "EEPROM error",
    "V": "Error during command execution",
    "W": "Command not allowed for PP",
    "X": "Command not allowed for CC",
}

_NUMBER_PREFIX = re.compile(r"\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


def format_command(address: str, command: Command, parameter: Optional[float] = None,
                   query: bool = False) -> str:
    """拼一条完整命令（含 \\r\\n）。"""
    line = address + command.code
    if query:
        line += QUERY_SUFFIX
    elif command.kind is ParamKind.INT:
        line += str(int(parameter or 0))
    elif command.kind is ParamKind.FLOAT:
        line += f"{float(parameter or 0.0):f}"
    return line + TERMINATOR


def strip_line_endings(raw: str) -> str:
    return raw.replace("\n", "").replace("\r", "")


def field_text(raw: str, length: int, offset: int = FIELD_OFFSET) -> str:
    """按固定偏移截取数值字段（先去掉换行）。"""
    text = strip_line_endings(raw)
    return text[offset:offset + length]


def parse_field(raw: str, length: int, offset: int = FIELD_OFFSET, strict: bool = False) -> float:
    """从应答里截出数值。

    strict=True 时要求应答至少有 offset+length 个字符（位置/速度等待用）；
    否则和截取后取前缀数字一样宽松，字段里一个数字都没有才报错。
    """
    text = strip_line_endings(raw)
    if strict and len(text) < offset + length:
        raise StageProtocolError(f"应答太短: {text!r}")
    m = _NUMBER_PREFIX.match(text[offset:offset + length])
    if m is None:
        raise StageProtocolError(f"应答里没有数值: {text!r}")
    return float(m.group(0))


def parse_status(raw: str) -> str:
    """TS 应答 -> 状态名；查不到的码返回 'Unknown Status Code: xx'。"""
    code = raw[STATUS_CODE_OFFSET:STATUS_CODE_OFFSET + STATUS_CODE_LENGTH]
    state = STATUS_CODES.get(code)
    if state is None:
        return f"Unknown Status Code: {code}"
    return state.value


def parse_error(raw: str) -> str:
    """TE 应答 -> 错误说明；查不到返回 '0'。"""
    ch = raw[ERROR_CHAR_OFFSET:ERROR_CHAR_OFFSET + 1]
    return ERROR_MESSAGES.get(ch, "0")


class Smc100Client:
    """一台 SMC100 控制器。构造即打开串口，close() 可重复调用。"""

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUDRATE,
        address: str = DEFAULT_ADDRESS,
        read_timeout_s: float = DEFAULT_READ_TIMEOUT_S,
        serial_factory: Callable[..., serial.Serial] = serial.Serial,
    ):
        self.port = port
        self.address = address
        self.read_timeout_s = read_timeout_s
        try:
            self.ser = serial_factory(port, baudrate=baudrate, timeout=read_timeout_s)
        except (serial.SerialException, OSError) as e:
            raise StageConnectionError(f"无法打开串口 {port}: {e}") from e
        # 渲染线程读位置、运动线程发命令，同一时间只能有一方占用串口
        self._lock = threading.RLock()

    @property
    def is_open(self) -> bool:
        return bool(getattr(self.ser, "is_open", False))

    def close(self) -> None:
        if self.is_open:
            self.ser.close()

    def drain(self) -> None:
        """清空串口输入缓存。"""
        self.ser.reset_input_buffer()

    def available(self) -> int:
        return self.ser.in_waiting

    # ------------------------------
    # 底层收发
    # ------------------------------

    def _send(self, command: Command, parameter: Optional[float] = None, query: bool = False) -> bool:
        """写一条命令，返回是否整条写出去了（不代表动作完成）。"""
        payload = format_command(self.address, command, parameter, query).encode("ascii")
        with self._lock:
            written = self.ser.write(payload)
        return written == len(payload)

    def _readline(self) -> str:
        """读到 \\n 为止（保留 \\r\\n）；超时返回已读到的内容。"""
        t0 = time.monotonic()
        buf = b""
        while time.monotonic() - t0 <= self.read_timeout_s:
            ch = self.ser.read(1)
            if not ch:
                continue
            buf += ch
            if ch == b"\n":
                break
        return buf.decode("ascii", errors="ignore")

    def _query(self, command: Command) -> str:
        with self._lock:
            self.drain()
            self._send(command, query=True)
            return self._readline()

    # ------------------------------
    # 动作
    # ------------------------------

    def home(self) -> bool:
        """OR 回零。只看命令有没有写出去，不等回零结束。"""
        print("[smc100] Request For Home")
        return self._send(Command.HOME_SEARCH)

    def relative_move(self, distance: float) -> bool:
        return self._send(Command.MOVE_REL, distance)

    def absolute_move(self, position: float) -> bool:
        return self._send(Command.MOVE_ABS, position)

    def stop_motion(self) -> None:
        """ST 急停：发完就走，不等确认。"""
        print("[smc100] Stopping Motion")
        self._send(Command.STOP_MOTION)

    def set_velocity(self, velocity: float) -> bool:
        return self._send(Command.VELOCITY, velocity)

    def set_acceleration(self, acceleration: float) -> bool:
        return self._send(Command.ACCELERATION, acceleration)

    def set_positive_limit(self, limit: float) -> bool:
        print(f"[smc100] Set Positive Limit: {limit}")
        return self._send(Command.POSITIVE_SOFTWARE_LIMIT, limit)

    def set_negative_limit(self, limit: float) -> bool:
        print(f"[smc100] Set Negative Limit: {limit}")
        return self._send(Command.NEGATIVE_SOFTWARE_LIMIT, limit)

    def set_jerk_time(self, jerk_time: float) -> bool:
        print(f"[smc100] Set Jerk Time: {jerk_time:.2f}")
        return self._send(Command.JERK_TIME, jerk_time)

    # ------------------------------
    # 查询：返回原始应答（含换行），用 parse_* 截取
    # ------------------------------

    def get_position(self) -> str:
        return self._query(Command.POSITION_REAL)

    def get_velocity(self) -> str:
        return self._query(Command.VELOCITY)

    def get_acceleration(self) -> str:
        return self._query(Command.ACCELERATION)

    def get_positive_limit(self) -> str:
        return self._query(Command.POSITIVE_SOFTWARE_LIMIT)

    def get_negative_limit(self) -> str:
        return self._query(Command.NEGATIVE_SOFTWARE_LIMIT)

    def get_current_status(self) -> str:
        """TS -> 'Ready' / 'Moving' / ... / 'Unknown Status Code: xx'"""
        return parse_status(self._query(Command.ERROR_STATUS))

    def get_error(self) -> str:
        """TE -> 上一条命令的错误说明。"""
        return parse_error(self._query(Command.LAST_COMMAND_ERROR))

    def get_custom(self, raw_command: str) -> str:
        """原样发一串命令（调用方自己带地址和 \\r\\n），返回应答。"""
        with self._lock:
            self.drain()
            self.ser.write(raw_command.encode("ascii"))
            return self._readline()
