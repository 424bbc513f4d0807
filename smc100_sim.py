# -*- coding: utf-8 -*-
"""模拟 SMC100：一个“假串口”，按 SMC100 协议回应答。

DRY_RUN 时用它代替 serial.Serial，测试里也用它。
用法：
    Smc100Client("SIM", serial_factory=SimulatedSmc100)

只模拟 runner 用得到的命令；运动是瞬间完成的，
可以用 moving_polls 让 TS 在每次运动后先报几次 Moving，
用 fail_writes 让接下来几次 write 抛 SerialException（测重试）。
"""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

import serial


_RE_LINE = re.compile(r"^(\d+)([A-Za-z]{2})(\?)?(.*)$")

_VALUE_COMMANDS = {"VA": "velocity", "AC": "acceleration", "SR": "positive_limit", "SL": "negative_limit"}


class SimulatedSmc100:
    def __init__(
        self,
        port: str = "SIM",
        baudrate: int = 57600,
        timeout: Optional[float] = 0.02,
        address: str = "1",
        moving_polls: int = 0,
        fail_writes: int = 0,
    ):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.address = address
        self.is_open = True

        self.position = 0.0
        self.velocity = 1.0
        self.acceleration = 10.0
        self.positive_limit = 25.0
        self.negative_limit = -25.0
        self.jerk_time = 0.04
        # 上电未回零
        self.state_code = "0A"
        self.last_error = "@"

        self.moving_polls = moving_polls
        self.fail_writes = fail_writes
        self._moving_left = 0

        self.commands: List[str] = []
        self.moves: List[Tuple[str, float]] = []
        self.home_count = 0

        self._rx = bytearray()
        self._pending = b""

    # ------------------------------
    # serial.Serial 接口
    # ------------------------------

    @property
    def in_waiting(self) -> int:
        return len(self._rx)

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise serial.SerialException("模拟串口已关闭")
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise serial.SerialException("模拟写失败")
        self._pending += data
        while b"\r\n" in self._pending:
            line, self._pending = self._pending.split(b"\r\n", 1)
            self._handle(line.decode("ascii"))
        return len(data)

    def read(self, size: int = 1) -> bytes:
        chunk = bytes(self._rx[:size])
        del self._rx[:size]
        return chunk

    def reset_input_buffer(self) -> None:
        self._rx.clear()

    def close(self) -> None:
        self.is_open = False

    # ------------------------------
    # 协议
    # ------------------------------

    def _reply(self, code: str, value: str) -> None:
        self._rx += f"{self.address}{code}{value}\r\n".encode("ascii")

    def _start_move(self, code: str, target: float, param: float) -> None:
        self.moves.append((code, param))
        self.position = target
        if self.moving_polls > 0:
            self._moving_left = self.moving_polls
            self.state_code = "28"
        else:
            self.state_code = "33"

    def _handle(self, line: str) -> None:
        self.commands.append(line)
        m = _RE_LINE.match(line)
        if not m or m.group(1) != self.address:
            return
        code = m.group(2).upper()
        query = m.group(3) is not None
        param_text = m.group(4)

        if query:
            self._handle_query(code)
            return

        param = float(param_text) if param_text else 0.0
        if code == "PR":
            self._start_move(code, self.position + param, param)
        elif code == "PA":
            self._start_move(code, param, param)
        elif code == "OR":
            self.home_count += 1
            self.position = 0.0
            self.state_code = "32"
        elif code == "ST":
            self._moving_left = 0
            self.state_code = "33"
        elif code == "JR":
            self.jerk_time = param
        elif code in _VALUE_COMMANDS:
            setattr(self, _VALUE_COMMANDS[code], param)
        else:
            self.last_error = "A"

    def _handle_query(self, code: str) -> None:
        if code == "TP":
            self._reply("TP", f"{self.position:.6f}")
        elif code == "TS":
            if self._moving_left > 0:
                self._moving_left -= 1
                if self._moving_left == 0:
                    self.state_code = "33"
                self._reply("TS", "000028")
                return
            self._reply("TS", "0000" + self.state_code)
        elif code == "TE":
            self._reply("TE", self.last_error)
            self.last_error = "@"
        elif code in _VALUE_COMMANDS:
            self._reply(code, f"{getattr(self, _VALUE_COMMANDS[code]):.6f}")

