# -*- coding: utf-8 -*-
"""光机控制封装：厂家 USB 动态库（LibUSB3DPrinter）+ 模拟光机。

厂家库提供的函数（都是同步、很快返回）：
- EnumUsbDevice() / SetUsbDeviceIndex(i) / CheckUSBOnline()
- PowerOnOff(1/0)
- SetCurrent(ch, 0-255) / GetCurrent(ch, &v)
- GetSysStatus()：上电预热中是 4，就绪是 1
- GetStatus() / GetLedDefaultStatus(&f) / SetLedDefaultStatus(f) / GetTemperature(&t)

打印引擎只认 LightEngine 这个接口；真机用 UsbLightEngine，
DRY_RUN 和测试用 SimulatedLightEngine。
"""

from __future__ import annotations

import ctypes
import ctypes.util
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

LogFn = Callable[[str], None]

SYS_STATUS_READY = 1
SYS_STATUS_WARMING = 4
MAX_CURRENT = 255


class LightEngineUnavailable(RuntimeError):
    """厂家动态库加载失败。"""


class LightEngineTimeout(TimeoutError):
    """预热超时（已经断电）。"""


@dataclass
class LightEngineStatus:
    status: int = 0
    current: int = 0
    sys_status: int = 0
    led_default: bool = False
    temperature: int = 0


class LightEngine(ABC):
    @abstractmethod
    def enum_devices(self) -> int: ...

    @abstractmethod
    def select_device(self, index: int) -> None: ...

    @abstractmethod
    def is_online(self) -> bool: ...

    @abstractmethod
    def power(self, on: bool) -> bool: ...

    @abstractmethod
    def set_current(self, value: int, channel: int = 0) -> bool: ...

    @abstractmethod
    def get_current(self, channel: int = 0) -> Optional[int]: ...

    @abstractmethod
    def get_sys_status(self) -> int: ...

    @abstractmethod
    def get_status(self) -> int: ...

    @abstractmethod
    def get_led_default(self) -> Optional[bool]: ...

    @abstractmethod
    def set_led_default(self, on: bool) -> bool: ...

    @abstractmethod
    def get_temperature(self) -> Optional[int]: ...


def clamp_current(value: int) -> int:
    return max(0, min(MAX_CURRENT, int(value)))


class UsbLightEngine(LightEngine):
    """用 ctypes 调厂家的 LibUSB3DPrinter。"""

    def __init__(self, library: str = "LibUSB3DPrinter"):
        path = ctypes.util.find_library(library) or library
        loader = ctypes.WinDLL if sys.platform == "win32" else ctypes.CDLL
        try:
            self.dll = loader(path)
        except OSError as e:
            raise LightEngineUnavailable(f"无法加载光机动态库 {library}: {e}") from e
        self._declare()

    def _declare(self) -> None:
        u8, s16 = ctypes.c_ubyte, ctypes.c_int16
        signatures = {
            "EnumUsbDevice": ([], u8),
            "SetUsbDeviceIndex": ([u8], None),
            "CheckUSBOnline": ([], u8),
            "PowerOnOff": ([u8], u8),
            "SetCurrent": ([u8, u8], u8),
            "GetCurrent": ([u8, ctypes.POINTER(u8)], u8),
            "GetSysStatus": ([], u8),
            "GetStatus": ([], u8),
            "GetLedDefaultStatus": ([ctypes.POINTER(u8)], u8),
            "SetLedDefaultStatus": ([u8], u8),
            "GetTemperature": ([ctypes.POINTER(s16)], u8),
        }
        for name, (argtypes, restype) in signatures.items():
            fn = getattr(self.dll, name)
            fn.argtypes = argtypes
            fn.restype = restype

    def enum_devices(self) -> int:
        return int(self.dll.EnumUsbDevice())

    def select_device(self, index: int) -> None:
        self.dll.SetUsbDeviceIndex(index)

    def is_online(self) -> bool:
        return self.dll.CheckUSBOnline() != 0

    def power(self, on: bool) -> bool:
        return self.dll.PowerOnOff(1 if on else 0) == 1

    def set_current(self, value: int, channel: int = 0) -> bool:
        return bool(self.dll.SetCurrent(channel, clamp_current(value)))

    def get_current(self, channel: int = 0) -> Optional[int]:
        value = ctypes.c_ubyte(0)
        if not self.dll.GetCurrent(channel, ctypes.byref(value)):
            return None
        return value.value

    def get_sys_status(self) -> int:
        return int(self.dll.GetSysStatus())

    def get_status(self) -> int:
        return int(self.dll.GetStatus())

    def get_led_default(self) -> Optional[bool]:
        flag = ctypes.c_ubyte(0)
        if not self.dll.GetLedDefaultStatus(ctypes.byref(flag)):
            return None
        return bool(flag.value)

    def set_led_default(self, on: bool) -> bool:
        return bool(self.dll.SetLedDefaultStatus(1 if on else 0))

    def get_temperature(self) -> Optional[int]:
        temp = ctypes.c_int16(0)
        if not self.dll.GetTemperature(ctypes.byref(temp)):
            return None
        return temp.value


class SimulatedLightEngine(LightEngine):
    """模拟光机：上电后 GetSysStatus 先报 warmup_polls 次“预热中”再报就绪。"""

    def __init__(self, devices: int = 1, warmup_polls: int = 0, temperature: int = 25):
        self.devices = devices
        self.warmup_polls = warmup_polls
        self.temperature = temperature
        self.device_index: Optional[int] = None
        self.powered = False
        self.led_default = True
        self.current = 0
        self.current_history: List[int] = []
        self._warmup_left = 0

    def enum_devices(self) -> int:
        return self.devices

    def select_device(self, index: int) -> None:
        self.device_index = index

    def is_online(self) -> bool:
        return self.devices > 0 and self.device_index is not None

    def power(self, on: bool) -> bool:
        self.powered = on
        self._warmup_left = self.warmup_polls if on else 0
        return True

    def set_current(self, value: int, channel: int = 0) -> bool:
        self.current = clamp_current(value)
        self.current_history.append(self.current)
        return True

    def get_current(self, channel: int = 0) -> Optional[int]:
        return self.current

    def get_sys_status(self) -> int:
        if not self.powered:
            return 0
        if self._warmup_left > 0:
            self._warmup_left -= 1
            return SYS_STATUS_WARMING
        return SYS_STATUS_READY

    def get_status(self) -> int:
        return 1 if self.powered else 0

    def get_led_default(self) -> Optional[bool]:
        return self.led_default

    def set_led_default(self, on: bool) -> bool:
        self.led_default = on
        return True

    def get_temperature(self) -> Optional[int]:
        return self.temperature


# ------------------------------
# 上电 / 断电 / 状态
# ------------------------------

def turn_on(
    engine: LightEngine,
    device_index: int = 0,
    timeout_s: float = 600.0,
    poll_s: float = 0.1,
    log: LogFn = print,
) -> None:
    """选设备 -> 上电 -> 等 GetSysStatus 报就绪。超时先断电再抛 LightEngineTimeout。"""
    log("Checking connectivity with the Light Engine...")
    count = engine.enum_devices()
    if count == 0:
        log("No USB devices found.")
    else:
        log(f"Number of USB devices found: {count}")

    engine.select_device(device_index)
    log("USB device is online." if engine.is_online() else "USB device is not online.")

    if engine.power(True):
        log("Power turned on successfully.")
    else:
        log("Failed to turn on power.")

    log("System is warming up...")
    start = time.monotonic()
    stat = SYS_STATUS_WARMING
    while stat != SYS_STATUS_READY:
        stat = engine.get_sys_status()
        if stat not in (SYS_STATUS_READY, SYS_STATUS_WARMING):
            log(f"Light engine system status: {stat}")
        if stat == SYS_STATUS_READY:
            break
        if time.monotonic() - start > timeout_s:
            turn_off(engine, log)
            raise LightEngineTimeout(f"光机预热超过 {timeout_s:.0f} s")
        time.sleep(poll_s)


def turn_off(engine: LightEngine, log: LogFn = print) -> None:
    if engine.power(False):
        log("Power turned off successfully.")
    else:
        log("Failed to turn off power.")


def apply_current(engine: LightEngine, value: int, log: LogFn = print) -> Optional[int]:
    """设驱动电流并读回来核对。"""
    engine.set_current(value)
    readback = engine.get_current()
    log(f"The current value is: {readback}")
    return readback


def toggle_led_default(engine: LightEngine) -> Optional[bool]:
    """LED 默认状态取反，返回新状态；读不到时返回 None。"""
    current = engine.get_led_default()
    if current is None:
        return None
    if engine.set_led_default(not current):
        return not current
    return current


def read_status(engine: LightEngine) -> LightEngineStatus:
    status = LightEngineStatus(
        status=engine.get_status(),
        current=engine.get_current() or 0,
        sys_status=engine.get_sys_status(),
    )
    led = engine.get_led_default()
    if led is not None:
        status.led_default = led
    temp = engine.get_temperature()
    if temp is not None:
        status.temperature = temp
    return status
