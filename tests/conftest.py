# -*- coding: utf-8 -*-
"""测试公共夹具：模拟位移台、模拟光机、假显示器（不开 pygame 窗口）。"""

import time

import pytest

from light_engine import SimulatedLightEngine
from smc100_client import Smc100Client
from smc100_sim import SimulatedSmc100


class FakeDisplay:
    """记录每一帧显示了什么：('show', path) 或 ('black', None)。"""

    def __init__(self, open_window=True):
        self.slots = [None, None]
        self.frames = []
        self.show_times = []
        self.loads = []
        self.inited = False
        self.closed = False
        self.open_window = open_window

    def init(self):
        self.inited = True

    def load(self, slot, image_path):
        self.slots[slot] = image_path
        self.loads.append((slot, image_path))
        return True

    def show(self, slot):
        self.frames.append(("show", self.slots[slot]))
        self.show_times.append((self.slots[slot], time.monotonic()))

    def black(self):
        self.frames.append(("black", None))

    def pump_events(self):
        return self.open_window

    def sleep_with_pump(self, seconds):
        pass

    def close(self):
        self.closed = True

    @property
    def shown(self):
        return [path for kind, path in self.frames if kind == "show"]

    @property
    def black_count(self):
        return sum(1 for kind, _ in self.frames if kind == "black")


class LogSink:
    def __init__(self):
        self.lines = []

    def __call__(self, message):
        self.lines.append(message)

    def has(self, fragment):
        return any(fragment in line for line in self.lines)

    def index(self, fragment):
        for i, line in enumerate(self.lines):
            if fragment in line:
                return i
        raise ValueError(fragment)


def open_sim_stage(**sim_kwargs):
    def factory(port, baudrate, timeout):
        return SimulatedSmc100(port, baudrate=baudrate, timeout=timeout, **sim_kwargs)

    return Smc100Client("SIM", serial_factory=factory)


@pytest.fixture
def stage():
    return open_sim_stage()


@pytest.fixture
def device(stage):
    return stage.ser


@pytest.fixture
def light():
    return SimulatedLightEngine()


@pytest.fixture
def display():
    return FakeDisplay()


@pytest.fixture
def log():
    return LogSink()


@pytest.fixture
def image_dir(tmp_path):
    """SEC_1/SEC_2/SEC_10 三张“图片”（假显示器不解码，内容无所谓）。"""
    folder = tmp_path / "slices"
    folder.mkdir()
    for n in (10, 2, 1):
        (folder / f"SEC_{n}.PNG").write_bytes(b"\x89PNG")
    return folder
