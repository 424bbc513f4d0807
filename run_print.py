#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""最终主程序（尽量只包含“创建对象 + 调用函数”的流程）。

运行方式：
    python3 run_print.py                 # 静态模式，参数全在 config.py
    python3 run_print.py layers.csv      # 动态模式，每层参数来自 csv

打印过程中按 Ctrl+C：安全中止（等当前这次运动走完，再回零、关串口）。

你主要修改：
    config.py
"""

import dataclasses
import queue
import sys

import serial

from config import Settings
from display_control import HdmiDisplay
from layer_settings import SettingsFormatError, read_settings_ordered
from light_engine import (
    LightEngineTimeout,
    LightEngineUnavailable,
    SimulatedLightEngine,
    UsbLightEngine,
    turn_off,
    turn_on,
)
from smc100_client import Smc100Client, StageConnectionError
from smc100_sim import SimulatedSmc100
from worker import PrintWorker


def make_stage_factory(cfg: Settings):
    serial_factory = SimulatedSmc100 if cfg.DRY_RUN else serial.Serial

    def open_stage() -> Smc100Client:
        return Smc100Client(
            cfg.SERIAL_PORT,
            baudrate=cfg.BAUDRATE,
            address=cfg.STAGE_ADDRESS,
            read_timeout_s=cfg.STAGE_READ_TIMEOUT_S,
            serial_factory=serial_factory,
        )

    return open_stage


def drain_messages(worker: PrintWorker):
    """在主线程打印 worker 的消息，直到收到 finished。Ctrl+C -> abort。"""
    while True:
        try:
            kind, payload = worker.messages.get(timeout=0.1)
        except queue.Empty:
            continue
        except KeyboardInterrupt:
            print("\n收到 Ctrl+C，正在中止打印...")
            worker.abort()
            continue

        if kind == "log":
            print(payload)
        elif kind == "error":
            print(f"[ERROR] {payload}")
        elif kind == "finished":
            return payload


def main() -> int:
    cfg = Settings()
    if len(sys.argv) >= 2:
        cfg = dataclasses.replace(cfg, SETTINGS_CSV=sys.argv[1])

    # 1) 动态模式：先把参数表读进来，格式不对就不开始
    ordered_settings = None
    if cfg.SETTINGS_CSV:
        try:
            ordered_settings = read_settings_ordered(cfg.SETTINGS_CSV)
        except (OSError, SettingsFormatError) as e:
            print(f"错误：参数表读取失败：{e}")
            return 1
        for setting, count in ordered_settings:
            print(f"  {setting} x {count}")

    # 2) 串口先试开一次，打不开直接退出
    open_stage = make_stage_factory(cfg)
    print(f"Testing Initialization with {cfg.SERIAL_PORT}... ", end="")
    try:
        open_stage().close()
    except StageConnectionError as e:
        print("Initialization Failed! Exit Program. No control!")
        print(e)
        return 1
    print("Success")

    # 3) 光机上电 + 预热
    try:
        light = SimulatedLightEngine() if cfg.DRY_RUN else UsbLightEngine(cfg.LIGHT_ENGINE_LIBRARY)
        turn_on(
            light,
            device_index=cfg.LIGHT_ENGINE_DEVICE_INDEX,
            timeout_s=cfg.WARMUP_TIMEOUT_S,
            poll_s=cfg.WARMUP_POLL_S,
        )
    except (LightEngineUnavailable, LightEngineTimeout) as e:
        print(f"错误：{e}")
        return 1

    # 4) 后台线程跑打印，主线程只打印日志
    display = HdmiDisplay(display_index=cfg.DISPLAY_INDEX, frame_rate=cfg.FRAME_RATE)
    worker = PrintWorker(cfg, open_stage, light, display, ordered_settings)
    worker.start()
    stats = drain_messages(worker)
    worker.join()

    # 5) 收尾
    turn_off(light)

    print("\n=== DONE ===")
    print(stats)
    return 0 if stats is not None and stats.outcome == "finished" else 1


if __name__ == "__main__":
    sys.exit(main())
