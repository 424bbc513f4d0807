# -*- coding: utf-8 -*-
"""后台打印线程：初始化位移台 -> 打印引擎（静态/动态）-> 复位。

界面线程（或 run_print.py 的主线程）不直接碰硬件，只做两件事：
- worker.abort()：设置 abort 标志，引擎每帧检查一次
- 从 worker.messages 里取消息：("log", str) / ("error", str) / ("finished", RunStats 或 None)
消息只从 worker 流向调用方，单向排队。
"""

from __future__ import annotations

import queue
import threading
from typing import Callable, Optional

from config import Settings
from display_control import HdmiDisplay
from layer_settings import OrderedSettings
from light_engine import LightEngine, apply_current
from motion import deinitialize_stage, initialize_stage
from print_engine import PrintEngine, RunStats
from smc100_client import Smc100Client

LogFn = Callable[[str], None]
StageFactory = Callable[[], Smc100Client]


def run_job(
    cfg: Settings,
    open_stage: StageFactory,
    light_engine: LightEngine,
    display: HdmiDisplay,
    ordered_settings: Optional[OrderedSettings] = None,
    log: LogFn = print,
    should_abort: Optional[Callable[[], bool]] = None,
) -> RunStats:
    """一次完整打印。每个阶段各开一次串口，用完就关。"""
    log("Initializing system...")
    stage = open_stage()
    try:
        initialize_stage(
            stage,
            cfg.INITIAL_POSITION,
            cfg.VELOCITY,
            cfg.INITIAL_VELOCITY,
            cfg.POSITION_TOLERANCE,
            cfg.VELOCITY_TOLERANCE,
            cfg.STAGE_WAIT_TIMEOUT_S,
            log,
        )
    finally:
        stage.close()

    display.init()
    display.black()
    apply_current(light_engine, cfg.INPUT_CURRENT, log)
    log(
        f"System initialized with current: {cfg.INPUT_CURRENT}, position: {cfg.INITIAL_POSITION}, "
        f"velocity: {cfg.VELOCITY}, initialVelocity: {cfg.INITIAL_VELOCITY}"
    )
    log(f"Dynamic Status: {ordered_settings is not None}")

    try:
        engine = PrintEngine(
            stage=open_stage(),
            display=display,
            light_engine=light_engine,
            step_size=cfg.STEP_SIZE,
            clip_mode=cfg.CLIP_MODE,
            dlp_pumping_action=cfg.DLP_PUMPING_ACTION,
            log=log,
            should_abort=should_abort,
            settle_s=cfg.SETTINGS_SETTLE_S,
        )
        if ordered_settings is not None:
            log("Entering Dynamic Function")
            stats = engine.run_dynamic(cfg.IMAGE_DIR, ordered_settings)
        else:
            stats = engine.run_static(
                cfg.IMAGE_DIR,
                cfg.EXPOSURE_FRAMES,
                cfg.DARK_TIME_MS,
                cfg.INITIAL_EXPOSURE_FRAMES,
                cfg.INITIAL_LAYERS,
            )
    finally:
        # 打印中途出错也要把位移台复位
        log("Deinitializing System.")
        stage = open_stage()
        try:
            deinitialize_stage(
                stage,
                cfg.INITIAL_VELOCITY,
                cfg.POSITION_TOLERANCE,
                cfg.VELOCITY_TOLERANCE,
                cfg.STAGE_WAIT_TIMEOUT_S,
                log,
            )
        finally:
            stage.close()
        apply_current(light_engine, cfg.INPUT_CURRENT, log)
        log("Deinitialization finished.")
    return stats


class PrintWorker(threading.Thread):
    def __init__(
        self,
        cfg: Settings,
        open_stage: StageFactory,
        light_engine: LightEngine,
        display: HdmiDisplay,
        ordered_settings: Optional[OrderedSettings] = None,
    ):
        super().__init__(name="print-worker", daemon=True)
        self.cfg = cfg
        self.open_stage = open_stage
        self.light_engine = light_engine
        self.display = display
        self.ordered_settings = ordered_settings
        self.messages: "queue.Queue[tuple]" = queue.Queue()
        self.stats: Optional[RunStats] = None
        self._abort = threading.Event()

    def abort(self) -> None:
        self._abort.set()

    def is_aborted(self) -> bool:
        return self._abort.is_set()

    def log(self, message: str) -> None:
        self.messages.put(("log", message))

    def run(self) -> None:
        print(f"[worker] thread {threading.get_ident()} started")
        try:
            self.stats = run_job(
                self.cfg,
                self.open_stage,
                self.light_engine,
                self.display,
                self.ordered_settings,
                log=self.log,
                should_abort=self.is_aborted,
            )
        except Exception as e:
            mode = "RunFullDynamic" if self.ordered_settings is not None else "RunFull"
            self.messages.put(("error", f"Error in {mode}: {e}"))
        finally:
            self.messages.put(("finished", self.stats))
