# -*- coding: utf-8 -*-
"""打印引擎：按帧驱动“曝光 -> 黑屏 -> 下一层”的主循环。

每一帧（display.show/black 调一次就是一帧，按 FRAME_RATE 节拍）：
- 先看 abort 标志 / 窗口是否被关，是就收尾退出
- 曝光阶段：显示当前图片，帧计数到了就进黑屏，顺便记一下位移台位置
- 黑屏阶段：
    1) 还有下一张图、又没有运动在跑：后台线程启动 move_stage（每层只启动一次）
    2) 同一帧里把下一张图加载进另一个槽（双缓冲，每个黑屏阶段只加载一次）
    3) 每帧非阻塞地看一眼运动是否完成
    4) 运动完成 + 黑屏时间够了 + 下一张已加载 -> 换槽、图片序号 +1、回到曝光
    5) 没有下一张图：标记 all_images_shown，本帧画完就结束
- 同一时间最多只有一个运动任务；abort 不会打断正在走的运动，收尾时会等它走完

静态模式：前 initial_layers 层用 initial_exposure_frames，之后用 exposure_frames。
动态模式：按 [(LayerSetting, 层数), ...] 依次设电流、等光机稳定、跑对应层数。
"""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import serial

from display_control import HdmiDisplay
from image_sequence import get_layer_paths
from layer_settings import OrderedSettings
from light_engine import LightEngine
from motion import READY_POLL_S, MoveResult, move_stage
from smc100_client import POSITION_FIELD_LENGTH, Smc100Client, field_text, strip_line_endings

LogFn = Callable[[str], None]

# 换图后额外刷几帧黑屏
BLANK_FRAMES_AFTER_SWAP = 2
# 位置应答至少要有 地址+命令+6 位数值
MIN_POSITION_RESPONSE = 3 + POSITION_FIELD_LENGTH


class Phase(Enum):
    LIGHT = "light"
    DARK = "dark"
    FINISHED = "finished"
    ABORTED = "aborted"


@dataclass
class RunStats:
    outcome: str = ""
    images_total: int = 0
    images_shown: int = 0
    layers_completed: int = 0
    stage_moves: int = 0
    move_retries: int = 0
    frames_rendered: int = 0


@dataclass
class PrintRunState:
    image_paths: List[str]
    image_index: int = 0
    layer: int = 0                 # 已完成的曝光次数
    phase: Phase = Phase.LIGHT
    texture_slot: int = 0          # 当前显示的槽 0/1
    frame_count: int = 0           # 本次曝光已显示的帧数
    next_image_loading: bool = False
    next_image_loaded: bool = False
    all_images_shown: bool = False
    filename_logged: bool = False
    phase_started_at: float = field(default_factory=time.monotonic)
    dark_started_at: float = 0.0
    move_future: Optional[Future] = None

    @property
    def has_next_image(self) -> bool:
        return self.image_index + 1 < len(self.image_paths)

    @property
    def move_in_flight(self) -> bool:
        return self.move_future is not None

    @property
    def current_path(self) -> str:
        return self.image_paths[self.image_index]


class PrintEngine:
    def __init__(
        self,
        stage: Smc100Client,
        display: HdmiDisplay,
        light_engine: LightEngine,
        step_size: float,
        clip_mode: bool = False,
        dlp_pumping_action: float = 0.0,
        log: LogFn = print,
        should_abort: Optional[Callable[[], bool]] = None,
        settle_s: float = 2.0,
        ready_poll_s: float = READY_POLL_S,
        final_settle_s: float = 0.05,
    ):
        self.stage = stage
        self.display = display
        self.light_engine = light_engine
        self.step_size = step_size
        self.clip_mode = clip_mode
        self.dlp_pumping_action = dlp_pumping_action
        self.log = log
        self.should_abort = should_abort or (lambda: False)
        self.settle_s = settle_s
        self.ready_poll_s = ready_poll_s
        self.final_settle_s = final_settle_s

        self.stats = RunStats()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------
    # 两种模式
    # ------------------------------

    def run_static(
        self,
        image_dir: str,
        exposure_frames: int,
        dark_time_ms: int,
        initial_exposure_frames: int,
        initial_layers: int,
    ) -> RunStats:
        self.log("Run Full has started")
        st = self._start(image_dir)
        if st is None:
            return self._teardown(Phase.ABORTED)

        def frames_for(layer: int) -> int:
            return initial_exposure_frames if layer < initial_layers else exposure_frames

        try:
            self._run_layers(st, frames_for, dark_time_ms)
        except Exception:
            self._fail(st)
            raise
        return self._finish(st)

    def run_dynamic(self, image_dir: str, ordered_settings: OrderedSettings) -> RunStats:
        self.log("Run Full Dynamic has started")
        st = self._start(image_dir)
        if st is None:
            return self._teardown(Phase.ABORTED)

        try:
            self._run_settings(st, ordered_settings)
        except Exception:
            self._fail(st)
            raise
        return self._finish(st)

    def _run_settings(self, st: PrintRunState, ordered_settings: OrderedSettings) -> None:
        for setting, repeat_count in ordered_settings:
            self.log(
                f"Applying settings: Intensity {setting.intensity}, "
                f"Exposure Time: {setting.exposure_time}, Dark Time: {setting.dark_time}"
            )
            self.light_engine.set_current(setting.intensity)
            self.display.sleep_with_pump(self.settle_s)

            self._run_layers(
                st,
                lambda _layer, frames=setting.exposure_time: frames,
                setting.dark_time,
                layer_limit=repeat_count,
            )
            if st.phase in (Phase.FINISHED, Phase.ABORTED):
                return

        self.log("Layer settings exhausted.")
        self.light_engine.set_current(0)
        st.phase = Phase.FINISHED

    # ------------------------------
    # 主循环
    # ------------------------------

    def _start(self, image_dir: str) -> Optional[PrintRunState]:
        if not self.clip_mode:
            self.log("Dlp mode initialized.")
        self.stats = RunStats()

        self.log("Adding paths to imagePaths vector.")
        try:
            paths = get_layer_paths(image_dir)
        except OSError as e:
            self.log(f"Filesystem error: {e}")
            return None
        self.stats.images_total = len(paths)

        try:
            self.display.init()
            if not self.display.load(0, paths[0]):
                self.log(f"Failed to load first image: {paths[0]}")
        except Exception:
            self._teardown(Phase.ABORTED)
            raise

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stage-move")
        return PrintRunState(image_paths=paths)

    def _run_layers(
        self,
        st: PrintRunState,
        frames_for: Callable[[int], int],
        dark_time_ms: int,
        layer_limit: Optional[int] = None,
    ) -> None:
        """跑到结束/abort，或者（动态模式）跑满 layer_limit 层就返回。"""
        completed = 0
        while True:
            if not self.display.pump_events():
                self.log("Display window closed.")
                st.phase = Phase.ABORTED
                return
            if self.should_abort():
                self.log("Run Full aborted.")
                st.phase = Phase.ABORTED
                return

            if st.phase is Phase.LIGHT:
                self._light_frame(st, frames_for(st.layer))
            elif self._dark_frame(st, dark_time_ms):
                completed += 1
                if layer_limit is not None and completed >= layer_limit:
                    return

            if st.all_images_shown and st.phase is Phase.DARK:
                self.log("All images shown, exiting program.")
                self.light_engine.set_current(0)
                st.phase = Phase.FINISHED
                return

    def _light_frame(self, st: PrintRunState, max_count: int) -> None:
        self.display.show(st.texture_slot)
        self.stats.frames_rendered += 1

        if not st.filename_logged:
            st.filename_logged = True
            self.stats.images_shown += 1
            now = time.monotonic()
            self.log(f"Displaying: {st.current_path}")
            self.log(f"Dark phase duration: {int((now - st.phase_started_at) * 1000)} ms")
            st.phase_started_at = now

        st.frame_count += 1
        if st.frame_count < max_count:
            return

        # 曝光结束 -> 黑屏
        now = time.monotonic()
        st.phase = Phase.DARK
        st.frame_count = 0
        st.layer += 1
        self.stats.layers_completed += 1
        self.log(f"Light phase duration: {int((now - st.phase_started_at) * 1000)} ms")
        st.phase_started_at = now
        self._log_position()
        self.log(f"Current Image Index: {st.image_index} / {len(st.image_paths)}")
        st.dark_started_at = now

    def _dark_frame(self, st: PrintRunState, dark_time_ms: int) -> bool:
        """画一帧黑屏；本帧切到下一层时返回 True。"""
        self.display.black()
        self.stats.frames_rendered += 1

        if not st.has_next_image:
            if not st.move_in_flight:
                st.all_images_shown = True
            return False

        if not st.move_in_flight and not st.next_image_loaded:
            st.move_future = self._executor.submit(
                move_stage,
                self.stage,
                self.step_size,
                self.clip_mode,
                self.dlp_pumping_action,
                self.log,
                self.should_abort,
                self.ready_poll_s,
            )
            self.stats.stage_moves += 1

        if not st.next_image_loading:
            st.next_image_loading = True
            next_path = st.image_paths[st.image_index + 1]
            if not self.display.load(1 - st.texture_slot, next_path):
                self.log(f"Failed to load image: {next_path}")
            st.next_image_loaded = True
            self.log("Next Image Loaded.")

        if st.move_in_flight and st.move_future.done():
            self._collect_move(st)

        elapsed_ms = (time.monotonic() - st.dark_started_at) * 1000
        if elapsed_ms > dark_time_ms and st.next_image_loaded and not st.move_in_flight:
            st.image_index += 1
            st.texture_slot = 1 - st.texture_slot
            st.next_image_loading = False
            st.next_image_loaded = False
            st.filename_logged = False
            st.phase = Phase.LIGHT
            for _ in range(BLANK_FRAMES_AFTER_SWAP):
                self.display.black()
            return True
        return False

    def _collect_move(self, st: PrintRunState) -> MoveResult:
        result = st.move_future.result()
        st.move_future = None
        self.stats.move_retries += result.retries
        if not result.completed:
            self.log("Stage move did not complete.")
        return result

    def _log_position(self) -> None:
        """曝光结束时记一下位置；读失败只记日志。"""
        try:
            raw = self.stage.get_position()
        except (serial.SerialException, OSError) as e:
            self.log(f"Exception caught while processing position: {e}")
            return
        if len(strip_line_endings(raw)) >= MIN_POSITION_RESPONSE:
            self.log(f"Position: {field_text(raw, POSITION_FIELD_LENGTH)} mm")
        else:
            self.log("Error: Position string too short or in unexpected format.")

    # ------------------------------
    # 收尾
    # ------------------------------

    def _fail(self, st: PrintRunState) -> None:
        """主循环抛异常时：照常等运动、回零、释放串口和窗口，异常由调用方继续往上抛。"""
        self.log("Run Full interrupted by an error.")
        st.phase = Phase.ABORTED
        self._finish(st)

    def _finish(self, st: PrintRunState) -> RunStats:
        try:
            # 运动不打断，等它走完
            if st.move_in_flight:
                self._collect_move(st)
            self._shutdown_executor()

            time.sleep(self.final_settle_s)
            try:
                position = strip_line_endings(self.stage.get_position())
                self.log(f"Final position: {position}")
            except (serial.SerialException, OSError) as e:
                self.log(f"Failed to read final position: {e}")

            try:
                self.log("Homed" if self.stage.home() else "Failed")
            except (serial.SerialException, OSError) as e:
                self.log(f"Failed to home: {e}")
        finally:
            self._teardown(st.phase)
        return self.stats

    def _shutdown_executor(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _teardown(self, phase: Phase) -> RunStats:
        self._shutdown_executor()
        try:
            self.stage.close()
            self.log("Closed connection")
        finally:
            self.display.close()
        self.stats.outcome = phase.value
        self.log(f"Run Full has finished: {phase.value}")
        return self.stats
