# -*- coding: utf-8 -*-
import os
import threading
from collections import Counter

import pytest
import serial

import motion
import print_engine
from layer_settings import LayerSetting
from light_engine import SimulatedLightEngine
from print_engine import PrintEngine

from conftest import FakeDisplay, open_sim_stage

PUMP = [("PR", -2.0), ("PR", 0.05), ("PR", 2.0)]


def make_engine(stage, display, light, log, **kwargs):
    options = dict(
        step_size=0.05,
        clip_mode=False,
        dlp_pumping_action=2.0,
        log=log,
        settle_s=0.0,
        ready_poll_s=0.001,
        final_settle_s=0.0,
    )
    options.update(kwargs)
    return PrintEngine(stage, display, light, **options)


def names(paths):
    return [os.path.basename(p) for p in paths]


def distinct_in_order(paths):
    out = []
    for p in paths:
        if not out or out[-1] != p:
            out.append(p)
    return out


class TestStaticRun:
    """静态模式：固定帧数曝光，黑屏期间走一层。"""

    def test_full_run(self, stage, device, display, light, log, image_dir):
        engine = make_engine(stage, display, light, log)
        stats = engine.run_static(str(image_dir), 2, 50, 2, 0)

        assert stats.outcome == "finished"
        assert stats.images_total == 3
        assert stats.images_shown == 3
        assert stats.layers_completed == 3
        # 最后一层之后不再运动
        assert stats.stage_moves == 2
        assert device.moves == PUMP * 2

        assert names(distinct_in_order(display.shown)) == ["SEC_1.PNG", "SEC_2.PNG", "SEC_10.PNG"]
        assert list(Counter(display.shown).values()) == [2, 2, 2]
        assert [slot for slot, _ in display.loads] == [0, 1, 0]

        assert light.current_history == [0]
        assert device.home_count == 1
        assert log.index("Homed") < log.index("Closed connection")
        assert log.has("All images shown, exiting program.")
        assert not stage.is_open
        assert display.closed

    def test_image_index_is_monotonic(self, stage, display, light, log, image_dir):
        make_engine(stage, display, light, log).run_static(str(image_dir), 1, 0, 1, 0)
        indices = [line for line in log.lines if line.startswith("Current Image Index:")]
        assert indices == [
            "Current Image Index: 0 / 3",
            "Current Image Index: 1 / 3",
            "Current Image Index: 2 / 3",
        ]

    def test_initial_layers_use_initial_frames(self, stage, display, light, log, image_dir):
        make_engine(stage, display, light, log).run_static(str(image_dir), 2, 0, 5, 1)
        counts = Counter(display.shown)
        assert [counts[p] for p in distinct_in_order(display.shown)] == [5, 2, 2]

    def test_clip_mode_moves_one_step(self, stage, device, display, light, log, image_dir):
        engine = make_engine(stage, display, light, log, clip_mode=True)
        stats = engine.run_static(str(image_dir), 1, 0, 1, 0)
        assert stats.outcome == "finished"
        assert device.moves == [("PR", 0.05), ("PR", 0.05)]
        assert not log.has("Dlp mode initialized.")

    def test_one_move_at_a_time(self, monkeypatch, tmp_path, display, light, log):
        for n in range(1, 6):
            (tmp_path / f"SEC_{n}.PNG").write_bytes(b"")
        stage = open_sim_stage(moving_polls=2)

        lock = threading.Lock()
        active = {"now": 0, "peak": 0}

        def tracking_move(*args, **kwargs):
            with lock:
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
            try:
                return motion.move_stage(*args, **kwargs)
            finally:
                with lock:
                    active["now"] -= 1

        monkeypatch.setattr(print_engine, "move_stage", tracking_move)
        stats = make_engine(stage, display, light, log).run_static(str(tmp_path), 1, 0, 1, 0)

        assert stats.outcome == "finished"
        assert stats.stage_moves == 4
        assert active["peak"] == 1
        assert stage.ser.moves == PUMP * 4

    def test_position_read_failure_is_logged(self, monkeypatch, stage, display, light, log, image_dir):
        def broken():
            raise serial.SerialException("read failed")

        monkeypatch.setattr(stage, "get_position", broken)
        stats = make_engine(stage, display, light, log).run_static(str(image_dir), 1, 0, 1, 0)
        assert stats.outcome == "finished"
        assert log.has("Exception caught while processing position")
        assert log.has("Failed to read final position")

    def test_short_position_answer_is_logged(self, monkeypatch, stage, display, light, log, image_dir):
        monkeypatch.setattr(stage, "get_position", lambda: "1TP\r\n")
        make_engine(stage, display, light, log).run_static(str(image_dir), 1, 0, 1, 0)
        assert log.has("Error: Position string too short or in unexpected format.")


class TestAbort:
    """中止：每帧检查，正在走的运动会等它走完。"""

    def test_abort_during_light_phase(self, stage, device, light, log, image_dir):
        display = FakeDisplay()
        engine = make_engine(stage, display, light, log, should_abort=lambda: len(display.shown) >= 1)
        stats = engine.run_static(str(image_dir), 10, 0, 10, 0)

        assert stats.outcome == "aborted"
        assert stats.stage_moves == 0
        assert device.moves == []
        assert len(display.shown) == 1
        assert log.has("Run Full aborted.")
        assert not stage.is_open
        assert display.closed

    def test_abort_joins_in_flight_move(self, light, log, image_dir):
        stage = open_sim_stage(moving_polls=20)
        display = FakeDisplay()
        engine = make_engine(stage, display, light, log, should_abort=lambda: display.black_count >= 1)
        stats = engine.run_static(str(image_dir), 1, 1000, 1, 0)

        assert stats.outcome == "aborted"
        assert stats.stage_moves == 1
        # 三步都走完了才收尾
        assert stage.ser.moves == PUMP
        assert log.index("Homed") > 0

    def test_window_closed(self, stage, light, log, image_dir):
        display = FakeDisplay(open_window=False)
        stats = make_engine(stage, display, light, log).run_static(str(image_dir), 2, 0, 2, 0)
        assert stats.outcome == "aborted"
        assert display.frames == []
        assert log.has("Display window closed.")

    def test_missing_image_dir(self, stage, device, display, light, log, tmp_path):
        stats = make_engine(stage, display, light, log).run_static(str(tmp_path / "missing"), 2, 0, 2, 0)
        assert stats.outcome == "aborted"
        assert log.has("Filesystem error")
        assert device.moves == []
        assert not display.inited
        assert display.closed
        assert not stage.is_open

    def test_empty_image_dir(self, stage, display, light, log, tmp_path):
        stats = make_engine(stage, display, light, log).run_static(str(tmp_path), 2, 0, 2, 0)
        assert stats.outcome == "aborted"
        assert stats.images_total == 0


class TestDynamicRun:
    """动态模式：每组参数先设电流，再跑对应层数。"""

    def test_settings_cover_all_images(self, stage, device, display, light, log, image_dir):
        ordered = [(LayerSetting(100, 2, 0), 1), (LayerSetting(150, 3, 0), 2)]
        stats = make_engine(stage, display, light, log).run_dynamic(str(image_dir), ordered)

        assert stats.outcome == "finished"
        assert stats.stage_moves == 2
        assert light.current_history == [100, 150, 0]
        counts = Counter(display.shown)
        assert [counts[p] for p in distinct_in_order(display.shown)] == [2, 3, 3]
        assert log.has("Applying settings: Intensity 150, Exposure Time: 3, Dark Time: 0")
        assert not log.has("Layer settings exhausted.")

    def test_settings_exhausted_first(self, stage, device, display, light, log, image_dir):
        ordered = [(LayerSetting(100, 1, 0), 1)]
        stats = make_engine(stage, display, light, log).run_dynamic(str(image_dir), ordered)

        assert stats.outcome == "finished"
        assert stats.images_shown == 1
        assert stats.stage_moves == 1
        assert names(display.shown) == ["SEC_1.PNG"]
        assert log.has("Layer settings exhausted.")
        # 和“所有图片显示完”一样，结束时关掉驱动电流
        assert light.current_history == [100, 0]

    def test_abort_stops_remaining_settings(self, stage, light, log, image_dir):
        display = FakeDisplay()
        engine = make_engine(stage, display, light, log, should_abort=lambda: len(display.shown) >= 1)
        ordered = [(LayerSetting(100, 5, 0), 1), (LayerSetting(150, 5, 0), 1)]
        stats = engine.run_dynamic(str(image_dir), ordered)

        assert stats.outcome == "aborted"
        assert light.current_history == [100]


class TestDarkTime:
    """黑屏时间没到不换下一张。"""

    def test_next_image_waits_for_dark_time(self, stage, display, light, log, image_dir):
        stats = make_engine(stage, display, light, log).run_static(str(image_dir), 1, 200, 1, 0)
        assert stats.outcome == "finished"

        first_shown = {}
        last_shown = {}
        for path, t in display.show_times:
            first_shown.setdefault(path, t)
            last_shown[path] = t
        order = distinct_in_order(display.shown)
        for prev, nxt in zip(order, order[1:]):
            assert first_shown[nxt] - last_shown[prev] >= 0.2


class FailingLightEngine(SimulatedLightEngine):
    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on

    def set_current(self, value, channel=0):
        if value == self.fail_on:
            raise OSError("usb write failed")
        return super().set_current(value, channel)


class FailingLoadDisplay(FakeDisplay):
    """第一张能加载，预加载下一张时抛异常。"""

    def load(self, slot, image_path):
        if self.loads:
            raise RuntimeError("texture upload failed")
        return super().load(slot, image_path)


class TestErrorTeardown:
    """主循环里抛异常：资源照样释放，异常继续往上抛。"""

    def test_light_engine_error_releases_resources(self, stage, device, display, log, image_dir):
        light = FailingLightEngine(fail_on=150)
        ordered = [(LayerSetting(150, 2, 0), 3)]
        engine = make_engine(stage, display, light, log)

        with pytest.raises(OSError):
            engine.run_dynamic(str(image_dir), ordered)

        assert not stage.is_open
        assert display.closed
        assert device.home_count == 1
        assert engine.stats.outcome == "aborted"
        assert log.has("Run Full interrupted by an error.")

    def test_display_error_joins_in_flight_move(self, light, log, image_dir):
        stage = open_sim_stage(moving_polls=5)
        display = FailingLoadDisplay()
        engine = make_engine(stage, display, light, log)

        with pytest.raises(RuntimeError):
            engine.run_static(str(image_dir), 1, 0, 1, 0)

        # 异常发生时运动已经发出，收尾前等它走完
        assert stage.ser.moves == PUMP
        assert engine._executor is None
        assert not stage.is_open
        assert display.closed
        assert log.index("Homed") < log.index("Closed connection")
