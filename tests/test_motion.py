# -*- coding: utf-8 -*-
import pytest
import serial

from motion import (
    check_stage,
    deinitialize_stage,
    initialize_stage,
    move_stage,
    wait_for_position,
    wait_for_velocity,
)

from conftest import LogSink, open_sim_stage

FAST = dict(poll_s=0.001)


class TestWaitForPosition:
    """位置等待：每轮查位置、重发目标，超时返回 False。"""

    def test_converges_by_reissuing_target(self, stage, device, log):
        assert wait_for_position(stage, 5.0, 0.01, timeout_s=1.0, log=log, **FAST)
        assert ("PA", 5.0) in device.moves
        assert log.has("Position: 5.0000 mm")

    def test_already_there(self, stage, device, log):
        assert wait_for_position(stage, 0.0, 0.01, timeout_s=1.0, log=log, **FAST)
        assert device.moves == []

    def test_timeout_without_answers(self, log):
        stage = open_sim_stage(address="2")
        assert wait_for_position(stage, 5.0, 0.01, timeout_s=0.05, log=log, **FAST) is False
        assert log.has("Position string format invalid")
        assert log.has("Timeout reached.")


class TestWaitForVelocity:
    """速度等待和位置等待同一套路。"""

    def test_converges(self, stage, device, log):
        assert wait_for_velocity(stage, 3.0, 0.5, timeout_s=1.0, log=log, **FAST)
        assert device.velocity == 3.0

    def test_timeout(self, log):
        stage = open_sim_stage(address="2")
        assert wait_for_velocity(stage, 3.0, 0.5, timeout_s=0.05, log=log, **FAST) is False
        assert log.has("Timeout reached.")


class TestMoveStage:
    """一层运动的顺序、重试和取消。"""

    def test_dlp_sequence(self, stage, device, log):
        result = move_stage(stage, 0.05, False, 2.0, log=log, poll_s=0.001)
        assert result.completed
        assert result.retries == 0
        assert device.moves == [("PR", -2.0), ("PR", 0.05), ("PR", 2.0)]
        assert device.position == pytest.approx(0.05)
        assert log.has("DLP Movement triggered UP")

    def test_clip_mode_single_step(self, stage, device, log):
        result = move_stage(stage, 0.05, True, 2.0, log=log, poll_s=0.001)
        assert result.completed
        assert device.moves == [("PR", 0.05)]

    def test_waits_for_ready(self, log):
        stage = open_sim_stage(moving_polls=3)
        result = move_stage(stage, 0.05, True, 0.0, log=log, poll_s=0.001)
        assert result.completed
        assert stage.ser.state_code == "33"

    def test_write_failures_are_retried(self, log):
        stage = open_sim_stage(fail_writes=2)
        result = move_stage(stage, 0.05, False, 2.0, log=log, poll_s=0.001)
        assert result.completed
        assert result.retries == 2
        assert stage.ser.moves == [("PR", -2.0), ("PR", 0.05), ("PR", 2.0)]
        assert log.has("Retrying...")

    def test_abort_cancels_retries(self, log):
        stage = open_sim_stage(fail_writes=100)
        result = move_stage(stage, 0.05, False, 2.0, log=log, should_abort=lambda: True, poll_s=0.001)
        assert not result.completed
        assert result.retries == 1
        assert stage.ser.moves == []


class TestStageSetup:
    """打印前定位、打印后复位、状态快照。"""

    def test_initialize_stage(self, stage, device, log):
        initialize_stage(stage, 12.0, 1.0, 3.0, timeout_s=1.0, log=log, settle_s=0.0, poll_s=0.001)
        assert device.home_count == 1
        assert device.moves == [("PA", 2.0), ("PA", 12.0)]
        assert device.position == pytest.approx(12.0)
        assert device.velocity == 1.0

    def test_deinitialize_stage(self, stage, device, log):
        stage.absolute_move(12.0)
        deinitialize_stage(stage, 3.0, timeout_s=1.0, log=log, settle_s=0.0, poll_s=0.001)
        assert device.home_count == 1
        assert device.moves[-2:] == [("PA", -10.0), ("PA", 0.0)]
        assert device.position == 0.0
        assert device.velocity == 3.0

    def test_check_stage(self, stage):
        log = LogSink()
        status = check_stage(stage, log, settle_s=0.0)
        assert status.position == 0.0
        assert status.velocity == 1.0
        assert status.acceleration == 10.0
        assert status.positive_limit == 25.0
        # 两位字段截断
        assert status.negative_limit == -2.0

    def test_check_stage_keeps_partial_snapshot(self, log):
        stage = open_sim_stage(address="2")
        status = check_stage(stage, log, settle_s=0.0)
        assert status.position == 0.0
        assert log.has("Exception occurred in checkStage")


def fail_first_call(func):
    calls = {"n": 0}

    def wrapper(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise serial.SerialException("write failed")
        return func(*args, **kwargs)

    return wrapper


class TestSerialErrorsDuringWaits:
    """等待过程中串口读写出错：记日志，继续轮询。"""

    def test_failed_position_reissue_keeps_polling(self, monkeypatch, stage, device, log):
        monkeypatch.setattr(stage, "absolute_move", fail_first_call(stage.absolute_move))
        assert wait_for_position(stage, 5.0, 0.01, timeout_s=1.0, log=log, **FAST)
        assert log.has("Exception caught while reissuing position: write failed")
        assert device.position == 5.0

    def test_failed_velocity_reissue_keeps_polling(self, monkeypatch, stage, device, log):
        monkeypatch.setattr(stage, "set_velocity", fail_first_call(stage.set_velocity))
        assert wait_for_velocity(stage, 3.0, 0.5, timeout_s=1.0, log=log, **FAST)
        assert log.has("Exception caught while reissuing velocity: write failed")
        assert device.velocity == 3.0

    def test_reissue_failing_until_timeout(self, monkeypatch, stage, log):
        def broken(target):
            raise serial.SerialException("write failed")

        monkeypatch.setattr(stage, "absolute_move", broken)
        assert wait_for_position(stage, 5.0, 0.01, timeout_s=0.05, log=log, **FAST) is False
        assert log.has("Timeout reached.")

    def test_deinitialize_survives_position_read_error(self, monkeypatch, stage, device, log):
        stage.absolute_move(12.0)
        monkeypatch.setattr(stage, "get_position", fail_first_call(stage.get_position))
        deinitialize_stage(stage, 3.0, timeout_s=1.0, log=log, settle_s=0.0, poll_s=0.001)
        assert log.has("Exception caught while reading position: write failed")
        assert device.position == 0.0
