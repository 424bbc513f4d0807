# -*- coding: utf-8 -*-
"""位移台运动同步：把 Smc100Client 的单发命令变成“会收敛、有超时”的操作。

- wait_for_position / wait_for_velocity：每 ~50ms 查一次，同时重发目标值
  （SMC100 不是严格一问一答，命令偶尔会丢，重发是故意的），超时就放弃。
- move_stage：一层的相对运动（DLP 模式先抬、再走一层、再落回），
  每一步都等到 Ready；出异常就记日志、稍等、重发同一步，不限次数。
  Ready 等待本身没有超时（认为设备最终一定会回 Ready）。
- initialize_stage / deinitialize_stage / check_stage：打印前后的整套定位流程。
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

import serial

from smc100_client import (
    ACCELERATION_FIELD_LENGTH,
    LIMIT_FIELD_LENGTH,
    POSITION_FIELD_LENGTH,
    READY,
    VELOCITY_FIELD_LENGTH,
    Smc100Client,
    StageProtocolError,
    field_text,
    parse_field,
)

LogFn = Callable[[str], None]

WAIT_POLL_S = 0.05
READY_POLL_S = 0.003
# 初始化/复位时先停在目标位置上方 10mm，再慢速进到位
APPROACH_OFFSET = 10.0


@dataclass
class StageStatus:
    position: float = 0.0
    velocity: float = 0.0
    acceleration: float = 0.0
    positive_limit: float = 0.0
    negative_limit: float = 0.0


@dataclass
class MoveResult:
    completed: bool
    retries: int = 0


def check_timeout(start: float, timeout_s: float, log: LogFn = print) -> bool:
    if time.monotonic() - start >= timeout_s:
        log("Timeout reached.")
        return True
    return False


def wait_for_position(
    stage: Smc100Client,
    target: float,
    tolerance: float,
    timeout_s: float,
    log: LogFn = print,
    poll_s: float = WAIT_POLL_S,
) -> bool:
    """等位置进入 |当前 - 目标| < tolerance。返回是否到位（超时返回 False，不抛）。"""
    start = time.monotonic()
    while True:
        time.sleep(poll_s)
        try:
            raw = stage.get_position()
            time.sleep(poll_s)
            current = parse_field(raw, POSITION_FIELD_LENGTH, strict=True)
            log(f"Position: {field_text(raw, POSITION_FIELD_LENGTH)} mm")
            if abs(current - target) < tolerance:
                return True
        except StageProtocolError as e:
            log(f"Position string format invalid or too short. ({e})")
        except (serial.SerialException, OSError) as e:
            log(f"Exception caught while processing position: {e}")

        try:
            stage.absolute_move(target)
        except (serial.SerialException, OSError) as e:
            log(f"Exception caught while reissuing position: {e}")
        if check_timeout(start, timeout_s, log):
            return False


def wait_for_velocity(
    stage: Smc100Client,
    target: float,
    tolerance: float,
    timeout_s: float,
    log: LogFn = print,
    poll_s: float = WAIT_POLL_S,
) -> bool:
    """和 wait_for_position 一样，换成速度；每轮重发 VA。"""
    start = time.monotonic()
    while True:
        time.sleep(poll_s)
        try:
            raw = stage.get_velocity()
            time.sleep(2 * poll_s)
            current = parse_field(raw, VELOCITY_FIELD_LENGTH, strict=True)
            log(f"Velocity: {field_text(raw, VELOCITY_FIELD_LENGTH)} mm/s")
            if abs(current - target) < tolerance:
                return True
        except StageProtocolError as e:
            log(f"Velocity string format invalid or too short. ({e})")
        except (serial.SerialException, OSError) as e:
            log(f"Exception caught while processing velocity: {e}")

        try:
            stage.set_velocity(target)
        except (serial.SerialException, OSError) as e:
            log(f"Exception caught while reissuing velocity: {e}")
        if check_timeout(start, timeout_s, log):
            return False


def move_stage(
    stage: Smc100Client,
    step_size: float,
    clip_mode: bool,
    dlp_pumping_action: float,
    log: LogFn = print,
    should_abort: Optional[Callable[[], bool]] = None,
    poll_s: float = READY_POLL_S,
) -> MoveResult:
    """一层的运动。DLP 模式：-pump -> step -> +pump；CLIP 模式只走 step。

    每一步出异常都重发同一步；只有 should_abort() 为真时才放弃重试，
    此时返回 completed=False，后面的步骤也不再发。
    """
    retries = 0

    def move_and_check_ready(distance: float) -> bool:
        nonlocal retries
        while True:
            try:
                stage.relative_move(distance)
                time.sleep(poll_s)
                while True:
                    time.sleep(poll_s)
                    if stage.get_current_status() == READY:
                        return True
            except Exception as e:
                retries += 1
                log(f"Exception caught: {e}. Retrying...")
                if should_abort is not None and should_abort():
                    log("Move retry cancelled by abort.")
                    return False
                time.sleep(poll_s)

    if not clip_mode:
        log("DLP Movement triggered UP")
        if not move_and_check_ready(-dlp_pumping_action):
            return MoveResult(False, retries)

    if not move_and_check_ready(step_size):
        return MoveResult(False, retries)

    if not clip_mode:
        if not move_and_check_ready(dlp_pumping_action):
            return MoveResult(False, retries)

    return MoveResult(True, retries)


def read_position(stage: Smc100Client) -> float:
    return parse_field(stage.get_position(), POSITION_FIELD_LENGTH)


def check_stage(stage: Smc100Client, log: LogFn = print, settle_s: float = 0.05) -> StageStatus:
    """读一份位移台快照。中途出错就记日志，返回已读到的部分（其余为 0）。"""
    status = StageStatus()
    try:
        status.position = read_position(stage)
        log(f"Position: {status.position} mm")
        time.sleep(settle_s)
        status.velocity = parse_field(stage.get_velocity(), VELOCITY_FIELD_LENGTH)
        log(f"Velocity: {status.velocity} mm/s")
        time.sleep(settle_s)
        status.acceleration = parse_field(stage.get_acceleration(), ACCELERATION_FIELD_LENGTH)
        log(f"Acceleration: {status.acceleration} mm/s2")
        time.sleep(settle_s)
        status.positive_limit = parse_field(stage.get_positive_limit(), LIMIT_FIELD_LENGTH)
        log(f"Positive Limit: {status.positive_limit} mm")
        time.sleep(settle_s)
        status.negative_limit = parse_field(stage.get_negative_limit(), LIMIT_FIELD_LENGTH)
        log(f"Negative Limit: {status.negative_limit} mm")
    except (StageProtocolError, serial.SerialException, OSError) as e:
        log(f"Exception occurred in checkStage: {e}")
    return status


def initialize_stage(
    stage: Smc100Client,
    initial_position: float,
    velocity: float,
    initial_velocity: float,
    position_tolerance: float = 0.01,
    velocity_tolerance: float = 0.5,
    timeout_s: float = 60.0,
    log: LogFn = print,
    settle_s: float = 0.1,
    poll_s: float = WAIT_POLL_S,
) -> None:
    """打印前定位：回零 -> 快速到 initial_position-10 -> 换打印速度 -> 慢速到 initial_position。"""
    log("Testing Home... " + ("Success" if stage.home() else "Failed"))
    intermediate = initial_position - APPROACH_OFFSET

    # 1) 快速定位速度
    stage.set_velocity(initial_velocity)
    time.sleep(settle_s)
    wait_for_velocity(stage, initial_velocity, velocity_tolerance, timeout_s, log, poll_s)

    # 2) 先到上方中间位置
    stage.absolute_move(intermediate)
    time.sleep(settle_s)
    wait_for_position(stage, intermediate, position_tolerance, timeout_s, log, poll_s)

    # 3) 换成打印速度
    stage.set_velocity(velocity)
    time.sleep(settle_s)
    wait_for_velocity(stage, velocity, velocity_tolerance, timeout_s, log, poll_s)

    # 4) 慢速进到起始位置
    stage.absolute_move(initial_position)
    time.sleep(settle_s)
    wait_for_position(stage, initial_position, position_tolerance, timeout_s, log, poll_s)
    time.sleep(5 * settle_s)


def deinitialize_stage(
    stage: Smc100Client,
    initial_velocity: float,
    position_tolerance: float = 0.01,
    velocity_tolerance: float = 0.5,
    timeout_s: float = 60.0,
    log: LogFn = print,
    settle_s: float = 0.05,
    poll_s: float = WAIT_POLL_S,
) -> None:
    """打印后复位：回零 -> 上抬 10mm -> 换快速 -> 回到 0。"""
    time.sleep(settle_s)
    log("Testing Home... " + ("Success" if stage.home() else "Failed"))

    position = 0.0
    try:
        position = read_position(stage)
    except StageProtocolError as e:
        log(f"Error converting position string to float: {e}")
    except (serial.SerialException, OSError) as e:
        log(f"Exception caught while reading position: {e}")
    time.sleep(settle_s)

    intermediate = position - APPROACH_OFFSET
    stage.absolute_move(intermediate)
    time.sleep(settle_s)
    wait_for_position(stage, intermediate, position_tolerance, timeout_s, log, poll_s)

    stage.set_velocity(initial_velocity)
    time.sleep(settle_s)
    wait_for_velocity(stage, initial_velocity, velocity_tolerance, timeout_s, log, poll_s)

    stage.absolute_move(0.0)
    time.sleep(settle_s)
    wait_for_position(stage, 0.0, position_tolerance, timeout_s, log, poll_s)
    time.sleep(10 * settle_s)
