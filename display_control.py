# -*- coding: utf-8 -*-
"""HDMI 全屏显示封装：复用 exposure.py 的 pygame 函数。

本文件做的事：
1) 两个图片槽（slot 0/1）做双缓冲：显示一个槽的同时往另一个槽里预加载下一层
2) 提供一个“面向打印引擎”的接口：load(slot, path), show(slot), black(),
   pump_events(), sleep_with_pump()，每次 show/black 就是一帧
"""

from __future__ import annotations

import time

import exposure


class HdmiDisplay:
    def __init__(self, display_index: int = 1, frame_rate: int = 30, event_pump_hz: int = 30):
        self.display_index = display_index
        self.frame_rate = frame_rate
        self.event_pump_hz = max(1, int(event_pump_hz))
        self._slots = [None, None]
        self._inited = False

    def init(self) -> None:
        if self._inited:
            return
        exposure.init_display(self.display_index, self.frame_rate)
        self._inited = True

    def load(self, slot: int, image_path: str) -> bool:
        """把图片加载进槽位（不显示）。失败时槽位清空，显示出来就是黑屏。"""
        self.init()
        image = exposure.load_image(image_path)
        self._slots[slot] = image
        return image is not None

    def show(self, slot: int) -> None:
        """显示槽位里的图片一帧。"""
        self.init()
        exposure.present(self._slots[slot])

    def black(self) -> None:
        """显示黑屏一帧。"""
        if not self._inited:
            # 没初始化时也没必要黑屏
            return
        exposure.present(None)

    def pump_events(self) -> bool:
        """处理窗口事件；窗口被关掉/按了 ESC 时返回 False。"""
        if not self._inited:
            return True
        return exposure.process_events()

    def close(self) -> None:
        if self._inited:
            exposure.close_display()
        self._slots = [None, None]
        self._inited = False

    def sleep_with_pump(self, seconds: float) -> None:
        """等待期间持续处理 pygame 事件，防止窗口卡死。"""
        if seconds <= 0:
            return
        period = 1.0 / self.event_pump_hz
        t_end = time.monotonic() + seconds
        while True:
            now = time.monotonic()
            if now >= t_end:
                return
            self.pump_events()
            time.sleep(min(period, t_end - now))
