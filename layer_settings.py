# -*- coding: utf-8 -*-
"""动态模式的每层参数表。

csv 格式（第一行是表头，跳过）：
    layer,intensity,exposureTime,darkTime
    1,100,50,10
    2,100,50,10
    3,128,60,5

读出来按“第一次出现的顺序”合并成 [(LayerSetting, 层数), ...]：
相同的 (intensity, exposureTime, darkTime) 不管出现在哪一行，
都累加到第一次出现的那一项上，不会再新增一项。
上面的例子 -> [(LayerSetting(100, 50, 10), 2), (LayerSetting(128, 60, 5), 1)]

格式不对的行直接报错（带行号），整份文件作废，不会开始打印。
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from typing import Iterable, List, Tuple

MAX_INTENSITY = 255


class SettingsFormatError(ValueError):
    pass


@dataclass(frozen=True, order=True)
class LayerSetting:
    intensity: int        # 光机驱动电流 0-255
    exposure_time: int    # 曝光帧数 >= 1
    dark_time: int        # 黑屏毫秒 >= 0


OrderedSettings = List[Tuple[LayerSetting, int]]


def merge_ordered(settings: Iterable[LayerSetting]) -> OrderedSettings:
    """按第一次出现的顺序去重，计数 = 总出现次数。"""
    ordered: OrderedSettings = []
    index = {}
    for setting in settings:
        pos = index.get(setting)
        if pos is None:
            index[setting] = len(ordered)
            ordered.append((setting, 1))
        else:
            ordered[pos] = (setting, ordered[pos][1] + 1)
    return ordered


def _parse_row(row: List[str], line_no: int) -> LayerSetting:
    if len(row) != 4:
        raise SettingsFormatError(f"第 {line_no} 行应有 4 列 (layer,intensity,exposureTime,darkTime)：{row}")
    try:
        _layer, intensity, exposure_time, dark_time = (int(col.strip()) for col in row)
    except ValueError:
        raise SettingsFormatError(f"第 {line_no} 行不是整数：{row}") from None

    if not 0 <= intensity <= MAX_INTENSITY:
        raise SettingsFormatError(f"第 {line_no} 行 intensity 超出 0-{MAX_INTENSITY}：{intensity}")
    if exposure_time < 1:
        raise SettingsFormatError(f"第 {line_no} 行 exposureTime 必须 >= 1：{exposure_time}")
    if dark_time < 0:
        raise SettingsFormatError(f"第 {line_no} 行 darkTime 不能为负：{dark_time}")
    return LayerSetting(intensity, exposure_time, dark_time)


def parse_settings(lines: Iterable[str]) -> OrderedSettings:
    reader = csv.reader(lines)
    next(reader, None)  # 表头

    parsed = []
    for row in reader:
        if not row or all(not col.strip() for col in row):
            continue
        parsed.append(_parse_row(row, reader.line_num))
    return merge_ordered(parsed)


def read_settings_ordered(file_path: str) -> OrderedSettings:
    with open(file_path, "r", encoding="utf-8-sig", newline="") as f:
        return parse_settings(f)
