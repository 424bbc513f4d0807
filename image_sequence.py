# -*- coding: utf-8 -*-
"""切片图片列表：读目录 + 按文件名里的数字排序。

slicer 输出的名字形如 SEC_1.PNG, SEC_2.PNG, ..., SEC_100.PNG，
要按数字大小排（SEC_12 在 SEC_100 前面），不能按字符串排。
不符合 SEC_<n>.PNG 的文件排在最后，彼此之间按名字排。
"""

from __future__ import annotations

import os
import re
from typing import List, Tuple

_RE_SECTION = re.compile(r"SEC_(\d+)\.PNG", re.IGNORECASE)


def section_key(path: str) -> Tuple[int, int, str]:
    name = os.path.basename(path)
    m = _RE_SECTION.search(name)
    if m:
        return (0, int(m.group(1)), name)
    return (1, 0, name)


def sort_layer_paths(paths: List[str]) -> List[str]:
    return sorted(paths, key=section_key)


def get_layer_paths(folder: str) -> List[str]:
    """返回 folder 下所有文件的完整路径（已排序）。

    目录不存在/读不了时 os.listdir 的 OSError 原样抛出，
    目录里没有文件时抛 FileNotFoundError。
    """
    files = [f for f in os.listdir(folder) if os.path.isfile(os.path.join(folder, f))]
    if not files:
        raise FileNotFoundError(f"目录 {folder} 中没有找到任何图片")
    return sort_layer_paths([os.path.join(folder, f) for f in files])
