# -*- coding: utf-8 -*-
"""打印参数配置（你主要改这个文件）。

这套 runner 约定：
- IMAGE_DIR 里放切片图片：SEC_1.PNG / SEC_2.PNG / ... 按数字顺序曝光
- SETTINGS_CSV 为 None：静态模式（整次打印同一组曝光/黑屏参数）
- SETTINGS_CSV 指向 csv：动态模式（layer,intensity,exposureTime,darkTime 每层参数）
- 曝光时间以“帧数”计（FRAME_RATE 帧/秒），黑屏时间以毫秒计
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    # ========= 路径 =========
    # 图片文件夹：里面放 SEC_1.PNG / SEC_2.PNG / ...
    IMAGE_DIR: str = "C:/prints/current/slices"
    # 动态模式的每层参数表；None 表示静态模式
    SETTINGS_CSV: Optional[str] = None

    # ========= 串口/SMC100 位移台 =========
    SERIAL_PORT: str = "COM3"          # Linux 下常见：/dev/ttyUSB0
    BAUDRATE: int = 57600              # SMC100 固定 57600
    STAGE_ADDRESS: str = "1"           # 控制器地址（单台就是 1）
    STAGE_READ_TIMEOUT_S: float = 0.02 # 读一行应答的超时

    # ========= HDMI 显示 =========
    # 0/1 取决于投影屏是系统里的第几个 display
    DISPLAY_INDEX: int = 1
    # 帧率上限：曝光帧数按这个换算成时间
    FRAME_RATE: int = 30

    # ========= 光机（USB） =========
    # 厂家动态库名或完整路径
    LIGHT_ENGINE_LIBRARY: str = "LibUSB3DPrinter"
    LIGHT_ENGINE_DEVICE_INDEX: int = 0
    # 上电预热最多等多久（秒），超时直接退出程序
    WARMUP_TIMEOUT_S: float = 600.0
    WARMUP_POLL_S: float = 0.1
    # 驱动电流 0-255
    INPUT_CURRENT: int = 100

    # ========= 位移台初始化 =========
    INITIAL_POSITION: float = 12.0     # mm
    VELOCITY: float = 1.0              # 打印速度 mm/s
    INITIAL_VELOCITY: float = 3.0      # 快速定位速度 mm/s
    POSITION_TOLERANCE: float = 0.01
    VELOCITY_TOLERANCE: float = 0.5
    STAGE_WAIT_TIMEOUT_S: float = 60.0

    # ========= 打印参数（静态模式） =========
    STEP_SIZE: float = 0.05            # 每层下降 mm
    EXPOSURE_FRAMES: int = 30          # 普通层曝光帧数
    DARK_TIME_MS: int = 500            # 每层黑屏最短时间
    INITIAL_EXPOSURE_FRAMES: int = 90  # 底层曝光帧数
    INITIAL_LAYERS: int = 5            # 前 N 层算底层

    # ========= 运动模式 =========
    # True：CLIP 连续打印，不做抬升/回落；False：DLP 模式，每层先抬再落
    CLIP_MODE: bool = False
    DLP_PUMPING_ACTION: float = 2.0    # 抬升距离 mm

    # 动态模式切换参数后等待光机稳定的时间
    SETTINGS_SETTLE_S: float = 2.0

    # ========= 安全/调试 =========
    # True：用模拟位移台 + 模拟光机，不碰硬件（第一次先 True 跑一遍）
    DRY_RUN: bool = False
