import os

import pygame

# 这几个变量会在 init_display 里被赋值，后面的函数都会用到
screen = None
screen_width = None
screen_height = None
clock = None
frame_rate = 30


def init_display(display_index=1, fps=30):
    """
    初始化显示器和 pygame,全屏打开一个窗口。
    整个程序生命周期里只需要调用一次。
    :param display_index: 使用的显示器编号(0 或 1)
    :param fps: 帧率上限，present() 每帧按这个节拍等待
    """
    global screen, screen_width, screen_height, clock, frame_rate

    # 告诉 SDL/pygame，做全屏时用哪块屏幕
    os.environ["SDL_VIDEO_FULLSCREEN_DISPLAY"] = str(display_index)

    pygame.init()
    pygame.mouse.set_visible(False)  # 不要鼠标指针

    # 全屏窗口，分辨率就是当前这块屏的原生分辨率
    screen = pygame.display.set_mode((0, 0), pygame.FULLSCREEN)

    screen_width, screen_height = screen.get_size()
    print(f"[exposure] 当前屏幕分辨率: {screen_width} x {screen_height}")

    clock = pygame.time.Clock()
    frame_rate = max(1, int(fps))


def process_events():
    """
    处理窗口事件。
    检测到窗口关闭或按下 ESC 时返回 False(由调用方决定怎么收尾)。
    """
    for event in pygame.event.get():
        if event.type == pygame.QUIT:
            return False
        if event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
            return False
    return True


def load_image(path):
    """
    加载一张图片，并自动按屏幕大小拉伸（如果尺寸不匹配的话）。
    返回 pygame 的 Surface 对象，失败返回 None。
    """
    try:
        image = pygame.image.load(path)
    except (pygame.error, FileNotFoundError) as e:
        print(f"[exposure] 加载图片失败: {path}, 错误: {e}")
        return None

    image = image.convert()  # 转成和屏幕相同的像素格式，加速显示

    img_w, img_h = image.get_size()
    if (img_w, img_h) != (screen_width, screen_height):
        image = pygame.transform.scale(image, (screen_width, screen_height))

    return image


def present(image=None):
    """
    显示一帧：image 为 None 时黑屏。
    flip 之后按 frame_rate 等到下一帧，所以调用一次就是一帧。
    """
    if screen is None:
        raise RuntimeError("请先调用 init_display() 再 present()")

    # (0, 0, 0) 是黑色
    screen.fill((0, 0, 0))
    if image is not None:
        screen.blit(image, (0, 0))
    pygame.display.flip()
    clock.tick(frame_rate)


def close_display():
    """
    关闭显示器，退出 pygame。在程序结束前调用一次。
    """
    global screen
    pygame.quit()
    screen = None
    print("[exposure] 显示已关闭。")
