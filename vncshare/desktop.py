"""
Desktop screen: shares the local display

Capture uses Pillow's ImageGrab, keyboard and pointer events are injected
with pynput.

MIT License
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple, Union, cast

from PIL import ImageGrab
from pynput.keyboard import Controller as KeyController
from pynput.keyboard import Key, KeyCode
from pynput.mouse import Button
from pynput.mouse import Controller as MouseController
from zope.interface import implementer

from . import rfb
from .screen import IScreen, image_pixels

log = logging.getLogger(__name__)


KEYMAP: Dict[int, Key] = {
    rfb.KEY_BackSpace: Key.backspace,
    rfb.KEY_Tab: Key.tab,
    rfb.KEY_Return: Key.enter,
    rfb.KEY_KP_Enter: Key.enter,
    rfb.KEY_Escape: Key.esc,
    rfb.KEY_Delete: Key.delete,
    rfb.KEY_Home: Key.home,
    rfb.KEY_End: Key.end,
    rfb.KEY_PageUp: Key.page_up,
    rfb.KEY_PageDown: Key.page_down,
    rfb.KEY_Left: Key.left,
    rfb.KEY_Up: Key.up,
    rfb.KEY_Right: Key.right,
    rfb.KEY_Down: Key.down,
    rfb.KEY_F1: Key.f1,
    rfb.KEY_F2: Key.f2,
    rfb.KEY_F3: Key.f3,
    rfb.KEY_F4: Key.f4,
    rfb.KEY_F5: Key.f5,
    rfb.KEY_F6: Key.f6,
    rfb.KEY_F7: Key.f7,
    rfb.KEY_F8: Key.f8,
    rfb.KEY_F9: Key.f9,
    rfb.KEY_F10: Key.f10,
    rfb.KEY_F11: Key.f11,
    rfb.KEY_F12: Key.f12,
    rfb.KEY_ShiftLeft: Key.shift_l,
    rfb.KEY_ShiftRight: Key.shift_r,
    rfb.KEY_ControlLeft: Key.ctrl_l,
    rfb.KEY_ControlRight: Key.ctrl_r,
    rfb.KEY_MetaLeft: Key.cmd_l,
    rfb.KEY_MetaRight: Key.cmd_r,
    rfb.KEY_Super_L: Key.cmd_l,
    rfb.KEY_Super_R: Key.cmd_r,
    rfb.KEY_AltLeft: Key.alt_l,
    rfb.KEY_AltRight: Key.alt_r,
    rfb.KEY_Caps_Lock: Key.caps_lock,
    rfb.KEY_SpaceBar: Key.space,
}

# keys pynput does not define on every platform
for _keysym, _name in (
    (rfb.KEY_Insert, "insert"),
    (rfb.KEY_Num_Lock, "num_lock"),
    (rfb.KEY_Scroll_Lock, "scroll_lock"),
    (rfb.KEY_Pause, "pause"),
):
    if hasattr(Key, _name):
        KEYMAP[_keysym] = getattr(Key, _name)

BUTTONS = {
    rfb.MouseButton.LEFT: Button.left,
    rfb.MouseButton.MIDDLE: Button.middle,
    rfb.MouseButton.RIGHT: Button.right,
}


def translate_key(code: int) -> Optional[Union[Key, KeyCode]]:
    """pynput key for a X11 keysym, None if there is no equivalent"""
    if code in KEYMAP:
        return KEYMAP[code]
    if 0x20 <= code <= 0xFF:
        return KeyCode.from_char(chr(code))
    if code & 0xFF000000 == 0x01000000:  # unicode keysym
        return KeyCode.from_char(chr(code & 0x00FFFFFF))
    return None


@implementer(IScreen)
class DesktopScreen:
    wheel_step = 3

    def __init__(self, depth: int = 24) -> None:
        self.keyboard = KeyController()
        self.mouse = MouseController()
        self.depth = depth
        self._lock = threading.Lock()
        self._size: Optional[Tuple[int, int]] = None

    def keyDown(self, code: int, down: bool) -> None:
        key = translate_key(code)
        if key is None:
            log.debug("no key for keysym %#x", code)
            return
        with self._lock:
            if down:
                self.keyboard.press(key)
            else:
                self.keyboard.release(key)

    def mouseMove(self, x: int, y: int) -> None:
        with self._lock:
            self.mouse.position = (x, y)

    def mouseButton(self, button: int, down: bool, x: int, y: int) -> None:
        with self._lock:
            self.mouse.position = (x, y)
            if down:
                self.mouse.press(BUTTONS[button])
            else:
                self.mouse.release(BUTTONS[button])

    def mouseWheel(self, up: bool) -> None:
        with self._lock:
            self.mouse.scroll(0, self.wheel_step if up else -self.wheel_step)

    def getImageBuffer(self, x: int, y: int, width: int, height: int) -> List[int]:
        return image_pixels(ImageGrab.grab(bbox=(x, y, x + width, y + height)))

    def getScreenWidth(self) -> int:
        self._size = self._screenSize()
        return self._size[0]

    def getScreenHeight(self) -> int:
        # reuses the capture of a preceding getScreenWidth() once
        size, self._size = self._size or self._screenSize(), None
        return size[1]

    def _screenSize(self) -> Tuple[int, int]:
        # ImageGrab has no size query, a grab of the whole display is needed
        return cast(Tuple[int, int], ImageGrab.grab().size)

    def getDepth(self) -> int:
        return self.depth
