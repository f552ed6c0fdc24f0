"""
Host integration for the RFB server

IScreen is what a session needs from the machine it shares: the screen
size and depth, pixel snapshots and keyboard/pointer injection.
ImageScreen is the headless variant backed by a Pillow image.

MIT License
"""

import logging
from typing import List, Sequence, Union

from PIL import Image
from zope.interface import Attribute, Interface, implementer

log = logging.getLogger(__name__)


class IScreen(Interface):
    """Screen capture and input injection for RFB sessions.

    One provider is shared by every connection of a server, so calls for
    different sessions may interleave. Providers that inject input through
    non-reentrant APIs have to serialize those calls themselves.
    """

    wheel_step = Attribute("scroll amount injected for one wheel event")

    def keyDown(code: int, down: bool) -> None:
        """press (down=True) or release the key with the given keysym"""

    def mouseMove(x: int, y: int) -> None:
        """move the pointer to (x, y)"""

    def mouseButton(button: int, down: bool, x: int, y: int) -> None:
        """press or release a MouseButton at (x, y)"""

    def mouseWheel(up: bool) -> None:
        """scroll one fixed step up or down"""

    def getImageBuffer(x: int, y: int, width: int, height: int) -> Sequence[int]:
        """row-major 0xRRGGBB pixels of the given rectangle"""

    def getScreenWidth() -> int:
        """current screen width in pixels"""

    def getScreenHeight() -> int:
        """current screen height in pixels"""

    def getDepth() -> int:
        """native colour depth of the display, 8, 16, 24 or 32"""


def image_pixels(image: Image.Image) -> List[int]:
    """Pixels of a Pillow image as 0xRRGGBB ints, row-major."""
    if image.mode != "RGB":
        image = image.convert("RGB")
    data = image.tobytes()
    return [
        data[i] << 16 | data[i + 1] << 8 | data[i + 2] for i in range(0, len(data), 3)
    ]


@implementer(IScreen)
class ImageScreen:
    """Headless screen showing a Pillow image; input events are only logged."""

    wheel_step = 1

    def __init__(
        self, image: Union[Image.Image, str, None] = None, depth: int = 24
    ) -> None:
        if image is None:
            image = Image.new("RGB", (640, 480), "black")
        elif isinstance(image, str):
            image = Image.open(image)
        self.image = image.convert("RGB")
        self.depth = depth

    def setImage(self, image: Image.Image) -> None:
        """Replace the shown image, possibly changing the screen size."""
        self.image = image.convert("RGB")

    def keyDown(self, code: int, down: bool) -> None:
        log.debug("key %#x %s", code, "down" if down else "up")

    def mouseMove(self, x: int, y: int) -> None:
        log.debug("move %d,%d", x, y)

    def mouseButton(self, button: int, down: bool, x: int, y: int) -> None:
        log.debug("button %d %s at %d,%d", button, "down" if down else "up", x, y)

    def mouseWheel(self, up: bool) -> None:
        log.debug("wheel %s", "up" if up else "down")

    def getImageBuffer(self, x: int, y: int, width: int, height: int) -> List[int]:
        return image_pixels(self.image.crop((x, y, x + width, y + height)))

    def getScreenWidth(self) -> int:
        return self.image.width

    def getScreenHeight(self) -> int:
        return self.image.height

    def getDepth(self) -> int:
        return self.depth
