"""
FramebufferUpdate encoding

Rectangles, pixel writers for the negotiated pixel format and the
FramebufferUpdate message layout (RFC 6143 §7.6.1).

MIT License
"""

from dataclasses import dataclass
from struct import Struct, pack
from typing import Callable, List, Optional, Sequence, Tuple

from .colormap import ColorMap8bit
from .rfb import Encoding, MsgS2C, PixelFormat

RECT_HEADER = Struct("!HHHHi")


@dataclass(frozen=True)
class Rectangle:
    x: int
    y: int
    width: int
    height: int
    encoding: int = Encoding.RAW

    def fits(self, width: int, height: int) -> bool:
        """True if the rectangle is non-empty and lies inside a width*height screen."""
        return (
            self.x >= 0
            and self.y >= 0
            and self.width > 0
            and self.height > 0
            and self.x + self.width <= width
            and self.y + self.height <= height
        )

    def header(self) -> bytes:
        return RECT_HEADER.pack(self.x, self.y, self.width, self.height, self.encoding)


def _channel_packer(pixel_format: PixelFormat) -> Callable[[int], int]:
    (rmax, rshift), (gmax, gshift), (bmax, bshift) = pixel_format.channels

    if (rmax, gmax, bmax) == (255, 255, 255):

        def to_pixel(p: int) -> int:
            return (
                ((p >> 16) & 0xFF) << rshift
                | ((p >> 8) & 0xFF) << gshift
                | (p & 0xFF) << bshift
            )

    else:

        def to_pixel(p: int) -> int:
            return (
                ((p >> 16) & 0xFF) * rmax // 255 << rshift
                | ((p >> 8) & 0xFF) * gmax // 255 << gshift
                | (p & 0xFF) * bmax // 255 << bshift
            )

    return to_pixel


def encode_pixels(
    pixels: Sequence[int], pixel_format: PixelFormat, colormap: ColorMap8bit
) -> bytes:
    """Raw encoding of 0xRRGGBB pixels in the viewer's pixel format."""
    if pixel_format.bpp == 8 and (
        not pixel_format.truecolor or pixel_format == colormap.pixel_format
    ):
        return colormap.encode(pixels)

    to_pixel = _channel_packer(pixel_format)
    order = ">" if pixel_format.bigendian else "<"
    code = {8: "B", 16: "H", 32: "I"}[pixel_format.bpp]
    return pack(f"{order}{len(pixels)}{code}", *map(to_pixel, pixels))


def framebuffer_update(
    rectangles: Sequence[Tuple[Rectangle, Optional[bytes]]]
) -> bytes:
    """FramebufferUpdate message; payload is None for pseudo-encodings."""
    parts: List[bytes] = [pack("!BxH", MsgS2C.FRAMEBUFFER_UPDATE, len(rectangles))]
    for rect, payload in rectangles:
        parts.append(rect.header())
        if payload:
            parts.append(payload)
    return b"".join(parts)
